"""Caption codecs and timing helpers.

Captions travel between services as SRT (WebVTT is accepted on input) and are
burned into the video from an ASS script carrying a fixed style. Everything in
this module is pure: no I/O, no provider calls.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List

SRT_TIME = re.compile(r"(\d{1,2}):(\d{2}):(\d{2})[,.](\d{3})")
CUE_TIMING = re.compile(
    r"(\d{1,2}:\d{2}:\d{2}[,.]\d{3})\s*-->\s*(\d{1,2}:\d{2}:\d{2}[,.]\d{3})"
)
ASS_TIME = re.compile(r"(\d+):(\d{2}):(\d{2})\.(\d{2})")
SECTION_LABEL = re.compile(r"^\s*(HOOK|BODY|CTA)\s*:\s*", re.IGNORECASE)
SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")

MIN_CUE_SECONDS = 1.2
MIN_CAPTION_SECONDS = 5.0


@dataclass(frozen=True)
class Cue:
    start: float
    end: float
    text: str


@dataclass(frozen=True)
class CaptionStyle:
    font_name: str = "Arial"
    font_size: int = 64
    primary_colour: str = "&H00FFFFFF"
    outline_colour: str = "&H00000000"
    back_colour: str = "&H80000000"
    bold: bool = True
    # BorderStyle 4 keeps the outline and draws a box from BackColour
    border_style: int = 4
    outline: int = 3
    shadow: int = 0
    alignment: int = 2
    margin_h: int = 60
    margin_v: int = 160


@dataclass(frozen=True)
class ScriptSections:
    hook: str
    body: str
    cta: str

    def parts(self) -> list[str]:
        return [part for part in (self.hook, self.body, self.cta) if part]


# --- timestamps -----------------------------------------------------------------


def format_srt_timestamp(seconds: float) -> str:
    total_ms = int(round(max(0.0, seconds) * 1000))
    hours = total_ms // 3_600_000
    minutes = (total_ms % 3_600_000) // 60_000
    secs = (total_ms % 60_000) // 1000
    millis = total_ms % 1000
    return f"{hours:02}:{minutes:02}:{secs:02},{millis:03}"


def format_ass_timestamp(seconds: float) -> str:
    total_cs = int(round(max(0.0, seconds) * 100))
    hours = total_cs // 360_000
    minutes = (total_cs % 360_000) // 6000
    secs = (total_cs % 6000) // 100
    centis = total_cs % 100
    return f"{hours}:{minutes:02}:{secs:02}.{centis:02}"


def parse_timestamp(value: str) -> float:
    match = SRT_TIME.match(value.strip())
    if not match:
        raise ValueError(f"invalid caption timestamp: {value!r}")
    hours, minutes, seconds, millis = map(int, match.groups())
    return hours * 3600 + minutes * 60 + seconds + millis / 1000.0


def parse_ass_timestamp(value: str) -> float:
    match = ASS_TIME.match(value.strip())
    if not match:
        raise ValueError(f"invalid ASS timestamp: {value!r}")
    hours, minutes, seconds, centis = map(int, match.groups())
    return hours * 3600 + minutes * 60 + seconds + centis / 100.0


# --- SRT / WebVTT ---------------------------------------------------------------


def parse_captions(text: str) -> List[Cue]:
    """Parse SRT or WebVTT, whichever ``text`` is."""
    return _parse_timed_blocks(text)


def _parse_timed_blocks(text: str) -> List[Cue]:
    cues: List[Cue] = []
    normalized = text.replace("\r\n", "\n").replace("\r", "\n").lstrip("\ufeff")
    for block in re.split(r"\n\s*\n", normalized.strip()):
        lines = [line.rstrip() for line in block.split("\n") if line.strip()]
        if not lines or lines[0].startswith(("WEBVTT", "NOTE", "STYLE")):
            continue
        for position, line in enumerate(lines):
            match = CUE_TIMING.search(line)
            if not match:
                continue
            start = parse_timestamp(match.group(1))
            end = parse_timestamp(match.group(2))
            content = "\n".join(item.strip() for item in lines[position + 1 :])
            cues.append(Cue(start=start, end=end, text=content))
            break
    return cues


def format_srt(cues: Iterable[Cue]) -> str:
    blocks = []
    for idx, cue in enumerate(cues, start=1):
        blocks.append(
            f"{idx}\n{format_srt_timestamp(cue.start)} --> {format_srt_timestamp(cue.end)}\n{cue.text}\n"
        )
    return "\n".join(blocks)


# --- ASS (burn-in) --------------------------------------------------------------


def to_ass(cues: Iterable[Cue], style: CaptionStyle | None = None, width: int = 1080, height: int = 1920) -> str:
    style = style or CaptionStyle()
    header = "\n".join(
        [
            "[Script Info]",
            "Title: StoryShort captions",
            "ScriptType: v4.00+",
            "WrapStyle: 2",
            "ScaledBorderAndShadow: yes",
            f"PlayResX: {width}",
            f"PlayResY: {height}",
            "",
            "[V4+ Styles]",
            "Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, BackColour, "
            "Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, BorderStyle, Outline, "
            "Shadow, Alignment, MarginL, MarginR, MarginV, Encoding",
            (
                f"Style: Default,{style.font_name},{style.font_size},{style.primary_colour},&H000000FF,"
                f"{style.outline_colour},{style.back_colour},{-1 if style.bold else 0},0,0,0,100,100,0,0,"
                f"{style.border_style},{style.outline},{style.shadow},{style.alignment},"
                f"{style.margin_h},{style.margin_h},{style.margin_v},1"
            ),
            "",
            "[Events]",
            "Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text",
        ]
    )
    events = [
        f"Dialogue: 0,{format_ass_timestamp(cue.start)},{format_ass_timestamp(cue.end)},Default,,0,0,0,,"
        f"{_escape_ass_text(cue.text)}"
        for cue in cues
    ]
    return header + "\n" + "\n".join(events) + "\n"


def parse_ass(text: str) -> List[Cue]:
    cues: List[Cue] = []
    in_events = False
    for raw_line in text.replace("\r\n", "\n").split("\n"):
        line = raw_line.strip()
        if line.startswith("["):
            in_events = line.lower() == "[events]"
            continue
        if not in_events or not line.startswith("Dialogue:"):
            continue
        fields = line[len("Dialogue:") :].split(",", 9)
        if len(fields) < 10:
            continue
        cues.append(
            Cue(
                start=parse_ass_timestamp(fields[1]),
                end=parse_ass_timestamp(fields[2]),
                text=_unescape_ass_text(fields[9]),
            )
        )
    return cues


def srt_to_ass(srt_text: str, style: CaptionStyle | None = None, width: int = 1080, height: int = 1920) -> str:
    return to_ass(parse_captions(srt_text), style=style, width=width, height=height)


def _escape_ass_text(text: str) -> str:
    return text.replace("\\", "\\\\").replace("{", "\\{").replace("}", "\\}").replace("\n", "\\N")


def _unescape_ass_text(text: str) -> str:
    out: list[str] = []
    idx = 0
    while idx < len(text):
        char = text[idx]
        if char == "\\" and idx + 1 < len(text):
            nxt = text[idx + 1]
            if nxt == "N":
                out.append("\n")
                idx += 2
                continue
            if nxt in "\\{}":
                out.append(nxt)
                idx += 2
                continue
        out.append(char)
        idx += 1
    return "".join(out)


# --- script sections and estimated timing ---------------------------------------


def parse_script_sections(raw: str | None) -> ScriptSections:
    if not raw or not raw.strip():
        return ScriptSections("", "", "")
    text = raw.replace("\r\n", "\n").strip()
    labelled: dict[str, list[str]] = {}
    current: str | None = None
    for line in text.split("\n"):
        match = SECTION_LABEL.match(line)
        if match:
            current = match.group(1).lower()
            labelled.setdefault(current, [])
            line = line[match.end() :]
        if current is not None and line.strip():
            labelled[current].append(line.strip())
    if labelled:
        return ScriptSections(
            hook=" ".join(labelled.get("hook", [])),
            body=" ".join(labelled.get("body", [])),
            cta=" ".join(labelled.get("cta", [])),
        )
    parts = [part.strip() for part in re.split(r"\n{2,}", text) if part.strip()]
    if len(parts) >= 3:
        return ScriptSections(parts[0], "\n\n".join(parts[1:-1]), parts[-1])
    if len(parts) == 2:
        return ScriptSections(parts[0], "", parts[1])
    return ScriptSections(parts[0], "", "")


def plain_narration(script_text: str | None) -> str:
    """Script without section labels, as read by the TTS voice."""
    return "\n\n".join(parse_script_sections(script_text).parts())


def split_sentences(text: str) -> list[str]:
    collapsed = re.sub(r"\s+", " ", text).strip()
    return [sentence.strip() for sentence in SENTENCE_SPLIT.split(collapsed) if sentence.strip()]


def wrap_caption(text: str, max_chars: int = 42) -> str:
    words = text.split()
    lines: list[str] = []
    line: list[str] = []
    for word in words:
        candidate = " ".join(line + [word])
        if len(candidate) > max_chars and line:
            lines.append(" ".join(line))
            line = [word]
        else:
            line.append(word)
    if line:
        lines.append(" ".join(line))
    if len(lines) > 2:
        joined = " ".join(lines)
        middle = len(joined) // 2
        split_at = joined.rfind(" ", 0, middle + 1)
        if split_at <= 0:
            split_at = middle
        return f"{joined[:split_at].strip()}\n{joined[split_at:].strip()}"
    return "\n".join(lines)


def estimate_duration(text: str, wpm: int = 150) -> float:
    words = len(text.split())
    return max(MIN_CAPTION_SECONDS, words / max(wpm, 1) * 60.0)


def estimate_cues(script_text: str, wpm: int = 150, total_duration: float | None = None) -> List[Cue]:
    """Time sentences of the hook, body and CTA proportionally to their word count.

    ``total_duration`` (the measured narration length) overrides the
    words-per-minute estimate when known.
    """
    sections = parse_script_sections(script_text)
    sentences = [sentence for part in sections.parts() for sentence in split_sentences(part)]
    narration = " ".join(sentences)
    duration = total_duration if total_duration and total_duration > 0 else estimate_duration(narration, wpm)
    if not sentences:
        return [Cue(0.0, max(duration, MIN_CAPTION_SECONDS), script_text.strip())] if script_text.strip() else []

    total_words = sum(len(sentence.split()) for sentence in sentences) or 1
    cues: List[Cue] = []
    cursor = 0.0
    for idx, sentence in enumerate(sentences):
        share = len(sentence.split()) / total_words
        length = max(MIN_CUE_SECONDS, duration * share)
        if idx == len(sentences) - 1:
            length = max(MIN_CUE_SECONDS, duration - cursor)
        cues.append(Cue(start=round(cursor, 3), end=round(cursor + length, 3), text=wrap_caption(sentence)))
        cursor += length
    return cues
