"""Deterministic ffmpeg filter graph and command construction.

All motion is a pure function of the output frame number, so identical
inputs always yield a byte-identical command. ``sample_motion`` evaluates the
same curves with numpy; ``motion_violations`` uses it to reject a plan whose
motion would leave the frame before the encoder is started.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

# pixels of slack around the frame that the handheld shake may use
SHAKE_MARGIN = 8
NOISE_SEED = 1337


@dataclass(frozen=True)
class Wave:
    amplitude: float
    frequency: float
    kind: str = "sin"

    def expression(self, t: str) -> str:
        return f"{_fmt(self.amplitude)}*{self.kind}({_fmt(self.frequency)}*{t})"

    def sample(self, t: np.ndarray) -> np.ndarray:
        fn = np.sin if self.kind == "sin" else np.cos
        return self.amplitude * fn(self.frequency * t)


@dataclass(frozen=True)
class MotionPattern:
    zoom_rate: float
    zoom_wobble: float
    zoom_wobble_freq: float
    zoom_ceiling: float
    drift_x: tuple[Wave, ...]
    drift_y: tuple[Wave, ...]
    shake_x: tuple[Wave, ...]
    shake_y: tuple[Wave, ...]


MOTION_PATTERNS: tuple[MotionPattern, ...] = (
    # gentle zoom with smooth pan
    MotionPattern(
        zoom_rate=0.045,
        zoom_wobble=0.006,
        zoom_wobble_freq=0.8,
        zoom_ceiling=1.25,
        drift_x=(Wave(15, 0.4), Wave(8, 0.2, "cos")),
        drift_y=(Wave(12, 0.3, "cos"), Wave(6, 0.1)),
        shake_x=(Wave(2.0, 1.8), Wave(1.5, 2.2, "cos")),
        shake_y=(Wave(1.8, 1.5, "cos"), Wave(1.2, 2.8)),
    ),
    # dynamic zoom with circular motion
    MotionPattern(
        zoom_rate=0.05,
        zoom_wobble=0.01,
        zoom_wobble_freq=1.2,
        zoom_ceiling=1.3,
        drift_x=(Wave(18, 0.6), Wave(10, 0.4, "cos")),
        drift_y=(Wave(14, 0.5, "cos"), Wave(8, 0.3)),
        shake_x=(Wave(2.5, 2.1), Wave(1.8, 1.9, "cos")),
        shake_y=(Wave(2.2, 1.7, "cos"), Wave(1.5, 2.5)),
    ),
    # subtle zoom with gentle sway
    MotionPattern(
        zoom_rate=0.0375,
        zoom_wobble=0.004,
        zoom_wobble_freq=0.6,
        zoom_ceiling=1.2,
        drift_x=(Wave(12, 0.3), Wave(6, 0.1, "cos")),
        drift_y=(Wave(10, 0.2, "cos"), Wave(4, 0.05)),
        shake_x=(Wave(1.5, 1.5), Wave(1.2, 1.8, "cos"), Wave(0.6, 2.5)),
        shake_y=(Wave(1.5, 1.2, "cos"), Wave(1.0, 2.2), Wave(0.5, 2.4, "cos")),
    ),
    # parallax drift
    MotionPattern(
        zoom_rate=0.055,
        zoom_wobble=0.008,
        zoom_wobble_freq=1.0,
        zoom_ceiling=1.28,
        drift_x=(Wave(20, 0.5), Wave(12, 0.3, "cos")),
        drift_y=(Wave(16, 0.4, "cos"), Wave(10, 0.2)),
        shake_x=(Wave(2.8, 2.3), Wave(2.0, 1.8, "cos")),
        shake_y=(Wave(2.5, 1.9, "cos"), Wave(1.8, 2.7)),
    ),
)


@dataclass(frozen=True)
class SceneInput:
    file_name: str
    duration: float


@dataclass(frozen=True)
class RenderPlan:
    scenes: tuple[SceneInput, ...]
    audio_file: str
    captions_file: str
    output_file: str
    width: int = 1080
    height: int = 1920
    fps: int = 30
    max_zoom: float = 1.12

    @property
    def total_duration(self) -> float:
        return sum(scene.duration for scene in self.scenes)


def pattern_for(scene_index: int) -> MotionPattern:
    return MOTION_PATTERNS[scene_index % len(MOTION_PATTERNS)]


def zoom_ceiling(pattern: MotionPattern, max_zoom: float) -> float:
    return max(1.0, min(pattern.zoom_ceiling, max_zoom))


def fit_durations(durations: Sequence[float], target: float | None) -> List[float]:
    """Stretch scene durations proportionally so they add up to ``target``."""
    total = sum(durations)
    if not target or target <= 0 or total <= 0:
        return [round(value, 3) for value in durations]
    ratio = target / total
    return [round(value * ratio, 3) for value in durations]


# --- expressions ---------------------------------------------------------------


def zoom_expression(pattern: MotionPattern, fps: int, max_zoom: float) -> str:
    t = f"on/{fps}"
    return (
        f"min(1+{_fmt(pattern.zoom_rate)}*{t}"
        f"+{_fmt(pattern.zoom_wobble)}*(1-cos({_fmt(pattern.zoom_wobble_freq)}*{t}))"
        f",{_fmt(zoom_ceiling(pattern, max_zoom))})"
    )


def pan_expression(waves: Sequence[Wave], axis: str, fps: int) -> str:
    size = "iw" if axis == "x" else "ih"
    drift = "+".join(wave.expression(f"on/{fps}") for wave in waves)
    return f"clip({size}/2-({size}/zoom/2)+{drift},0,{size}-{size}/zoom)"


def shake_expression(waves: Sequence[Wave], fps: int) -> str:
    offset = "+".join(wave.expression(f"n/{fps}") for wave in waves)
    return f"{SHAKE_MARGIN}+{offset}"


def scene_filter(index: int, plan: RenderPlan) -> str:
    pattern = pattern_for(index)
    width, height, fps = plan.width, plan.height, plan.fps
    padded = f"{width + 2 * SHAKE_MARGIN}x{height + 2 * SHAKE_MARGIN}"
    return (
        f"[{index}:v]"
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:black,setsar=1,"
        f"zoompan=z='{zoom_expression(pattern, fps, plan.max_zoom)}'"
        f":x='{pan_expression(pattern.drift_x, 'x', fps)}'"
        f":y='{pan_expression(pattern.drift_y, 'y', fps)}'"
        f":d=1:s={padded}:fps={fps},"
        f"crop={width}:{height}"
        f":x='{shake_expression(pattern.shake_x, fps)}'"
        f":y='{shake_expression(pattern.shake_y, fps)}',"
        f"setsar=1,format=yuv420p"
        f"[v{index}]"
    )


def build_filter_graph(plan: RenderPlan) -> str:
    if not plan.scenes:
        raise ValueError("render plan has no scenes")
    chains = [scene_filter(idx, plan) for idx in range(len(plan.scenes))]
    labels = "".join(f"[v{idx}]" for idx in range(len(plan.scenes)))
    finish = (
        f"{labels}concat=n={len(plan.scenes)}:v=1:a=0,"
        "eq=contrast=1.08:saturation=1.03:brightness=0.01,"
        "vignette=PI/4,"
        f"noise=c0s=6:allf=t:all_seed={NOISE_SEED},"
        f"subtitles={plan.captions_file}"
        "[vout]"
    )
    return ";".join(chains + [finish])


def build_command(plan: RenderPlan, binary: str = "ffmpeg") -> List[str]:
    command = [binary, "-y", "-nostdin", "-hide_banner", "-loglevel", "error"]
    for scene in plan.scenes:
        command += ["-loop", "1", "-framerate", str(plan.fps), "-t", _fmt(scene.duration), "-i", scene.file_name]
    command += ["-i", plan.audio_file]
    command += [
        "-filter_complex",
        build_filter_graph(plan),
        "-map",
        "[vout]",
        "-map",
        f"{len(plan.scenes)}:a",
        "-c:v",
        "libx264",
        "-preset",
        "medium",
        "-crf",
        "23",
        "-pix_fmt",
        "yuv420p",
        "-r",
        str(plan.fps),
        "-c:a",
        "aac",
        "-b:a",
        "192k",
        "-shortest",
        "-movflags",
        "+faststart",
        plan.output_file,
    ]
    return command


# --- numeric evaluation ----------------------------------------------------------


def sample_motion(
    pattern: MotionPattern,
    t: np.ndarray,
    width: int = 1080,
    height: int = 1920,
    max_zoom: float = 1.12,
) -> dict[str, np.ndarray]:
    """Evaluate zoom, pan and shake at elapsed seconds ``t``.

    Mirrors the expressions above; ``iw``/``ih`` are the ``width`` x ``height``
    letterboxed frame that zoompan receives.
    """
    t = np.asarray(t, dtype=float)
    zoom = np.minimum(
        1.0 + pattern.zoom_rate * t + pattern.zoom_wobble * (1.0 - np.cos(pattern.zoom_wobble_freq * t)),
        zoom_ceiling(pattern, max_zoom),
    )
    iw, ih = float(width), float(height)
    drift_x = sum(wave.sample(t) for wave in pattern.drift_x)
    drift_y = sum(wave.sample(t) for wave in pattern.drift_y)
    x = np.clip(iw / 2 - iw / zoom / 2 + drift_x, 0.0, iw - iw / zoom)
    y = np.clip(ih / 2 - ih / zoom / 2 + drift_y, 0.0, ih - ih / zoom)
    shake_x = sum(wave.sample(t) for wave in pattern.shake_x)
    shake_y = sum(wave.sample(t) for wave in pattern.shake_y)
    return {"zoom": zoom, "x": x, "y": y, "shake_x": shake_x, "shake_y": shake_y}


def motion_violations(plan: RenderPlan) -> List[int]:
    """Scenes (0-based) whose sampled motion would leave the frame or the shake margin."""
    bad: List[int] = []
    for idx, scene in enumerate(plan.scenes):
        t = np.arange(max(1, int(round(scene.duration * plan.fps)))) / plan.fps
        motion = sample_motion(pattern_for(idx), t, width=plan.width, height=plan.height, max_zoom=plan.max_zoom)
        zoom = motion["zoom"]
        inside = (
            zoom.min() >= 1.0
            and (motion["x"] <= plan.width - plan.width / zoom + 1e-6).all()
            and (motion["y"] <= plan.height - plan.height / zoom + 1e-6).all()
            and np.abs(motion["shake_x"]).max() <= SHAKE_MARGIN
            and np.abs(motion["shake_y"]).max() <= SHAKE_MARGIN
        )
        if not inside:
            bad.append(idx)
    return bad


def _fmt(value: float) -> str:
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text or "0"
