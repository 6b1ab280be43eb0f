from __future__ import annotations

import logging
import tempfile
from typing import Optional

from storyshort.services.subtitles import Cue, format_srt


class LocalWhisperClient:
    """Transcribes narration locally with openai-whisper and returns SRT text.

    The model is loaded on first use; the package is an optional extra
    (``storyshort[transcription]``) because it pulls in torch.
    """

    def __init__(
        self,
        model_name: str = "base",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.model_name = (model_name or "").strip()
        self.log = logger or logging.getLogger(__name__)
        self._model = None

    def enabled(self) -> bool:
        return bool(self.model_name)

    def _load_model(self):
        if self._model is None:
            import whisper

            self._model = whisper.load_model(self.model_name)
            self.log.info("local whisper model loaded", extra={"model": self.model_name})
        return self._model

    def transcribe(self, audio: bytes, suffix: str = ".mp3") -> str:
        model = self._load_model()
        with tempfile.NamedTemporaryFile(suffix=suffix) as tmp:
            tmp.write(audio)
            tmp.flush()
            result = model.transcribe(tmp.name, task="transcribe", verbose=False)
        segments = result.get("segments", [])
        cues = [
            Cue(start=float(segment["start"]), end=float(segment["end"]), text=segment["text"].strip())
            for segment in segments
            if segment.get("text", "").strip()
        ]
        self.log.info(
            "whisper transcription completed (local)",
            extra={"model": self.model_name, "segments": len(cues)},
        )
        return format_srt(cues)
