from __future__ import annotations

import logging
import os
import tempfile

from moviepy import AudioFileClip

log = logging.getLogger(__name__)


def probe_audio_duration(audio_bytes: bytes | None, suffix: str = ".mp3") -> float | None:
    """Length of an encoded audio track in seconds, ``None`` when it cannot be read."""
    if not audio_bytes:
        return None
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp:
            tmp.write(audio_bytes)
            tmp_path = tmp.name
        clip = AudioFileClip(tmp_path)
        try:
            duration = clip.duration
        finally:
            clip.close()
        return float(duration) if duration else None
    except Exception:
        log.debug("audio duration probe failed", exc_info=True)
        return None
    finally:
        if tmp_path and os.path.exists(tmp_path):
            os.remove(tmp_path)
