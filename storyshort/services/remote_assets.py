from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, TypeVar

from PIL import Image, UnidentifiedImageError

from storyshort.clients.errors import ProviderError, TransientError
from storyshort.config import Settings

T = TypeVar("T")

IMAGE_FORMATS = {
    "PNG": ("png", "image/png"),
    "JPEG": ("jpg", "image/jpeg"),
    "WEBP": ("webp", "image/webp"),
}


class SpeechSynthesizer(Protocol):
    def synthesize(self, text: str) -> bytes: ...


class ImageGenerator(Protocol):
    def generate(self, prompt: str) -> bytes: ...


class Transcriber(Protocol):
    def enabled(self) -> bool: ...

    def transcribe(self, audio: bytes, suffix: str = ".mp3") -> str: ...


@dataclass(frozen=True)
class GeneratedImage:
    content: bytes
    extension: str
    content_type: str
    width: int
    height: int


class RemoteAssetServices:
    """Provider calls used by the asset orchestrator.

    Transient failures are retried with exponential backoff; every other
    category is raised on the first attempt.
    """

    def __init__(
        self,
        tts: SpeechSynthesizer,
        images: ImageGenerator,
        transcriber: Optional[Transcriber],
        settings: Settings,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.tts = tts
        self.images = images
        self.transcriber = transcriber
        self.attempts = max(1, settings.provider_retry_attempts)
        self.base_delay = max(0.0, settings.provider_retry_base_delay)
        self.log = logger or logging.getLogger(__name__)
        self._sleep = sleep

    def synthesize_speech(self, text: str) -> bytes:
        audio = self._with_retry("speech", lambda: self.tts.synthesize(text))
        if not audio:
            raise TransientError("speech", "speech provider returned empty audio")
        return audio

    def generate_image(self, prompt: str) -> GeneratedImage:
        return self._with_retry("image", lambda: self._inspect_image(self.images.generate(prompt)))

    def transcription_enabled(self) -> bool:
        return bool(self.transcriber and self.transcriber.enabled())

    def transcribe(self, audio: bytes) -> str:
        if not self.transcription_enabled():
            raise RuntimeError("transcription is not configured")
        return self.transcriber.transcribe(audio, suffix=".mp3")

    def _inspect_image(self, content: bytes) -> GeneratedImage:
        try:
            with Image.open(io.BytesIO(content)) as image:
                fmt = (image.format or "").upper()
                width, height = image.size
        except (UnidentifiedImageError, OSError) as exc:
            raise TransientError("image", "image provider returned undecodable data") from exc
        extension, content_type = IMAGE_FORMATS.get(fmt, ("png", "image/png"))
        return GeneratedImage(
            content=content,
            extension=extension,
            content_type=content_type,
            width=width,
            height=height,
        )

    def _with_retry(self, operation: str, call: Callable[[], T]) -> T:
        for attempt in range(self.attempts):
            try:
                return call()
            except ProviderError as exc:
                if not exc.retriable or attempt + 1 >= self.attempts:
                    raise
                delay = self.base_delay * (2**attempt)
                self.log.warning(
                    "provider call failed, retrying",
                    extra={
                        "operation": operation,
                        "attempt": attempt + 1,
                        "delay": delay,
                        "error": exc.user_message,
                    },
                )
                if delay:
                    self._sleep(delay)
        raise AssertionError("unreachable")
