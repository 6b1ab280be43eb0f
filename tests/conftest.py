import io
import os
import threading
import zlib

import pytest
from PIL import Image

from storyshort.clients.s3_storage import S3StorageClient
from storyshort.config import Settings
from storyshort.models.domain import Scene
from storyshort.services.video_service import VideoService
from storyshort.storage.repository import VideoRecordStore

SCRIPT = (
    "HOOK: Did you know an octopus has three hearts?\n"
    "BODY: Two of them pump blood through the gills. The third one keeps the rest of the body going. "
    "It even stops beating while the octopus swims.\n"
    "CTA: Follow for more strange ocean facts."
)


def png_bytes(seed: str = "scene", size=(72, 128)) -> bytes:
    crc = zlib.crc32(seed.encode("utf-8"))
    color = (crc & 0xFF, (crc >> 8) & 0xFF, (crc >> 16) & 0xFF)
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeTTS:
    def __init__(self):
        self.calls = []
        self.error = None

    def synthesize(self, text):
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return b"ID3-fake-narration:" + text.encode("utf-8")


class FakeImages:
    """Deterministic image generator; ``failures`` maps a prompt to the error it raises."""

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.on_call = None
        self._lock = threading.Lock()

    def generate(self, prompt):
        with self._lock:
            self.calls.append(prompt)
        if self.on_call is not None:
            self.on_call(prompt)
        error = self.failures.get(prompt)
        if error is not None:
            raise error
        return png_bytes(prompt)


class FakeTranscriber:
    def __init__(self, srt=None, error=None):
        self.srt = srt
        self.error = error
        self.calls = 0

    def enabled(self):
        return True

    def transcribe(self, audio, suffix=".mp3"):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.srt


class FakeEncoder:
    def __init__(self):
        self.commands = []
        self.workdir_files = []
        self.error = None

    def run(self, command, cwd, should_cancel):
        self.commands.append(list(command))
        self.workdir_files.append(sorted(os.listdir(cwd)))
        if self.error is not None:
            raise self.error
        with open(os.path.join(cwd, command[-1]), "wb") as f:
            f.write(b"fake-mp4")


@pytest.fixture
def settings():
    return Settings(
        s3_access_key="",
        s3_secret_key="",
        kafka_enabled=False,
        whisper_local_model="",
        elevenlabs_api_key="test-key",
        openai_api_key="test-key",
        provider_retry_attempts=3,
        provider_retry_base_delay=0,
        image_concurrency=2,
        progress_poll_interval=0.01,
        progress_timeout=2,
    )


@pytest.fixture
def storage():
    return S3StorageClient(bucket="storyshort-test", access_key=None, secret_key=None)


@pytest.fixture
def tts():
    return FakeTTS()


@pytest.fixture
def images():
    return FakeImages()


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def service(settings, storage, tts, images, encoder):
    return VideoService(
        VideoRecordStore(),
        settings,
        tts=tts,
        images=images,
        storage=storage,
        encoder=encoder,
        duration_probe=lambda audio: None,
    )


def scene_list(count):
    return [Scene(text=f"Scene {idx + 1} narration.", image_prompt=f"prompt {idx + 1}", duration_seconds=2.5) for idx in range(count)]


@pytest.fixture
def make_video(service):
    """Create a video with an approved script and a recorded storyboard of ``count`` scenes."""

    def factory(count=3):
        video = service.create_video(input_text="octopus facts", script_text=SCRIPT)
        service.approve_script(video.id)
        return service.record_storyboard(video.id, scene_list(count))

    return factory
