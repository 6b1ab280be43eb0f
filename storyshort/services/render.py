from __future__ import annotations

import logging
import os
import pathlib
import subprocess
import tempfile
import time
from collections import deque
from typing import Callable, List, Optional, Protocol
from urllib.parse import urlparse
from uuid import UUID

import httpx

from storyshort.clients.s3_storage import S3StorageClient
from storyshort.config import Settings
from storyshort.models.domain import RenderResult, Video, VideoStatus
from storyshort.services.errors import InvalidTransition, RenderError, SceneValidationError, VideoNotFound
from storyshort.services.media import probe_audio_duration
from storyshort.services.render_graph import RenderPlan, SceneInput, build_command, fit_durations, motion_violations
from storyshort.services.state_machine import StateMachine
from storyshort.services.subtitles import CaptionStyle, estimate_cues, format_srt, srt_to_ass
from storyshort.storage.repository import VideoRecordStore

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp"}
STDERR_TAIL_LINES = 20


class Encoder(Protocol):
    def run(self, command: List[str], cwd: str, should_cancel: Callable[[], bool]) -> None: ...


class FFmpegEncoder:
    """Runs one encoder process, polling for cancellation and enforcing a timeout."""

    def __init__(
        self,
        timeout: float = 900.0,
        poll_interval: float = 1.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.log = logger or logging.getLogger(__name__)

    def run(self, command: List[str], cwd: str, should_cancel: Callable[[], bool]) -> None:
        log_path = os.path.join(cwd, "encoder.log")
        with open(log_path, "wb") as stderr:
            try:
                process = subprocess.Popen(
                    command,
                    cwd=cwd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=stderr,
                )
            except FileNotFoundError as exc:
                raise RenderError(
                    "encoder_missing",
                    f"encoder binary {command[0]!r} was not found; install ffmpeg or set STORYSHORT_FFMPEG_BINARY",
                ) from exc
            deadline = time.monotonic() + self.timeout
            while True:
                try:
                    code = process.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if should_cancel():
                        self._stop(process)
                        raise RenderError("cancelled", "render was cancelled")
                    if time.monotonic() >= deadline:
                        self._stop(process)
                        raise RenderError(
                            "timeout",
                            f"encoder did not finish within {int(self.timeout)} seconds",
                            stderr_tail=self._tail(log_path),
                        )
        if code != 0:
            raise RenderError(
                "encoder_failed",
                f"encoder exited with status {code}",
                stderr_tail=self._tail(log_path),
            )

    def _stop(self, process: subprocess.Popen) -> None:
        process.kill()
        process.wait()

    def _tail(self, path: str) -> str:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return "\n".join(deque((line.rstrip() for line in f), maxlen=STDERR_TAIL_LINES))


class RenderPipeline:
    def __init__(
        self,
        store: VideoRecordStore,
        state_machine: StateMachine,
        storage: S3StorageClient,
        settings: Settings,
        encoder: Optional[Encoder] = None,
        logger: Optional[logging.Logger] = None,
        duration_probe: Callable[[bytes], Optional[float]] = probe_audio_duration,
        caption_style: Optional[CaptionStyle] = None,
    ) -> None:
        self.store = store
        self.state_machine = state_machine
        self.storage = storage
        self.settings = settings
        self.log = logger or logging.getLogger(__name__)
        self.encoder = encoder or FFmpegEncoder(
            timeout=settings.render_timeout,
            poll_interval=settings.render_cancel_poll_interval,
            logger=self.log,
        )
        self._probe_duration = duration_probe
        self.caption_style = caption_style or CaptionStyle()

    def validate(self, video: Video) -> None:
        missing = [idx + 1 for idx in video.missing_images()]
        missing_audio = not video.audio_url
        if missing or missing_audio or not video.storyboard:
            raise SceneValidationError(missing, missing_audio=missing_audio)

    def render(self, video_id: UUID) -> RenderResult:
        video = self._load(video_id)
        self.state_machine.check(video, VideoStatus.RENDERING)
        try:
            self.validate(video)
        except SceneValidationError as exc:
            self.state_machine.transition(video_id, VideoStatus.RENDER_FAILED, error=str(exc))
            self.log.info(
                "render rejected, video is not ready",
                extra={"video_id": str(video_id), "missing_scenes": exc.missing_scenes},
            )
            raise

        video = self.state_machine.transition(video_id, VideoStatus.RENDERING)
        self.log.info("render started", extra={"video_id": str(video_id), "scenes": len(video.storyboard)})
        try:
            content, duration = self._encode(video)
            self._stop_if_cancelled(video_id)
            url = self.storage.put_video_asset(
                video_id,
                "final.mp4",
                content,
                content_type="video/mp4",
            )
        except RenderError as exc:
            self._fail(video_id, exc)
            raise
        except (ValueError, OSError, httpx.HTTPError) as exc:
            error = RenderError("inputs_unavailable", f"render inputs could not be prepared: {exc}")
            self._fail(video_id, error)
            raise error from exc

        try:
            self.state_machine.transition(
                video_id,
                VideoStatus.COMPLETED,
                final_video_url=url,
                total_duration=duration,
            )
        except InvalidTransition:
            if not self.state_machine.is_cancelled(video_id):
                raise
            # cancelled while uploading; the video must not keep a final file
            self.storage.delete_video_asset(video_id, "final.mp4")
            self.log.info("render stopped, video was cancelled", extra={"video_id": str(video_id)})
            raise RenderError("cancelled", "video was cancelled during render")
        self.log.info(
            "render completed",
            extra={"video_id": str(video_id), "duration": duration, "bytes": len(content)},
        )
        return RenderResult(final_url=url, duration=duration)

    def prepare(self, video: Video, workdir: str) -> RenderPlan:
        """Write every render input into ``workdir`` and return the plan over them."""
        file_names: list[str] = []
        for idx, scene in enumerate(video.storyboard):
            name = f"scene-{idx + 1:02d}{self._image_suffix(scene.image_url)}"
            self._write(workdir, name, self._fetch(scene.image_url))
            file_names.append(name)

        audio = self._fetch(video.audio_url)
        self._write(workdir, "audio.mp3", audio)
        audio_duration = self._probe_duration(audio)
        durations = fit_durations([scene.duration_seconds for scene in video.storyboard], audio_duration)
        scenes = [SceneInput(file_name=name, duration=dur) for name, dur in zip(file_names, durations)]

        if video.captions_url:
            srt = self._fetch(video.captions_url).decode("utf-8")
        else:
            srt = format_srt(
                estimate_cues(
                    video.script_text or "",
                    wpm=self.settings.captions_wpm,
                    total_duration=audio_duration or sum(durations),
                )
            )
        ass = srt_to_ass(
            srt,
            style=self.caption_style,
            width=self.settings.render_width,
            height=self.settings.render_height,
        )
        self._write(workdir, "captions.ass", ass.encode("utf-8"))

        return RenderPlan(
            scenes=tuple(scenes),
            audio_file="audio.mp3",
            captions_file="captions.ass",
            output_file="final.mp4",
            width=self.settings.render_width,
            height=self.settings.render_height,
            fps=self.settings.render_fps,
            max_zoom=self.settings.kenburns_max_zoom,
        )

    def _encode(self, video: Video) -> tuple[bytes, float]:
        with tempfile.TemporaryDirectory(prefix="storyshort-render-") as workdir:
            plan = self.prepare(video, workdir)
            outside = motion_violations(plan)
            if outside:
                scenes = ", ".join(str(idx + 1) for idx in outside)
                raise RenderError("invalid_plan", f"camera motion would leave the frame in scene {scenes}")
            command = build_command(plan, binary=self.settings.ffmpeg_binary)
            self.log.debug("encoder command built", extra={"video_id": str(video.id), "args": len(command)})
            self.encoder.run(
                command,
                cwd=workdir,
                should_cancel=lambda: self.state_machine.is_cancelled(video.id),
            )
            output = os.path.join(workdir, plan.output_file)
            if not os.path.exists(output):
                raise RenderError("encoder_failed", "encoder finished without producing a video")
            with open(output, "rb") as f:
                return f.read(), round(plan.total_duration, 3)

    def _stop_if_cancelled(self, video_id: UUID) -> None:
        if self.state_machine.is_cancelled(video_id):
            raise RenderError("cancelled", "video was cancelled during render")

    def _fail(self, video_id: UUID, exc: RenderError) -> None:
        if exc.category == "cancelled" or self.state_machine.is_cancelled(video_id):
            self.log.info("render stopped, video was cancelled", extra={"video_id": str(video_id)})
            return
        message = f"render failed ({exc.category}): {exc}"
        self.log.warning(
            "render failed",
            extra={"video_id": str(video_id), "category": exc.category, "stderr": exc.stderr_tail},
        )
        self.state_machine.transition(video_id, VideoStatus.RENDER_FAILED, error=message)

    def _fetch(self, url: str | None) -> bytes:
        if not url:
            raise ValueError("asset url is missing")
        key = self.storage.key_for_url(url)
        if key:
            return self.storage.download_bytes(key)
        with httpx.Client(timeout=self.settings.provider_timeout) as client:
            response = client.get(url)
            response.raise_for_status()
            return response.content

    def _image_suffix(self, url: str | None) -> str:
        suffix = pathlib.PurePosixPath(urlparse(url or "").path).suffix.lower()
        return suffix if suffix in IMAGE_SUFFIXES else ".png"

    def _write(self, workdir: str, name: str, content: bytes) -> None:
        with open(os.path.join(workdir, name), "wb") as f:
            f.write(content)

    def _load(self, video_id: UUID) -> Video:
        video = self.store.get(video_id)
        if video is None:
            raise VideoNotFound(video_id)
        return video
