from __future__ import annotations

import logging
import threading
from typing import Callable, Iterator, List, Optional
from uuid import UUID, uuid4

from storyshort.clients.images import OpenAIImageClient
from storyshort.clients.s3_storage import S3StorageClient
from storyshort.clients.tts import ElevenLabsClient
from storyshort.clients.whisper import LocalWhisperClient
from storyshort.config import Settings
from storyshort.events.publisher import ProgressEventPublisher
from storyshort.models.api import AssetsSummary, VideoStatusResponse
from storyshort.models.domain import (
    EnsureAssetsResult,
    ProgressEvent,
    RenderResult,
    Scene,
    Video,
    VideoStatus,
)
from storyshort.queue.queue import BaseQueue
from storyshort.services.assets import AssetOrchestrator
from storyshort.services.errors import RenderError, SceneValidationError, VideoNotFound
from storyshort.services.media import probe_audio_duration
from storyshort.services.progress import ProgressReporter
from storyshort.services.remote_assets import ImageGenerator, RemoteAssetServices, SpeechSynthesizer, Transcriber
from storyshort.services.render import Encoder, RenderPipeline
from storyshort.services.state_machine import StateMachine
from storyshort.services.storyboard import StoryboardVersioner
from storyshort.storage.repository import VideoRecordStore

FAILURE_FOR_STAGE = {
    "script": VideoStatus.SCRIPT_FAILED,
    "storyboard": VideoStatus.STORYBOARD_FAILED,
    "assets": VideoStatus.ASSETS_FAILED,
    "render": VideoStatus.RENDER_FAILED,
}


class VideoService:
    """Wires the orchestration components together for the HTTP layer and the queue."""

    def __init__(
        self,
        repo: VideoRecordStore,
        settings: Settings,
        *,
        tts: Optional[SpeechSynthesizer] = None,
        images: Optional[ImageGenerator] = None,
        transcriber: Optional[Transcriber] = None,
        storage: Optional[S3StorageClient] = None,
        encoder: Optional[Encoder] = None,
        duration_probe: Callable[[bytes], Optional[float]] = probe_audio_duration,
    ) -> None:
        self.repo = repo
        self.queue: BaseQueue | None = None
        self.settings = settings
        self.log = logging.getLogger(__name__)

        self.tts = tts or ElevenLabsClient(
            api_key=settings.elevenlabs_api_key,
            voice_id=settings.elevenlabs_voice_id,
            model_id=settings.elevenlabs_model_id,
            base_url=settings.elevenlabs_base_url,
            timeout=settings.provider_timeout,
            logger=self.log,
        )
        self.images = images or OpenAIImageClient(
            api_key=settings.openai_api_key,
            model=settings.openai_image_model,
            size=settings.image_size,
            base_url=settings.openai_base_url,
            timeout=settings.provider_timeout,
            logger=self.log,
        )
        self.whisper = transcriber
        if self.whisper is None and settings.whisper_local_model:
            self.whisper = LocalWhisperClient(model_name=settings.whisper_local_model, logger=self.log)
        self.storage = storage or S3StorageClient(
            bucket=settings.s3_bucket,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            endpoint_url=settings.s3_endpoint_url,
            region_name=settings.s3_region,
            public_url=settings.s3_public_url,
            timeout=settings.provider_timeout,
            addressing_style=settings.s3_addressing_style,
            folder_prefix=settings.storage_folder_prefix,
        )

        self.events: ProgressEventPublisher | None = None
        if settings.kafka_enabled and settings.kafka_updates_topic:
            try:
                self.events = ProgressEventPublisher(
                    bootstrap_servers=settings.kafka_bootstrap_servers,
                    topic=settings.kafka_updates_topic,
                    logger=self.log,
                )
            except Exception:  # pragma: no cover - best effort logging
                self.log.warning(
                    "progress event publisher unavailable",
                    extra={"topic": settings.kafka_updates_topic},
                    exc_info=True,
                )

        self.state_machine = StateMachine(repo, logger=self.log)
        self.progress = ProgressReporter(repo, settings, publisher=self.events, logger=self.log)
        self.remote = RemoteAssetServices(self.tts, self.images, self.whisper, settings, logger=self.log)
        self.assets = AssetOrchestrator(
            repo,
            self.state_machine,
            self.remote,
            self.storage,
            settings,
            logger=self.log,
            on_progress=self.progress.push,
            duration_probe=duration_probe,
        )
        self.storyboard = StoryboardVersioner(repo, self.state_machine, logger=self.log)
        self.renderer = RenderPipeline(
            repo,
            self.state_machine,
            self.storage,
            settings,
            encoder=encoder,
            logger=self.log,
            duration_probe=duration_probe,
        )

    def bind_queue(self, queue: BaseQueue) -> None:
        self.queue = queue

    # --- records ------------------------------------------------------------------

    def create_video(self, input_text: str | None = None, script_text: str | None = None) -> Video:
        video = Video(id=uuid4(), input_text=(input_text or "").strip() or None)
        self.repo.save(video)
        self.log.info("video created", extra={"video_id": str(video.id)})
        if script_text:
            return self.record_script(video.id, script_text)
        self.progress.push(video.id)
        return video

    def get_video(self, video_id: UUID) -> Video:
        video = self.repo.get(video_id)
        if video is None:
            raise VideoNotFound(video_id)
        return video

    def list_videos(self) -> List[Video]:
        videos = self.repo.list()
        videos.sort(key=lambda item: item.created_at, reverse=True)
        return videos

    def status(self, video_id: UUID) -> VideoStatusResponse:
        video = self.get_video(video_id)
        return VideoStatusResponse(
            status=video.status,
            assets=AssetsSummary(
                images=video.images_ready(),
                audio=bool(video.audio_url),
                captions=bool(video.captions_url),
                render_ready=video.render_ready(),
            ),
            error_message=video.error_message,
        )

    def record_script(self, video_id: UUID, script_text: str) -> Video:
        video = self.state_machine.transition(
            video_id,
            VideoStatus.SCRIPT_GENERATED,
            script_text=script_text.strip(),
        )
        self.progress.push(video_id)
        return video

    def approve_script(self, video_id: UUID) -> Video:
        video = self.state_machine.transition(video_id, VideoStatus.SCRIPT_APPROVED)
        self.progress.push(video_id)
        return video

    def record_storyboard(self, video_id: UUID, scenes: List[Scene]) -> Video:
        video = self.storyboard.record_storyboard(video_id, scenes)
        self.progress.push(video_id)
        return video

    def fail_stage(self, video_id: UUID, stage: str, message: str) -> Video:
        target = FAILURE_FOR_STAGE.get(stage)
        if target is None:
            raise ValueError(f"unknown stage {stage!r}")
        video = self.state_machine.transition(video_id, target, error=message)
        self.progress.push(video_id)
        return video

    def cancel(self, video_id: UUID) -> Video:
        video = self.state_machine.cancel(video_id)
        self.progress.push(video_id)
        return video

    # --- storyboard edits ---------------------------------------------------------------

    def edit_scene(
        self,
        video_id: UUID,
        index: int,
        text: str | None = None,
        duration_seconds: float | None = None,
        image_prompt: str | None = None,
    ) -> Video:
        return self.storyboard.apply_edit(
            video_id,
            index,
            text=text,
            duration_seconds=duration_seconds,
            image_prompt=image_prompt,
        )

    def reorder_scenes(self, video_id: UUID, order: List[int]) -> Video:
        return self.storyboard.reorder_scenes(video_id, order)

    def delete_scene(self, video_id: UUID, index: int) -> Video:
        return self.storyboard.delete_scene(video_id, index)

    def regenerate_scene(self, video_id: UUID, index: int) -> EnsureAssetsResult:
        self.storyboard.mark_dirty(video_id, [index])
        return self.assets.ensure_assets(video_id)

    # --- pipeline ----------------------------------------------------------------------

    def ensure_assets(self, video_id: UUID) -> EnsureAssetsResult:
        return self.assets.ensure_assets(video_id)

    def render(self, video_id: UUID) -> RenderResult:
        try:
            return self.renderer.render(video_id)
        finally:
            self.progress.push(video_id)

    def enqueue(self, video_id: UUID) -> bool:
        self.get_video(video_id)
        if self.queue is None:
            raise RuntimeError("no processing queue is bound")
        queued = self.queue.enqueue(video_id)
        self.log.info("video queued for processing", extra={"video_id": str(video_id), "queued": queued})
        return queued

    def process_video(self, video_id: UUID) -> None:
        """Queue entry point: fill in missing assets, then render when ready."""
        result = self.assets.ensure_assets(video_id)
        if result.next_status != VideoStatus.ASSETS_GENERATED:
            self.log.info(
                "video not ready to render after asset pass",
                extra={"video_id": str(video_id), "status": result.next_status.value, "message": result.message},
            )
            return
        try:
            self.render(video_id)
        except (SceneValidationError, RenderError) as exc:
            self.log.warning(
                "video render did not complete",
                extra={"video_id": str(video_id), "error": str(exc)},
            )

    # --- progress ----------------------------------------------------------------------

    def progress_snapshot(self, video_id: UUID) -> ProgressEvent:
        return self.progress.snapshot(video_id)

    def progress_stream(self, video_id: UUID, stop: threading.Event | None = None) -> Iterator[ProgressEvent]:
        return self.progress.subscribe(video_id, stop=stop)

    def close(self) -> None:
        if self.queue is not None:
            self.queue.close()
        if self.events is not None:
            self.events.close()
