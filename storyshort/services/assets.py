from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, List, Optional
from uuid import UUID

import httpx

from storyshort.clients.errors import ErrorCategory, InvalidInputError, ProviderError
from storyshort.clients.s3_storage import S3StorageClient
from storyshort.config import Settings
from storyshort.models.domain import (
    AssetFailure,
    AssetRun,
    EnsureAssetsResult,
    Video,
    VideoProgress,
    VideoStatus,
)
from storyshort.services.errors import InvalidTransition, NoStoryboard, StoryboardEditError, VideoNotFound
from storyshort.services.media import probe_audio_duration
from storyshort.services.remote_assets import RemoteAssetServices
from storyshort.services.state_machine import StateMachine
from storyshort.services.subtitles import estimate_cues, format_srt, parse_captions, plain_narration
from storyshort.storage.repository import VideoRecordStore

FATAL_CATEGORIES = frozenset(
    {
        ErrorCategory.QUOTA_EXCEEDED.value,
        ErrorCategory.MISSING_CREDENTIALS.value,
        ErrorCategory.INVALID_INPUT.value,
        ErrorCategory.POLICY_VIOLATION.value,
    }
)

# statuses an empty work plan settles into assets_generated
SETTLE_STATUSES = frozenset(
    {
        VideoStatus.STORYBOARD_GENERATED,
        VideoStatus.ASSETS_GENERATING,
        VideoStatus.ASSETS_FAILED,
        VideoStatus.RENDER_FAILED,
        VideoStatus.CANCELLED,
    }
)


@dataclass
class AssetPlan:
    images: List[int] = field(default_factory=list)
    audio: bool = False
    captions: bool = False

    def empty(self) -> bool:
        return not self.images and not self.audio and not self.captions


class AssetOrchestrator:
    """Generates whatever a video is missing: scene images, narration, captions.

    Every ``ensure_*`` operation re-reads the record right before deciding
    whether work is needed, so overlapping calls for the same video at worst
    regenerate an equivalent asset.
    """

    def __init__(
        self,
        store: VideoRecordStore,
        state_machine: StateMachine,
        remote: RemoteAssetServices,
        storage: S3StorageClient,
        settings: Settings,
        logger: Optional[logging.Logger] = None,
        on_progress: Optional[Callable[[UUID], None]] = None,
        duration_probe: Callable[[bytes], Optional[float]] = probe_audio_duration,
    ) -> None:
        self.store = store
        self.state_machine = state_machine
        self.remote = remote
        self.storage = storage
        self.settings = settings
        self.log = logger or logging.getLogger(__name__)
        self.on_progress = on_progress
        self._probe_duration = duration_probe

    # --- planning -----------------------------------------------------------------

    def plan(self, video: Video) -> AssetPlan:
        return AssetPlan(
            images=[
                idx
                for idx, scene in enumerate(video.storyboard)
                if not scene.image_url or idx in video.dirty_scenes
            ],
            audio=not video.audio_url,
            captions=not video.captions_url,
        )

    def outstanding(self, video: Video) -> list[str]:
        items = [f"image for scene {idx + 1}" for idx in self.plan(video).images]
        if not video.audio_url:
            items.append("audio")
        if not video.captions_url:
            items.append("captions")
        return items

    # --- full pass ------------------------------------------------------------------

    def ensure_assets(self, video_id: UUID) -> EnsureAssetsResult:
        video = self._load(video_id)
        if not video.storyboard:
            raise NoStoryboard(video_id)
        plan = self.plan(video)
        if plan.empty():
            return self._settle(video)

        total = len(video.storyboard)
        self.state_machine.transition(
            video_id,
            VideoStatus.ASSETS_GENERATING,
            progress=VideoProgress(
                images_done=min(video.images_ready(), total),
                images_total=total,
                audio_done=bool(video.audio_url),
                captions_done=bool(video.captions_url),
            ),
        )
        self._notify(video_id)
        self.log.info(
            "asset pass started",
            extra={
                "video_id": str(video_id),
                "images": plan.images,
                "audio": plan.audio,
                "captions": plan.captions,
            },
        )

        run = AssetRun()
        failures: list[AssetFailure] = []
        if plan.images:
            self._generate_images(video_id, plan.images, run, failures)
        if plan.audio and not self._cancelled(video_id):
            run.audio = self._attempt(video_id, "audio", self.ensure_audio, failures)
        if plan.captions and not self._cancelled(video_id):
            run.captions = self._attempt(video_id, "captions", self.ensure_captions, failures)
        return self._finish(video_id, run, failures)

    def _generate_images(
        self,
        video_id: UUID,
        indices: list[int],
        run: AssetRun,
        failures: list[AssetFailure],
    ) -> None:
        workers = max(1, min(self.settings.image_concurrency, len(indices)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scene-image") as pool:
            futures = {pool.submit(self._scene_task, video_id, idx): idx for idx in indices}
            for future in as_completed(futures):
                idx = futures[future]
                try:
                    did_work = future.result()
                except ProviderError as exc:
                    failures.append(self._failure("image", exc, scene=idx + 1))
                    continue
                except (ValueError, httpx.HTTPError) as exc:
                    self.log.warning(
                        "scene image could not be stored",
                        extra={"video_id": str(video_id), "scene": idx + 1},
                        exc_info=True,
                    )
                    failures.append(
                        AssetFailure(
                            kind="image",
                            scene=idx + 1,
                            category=ErrorCategory.TRANSIENT.value,
                            message=f"scene {idx + 1} image could not be stored: {exc}",
                        )
                    )
                    continue
                if did_work:
                    run.images.append(idx)
        run.images.sort()

    def _attempt(
        self,
        video_id: UUID,
        kind: str,
        operation: Callable[[UUID], bool],
        failures: list[AssetFailure],
    ) -> bool:
        try:
            return operation(video_id)
        except ProviderError as exc:
            failures.append(self._failure(kind, exc))
        except VideoNotFound:
            raise
        except (ValueError, httpx.HTTPError) as exc:
            self.log.warning("%s could not be stored", kind, extra={"video_id": str(video_id)}, exc_info=True)
            failures.append(
                AssetFailure(
                    kind=kind,
                    category=ErrorCategory.TRANSIENT.value,
                    message=f"{kind} could not be stored: {exc}",
                )
            )
        return False

    def _scene_task(self, video_id: UUID, index: int) -> bool:
        if self._cancelled(video_id):
            return False
        return self.ensure_scene_image(video_id, index)

    def _finish(self, video_id: UUID, run: AssetRun, failures: list[AssetFailure]) -> EnsureAssetsResult:
        video = self._load(video_id)
        outstanding = self.outstanding(video)
        if video.status == VideoStatus.CANCELLED:
            return self._result(
                video,
                ok=False,
                run=run,
                message="video was cancelled; request assets again to resume",
                failures=failures,
                outstanding=outstanding,
            )

        fatal = [failure for failure in failures if failure.category in FATAL_CATEGORIES]
        error: str | None = None
        if fatal:
            target = VideoStatus.ASSETS_FAILED
            error = fatal[0].message
            message = error
        elif not outstanding:
            target = VideoStatus.ASSETS_GENERATED
            message = "all assets generated"
        else:
            target = VideoStatus.ASSETS_GENERATING
            message = "assets still outstanding: " + ", ".join(outstanding)

        try:
            video = self.state_machine.transition(video_id, target, error=error)
        except InvalidTransition:
            # another worker moved the video on while this pass was running
            self.log.warning(
                "asset pass could not record its outcome",
                extra={"video_id": str(video_id), "target": target.value},
                exc_info=True,
            )
            video = self._load(video_id)
        self._notify(video_id)
        self.log.info(
            "asset pass finished",
            extra={
                "video_id": str(video_id),
                "status": video.status.value,
                "images": run.images,
                "failures": len(failures),
            },
        )
        return self._result(
            video,
            ok=target != VideoStatus.ASSETS_FAILED,
            run=run,
            message=message,
            failures=failures,
            outstanding=outstanding,
        )

    def _settle(self, video: Video) -> EnsureAssetsResult:
        if video.status in SETTLE_STATUSES:
            total = len(video.storyboard)
            video = self.state_machine.transition(
                video.id,
                VideoStatus.ASSETS_GENERATED,
                progress=VideoProgress(
                    images_done=total,
                    images_total=total,
                    audio_done=True,
                    captions_done=True,
                ),
            )
            self._notify(video.id)
        return self._result(video, ok=True, run=AssetRun(), message="all assets already generated")

    # --- per-kind idempotent operations ---------------------------------------------

    def ensure_scene_image(self, video_id: UUID, index: int) -> bool:
        video = self._load(video_id)
        if index < 0 or index >= len(video.storyboard):
            raise StoryboardEditError(f"scene {index + 1} does not exist")
        scene = video.storyboard[index]
        if scene.image_url and index not in video.dirty_scenes:
            return False

        revision = scene.revision
        prompt = scene.prompt
        image = self.remote.generate_image(prompt)
        url = self.storage.put_video_asset(
            video_id,
            f"images/scene-{index + 1}.{image.extension}",
            image.content,
            content_type=image.content_type,
        )

        def change(draft: Video) -> bool:
            if index >= len(draft.storyboard):
                return False
            current = draft.storyboard[index]
            if current.prompt != prompt:
                return False
            current.image_url = url
            if current.revision == revision:
                draft.dirty_scenes.discard(index)
            progress = draft.progress
            progress.images_total = len(draft.storyboard)
            progress.images_done = min(progress.images_total, max(progress.images_done, draft.images_ready()))
            return True

        result = self.store.mutate(video_id, change)
        if result is None:
            raise VideoNotFound(video_id)
        _, applied = result
        if not applied:
            self.log.info(
                "scene changed while its image was generating",
                extra={"video_id": str(video_id), "scene": index + 1},
            )
        else:
            self.log.debug(
                "scene image stored",
                extra={"video_id": str(video_id), "scene": index + 1, "width": image.width, "height": image.height},
            )
        self._notify(video_id)
        return True

    def ensure_audio(self, video_id: UUID) -> bool:
        video = self._load(video_id)
        if video.audio_url:
            if not video.progress.audio_done:
                self._set_progress(video_id, audio_done=True)
            return False
        narration = plain_narration(video.script_text)
        if not narration:
            raise InvalidInputError("narration", "the video has no script to narrate")
        audio = self.remote.synthesize_speech(narration)
        url = self.storage.put_video_asset(video_id, "audio.mp3", audio, content_type="audio/mpeg")

        def change(draft: Video) -> None:
            draft.audio_url = url
            draft.progress.audio_done = True

        if self.store.mutate(video_id, change) is None:
            raise VideoNotFound(video_id)
        self.log.info("narration audio stored", extra={"video_id": str(video_id), "bytes": len(audio)})
        self._notify(video_id)
        return True

    def ensure_captions(self, video_id: UUID) -> bool:
        video = self._load(video_id)
        if video.captions_url:
            if not video.progress.captions_done:
                self._set_progress(video_id, captions_done=True)
            return False

        audio = self._fetch_audio(video)
        srt: str | None = None
        source = "estimate"
        if audio and self.remote.transcription_enabled():
            try:
                cues = parse_captions(self.remote.transcribe(audio))
                if cues:
                    # stored as SRT whichever caption format the transcriber produced
                    srt = format_srt(cues)
                    source = "transcription"
            except Exception:
                self.log.warning(
                    "transcription failed, falling back to estimated timing",
                    extra={"video_id": str(video_id)},
                    exc_info=True,
                )
                srt = None
        if srt is None:
            duration = self._probe_duration(audio) if audio else None
            cues = estimate_cues(video.script_text or "", wpm=self.settings.captions_wpm, total_duration=duration)
            if not cues:
                raise InvalidInputError("captions", "the video has no script to caption")
            srt = format_srt(cues)

        url = self.storage.put_video_asset(
            video_id,
            "captions.srt",
            srt.encode("utf-8"),
            content_type="application/x-subrip; charset=utf-8",
        )

        def change(draft: Video) -> None:
            draft.captions_url = url
            draft.progress.captions_done = True

        if self.store.mutate(video_id, change) is None:
            raise VideoNotFound(video_id)
        self.log.info("captions stored", extra={"video_id": str(video_id), "source": source})
        self._notify(video_id)
        return True

    # --- helpers ------------------------------------------------------------------------

    def _fetch_audio(self, video: Video) -> bytes | None:
        if not video.audio_url:
            return None
        key = self.storage.key_for_url(video.audio_url)
        try:
            if key:
                return self.storage.download_bytes(key)
            with httpx.Client(timeout=self.settings.provider_timeout) as client:
                response = client.get(video.audio_url)
                response.raise_for_status()
                return response.content
        except (ValueError, httpx.HTTPError):
            self.log.warning("narration audio unavailable", extra={"video_id": str(video.id)}, exc_info=True)
            return None

    def _failure(self, kind: str, exc: ProviderError, scene: int | None = None) -> AssetFailure:
        self.log.warning(
            "asset generation failed",
            extra={
                "kind": kind,
                "scene": scene,
                "provider": exc.provider,
                "category": exc.category.value,
                "detail": exc.detail,
            },
        )
        message = exc.user_message if scene is None else f"scene {scene}: {exc.user_message}"
        return AssetFailure(kind=kind, scene=scene, category=exc.category.value, message=message)

    def _result(
        self,
        video: Video,
        ok: bool,
        run: AssetRun,
        message: str,
        failures: list[AssetFailure] | None = None,
        outstanding: list[str] | None = None,
    ) -> EnsureAssetsResult:
        return EnsureAssetsResult(
            ok=ok,
            ran=run,
            urls={"audio": video.audio_url, "captions": video.captions_url},
            next_status=video.status,
            message=message,
            failures=failures or [],
            outstanding=outstanding or [],
        )

    def _set_progress(self, video_id: UUID, **values: bool) -> None:
        def change(draft: Video) -> None:
            for name, value in values.items():
                setattr(draft.progress, name, value)

        self.store.mutate(video_id, change)

    def _load(self, video_id: UUID) -> Video:
        video = self.store.get(video_id)
        if video is None:
            raise VideoNotFound(video_id)
        return video

    def _cancelled(self, video_id: UUID) -> bool:
        return self.state_machine.is_cancelled(video_id)

    def _notify(self, video_id: UUID) -> None:
        if self.on_progress is not None:
            self.on_progress(video_id)
