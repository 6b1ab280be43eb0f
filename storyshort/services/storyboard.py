from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional, TypeVar
from uuid import UUID

from storyshort.models.domain import Scene, Video, VideoProgress, VideoStatus
from storyshort.services.errors import NoStoryboard, StoryboardEditError, VideoNotFound
from storyshort.services.state_machine import StateMachine
from storyshort.storage.repository import VideoRecordStore

T = TypeVar("T")

LOCKED_STATUSES = frozenset({VideoStatus.RENDERING, VideoStatus.COMPLETED})


class StoryboardVersioner:
    """Owns storyboard content outside the asset orchestrator.

    Every edit bumps ``storyboard_version``; edits that make a scene's image
    stale add the scene to ``dirty_scenes`` so the next asset pass regenerates
    exactly those images. Existing ``image_url`` values stay until overwritten.
    """

    def __init__(
        self,
        store: VideoRecordStore,
        state_machine: StateMachine,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.state_machine = state_machine
        self.log = logger or logging.getLogger(__name__)

    def record_storyboard(self, video_id: UUID, scenes: List[Scene]) -> Video:
        if not scenes:
            raise StoryboardEditError("a storyboard needs at least one scene")
        current = self.store.get(video_id)
        if current is None:
            raise VideoNotFound(video_id)
        video = self.state_machine.transition(
            video_id,
            VideoStatus.STORYBOARD_GENERATED,
            storyboard=[scene.model_copy(deep=True) for scene in scenes],
            storyboard_version=current.storyboard_version + 1,
            dirty_scenes=set(),
            progress=VideoProgress(
                images_total=len(scenes),
                images_done=sum(1 for scene in scenes if scene.image_url),
                audio_done=bool(current.audio_url),
                captions_done=bool(current.captions_url),
            ),
        )
        self.log.info(
            "storyboard recorded",
            extra={"video_id": str(video_id), "scenes": len(scenes), "version": video.storyboard_version},
        )
        return video

    def mark_dirty(self, video_id: UUID, indices: Iterable[int]) -> Video:
        wanted = sorted(set(indices))

        def change(video: Video) -> None:
            self._check_editable(video)
            for idx in wanted:
                self._check_index(video, idx)
            video.dirty_scenes.update(wanted)
            for idx in wanted:
                video.storyboard[idx].revision += 1
            video.storyboard_version += 1
            self._sync_images_done(video)

        video = self._edit(video_id, change)
        self.log.info(
            "scenes marked dirty",
            extra={"video_id": str(video_id), "scenes": [idx + 1 for idx in wanted], "version": video.storyboard_version},
        )
        return video

    def apply_edit(
        self,
        video_id: UUID,
        index: int,
        text: str | None = None,
        duration_seconds: float | None = None,
        image_prompt: str | None = None,
    ) -> Video:
        if text is not None and not text.strip():
            raise StoryboardEditError("scene text cannot be empty")
        if duration_seconds is not None and duration_seconds <= 0:
            raise StoryboardEditError("scene duration must be positive")

        def change(video: Video) -> bool:
            self._check_editable(video)
            self._check_index(video, index)
            scene = video.storyboard[index]
            stale = False
            changed = False
            if text is not None and text.strip() != scene.text:
                scene.text = text.strip()
                stale = changed = True
            if image_prompt is not None and (image_prompt.strip() or None) != scene.image_prompt:
                scene.image_prompt = image_prompt.strip() or None
                stale = changed = True
            if duration_seconds is not None and duration_seconds != scene.duration_seconds:
                scene.duration_seconds = duration_seconds
                changed = True
            if stale:
                scene.revision += 1
                video.dirty_scenes.add(index)
                self._sync_images_done(video)
            if changed:
                video.storyboard_version += 1
            return changed

        result = self.store.mutate(video_id, change)
        if result is None:
            raise VideoNotFound(video_id)
        video, changed = result
        if changed:
            self.log.info(
                "scene edited",
                extra={
                    "video_id": str(video_id),
                    "scene": index + 1,
                    "dirty": index in video.dirty_scenes,
                    "version": video.storyboard_version,
                },
            )
        return video

    def reorder_scenes(self, video_id: UUID, order: List[int]) -> Video:
        def change(video: Video) -> None:
            self._check_editable(video)
            if sorted(order) != list(range(len(video.storyboard))):
                raise StoryboardEditError(
                    f"order must list every scene index from 0 to {len(video.storyboard) - 1} exactly once"
                )
            video.storyboard = [video.storyboard[old] for old in order]
            video.dirty_scenes = {new for new, old in enumerate(order) if old in video.dirty_scenes}
            video.storyboard_version += 1

        video = self._edit(video_id, change)
        self.log.info("scenes reordered", extra={"video_id": str(video_id), "order": order})
        return video

    def delete_scene(self, video_id: UUID, index: int) -> Video:
        def change(video: Video) -> None:
            self._check_editable(video)
            self._check_index(video, index)
            if len(video.storyboard) == 1:
                raise StoryboardEditError("cannot delete the only scene of a storyboard")
            del video.storyboard[index]
            video.dirty_scenes = {
                idx if idx < index else idx - 1 for idx in video.dirty_scenes if idx != index
            }
            video.storyboard_version += 1
            video.progress.images_total = len(video.storyboard)
            self._sync_images_done(video)

        video = self._edit(video_id, change)
        self.log.info("scene deleted", extra={"video_id": str(video_id), "scene": index + 1})
        return video

    def _edit(self, video_id: UUID, change: Callable[[Video], T]) -> Video:
        result = self.store.mutate(video_id, change)
        if result is None:
            raise VideoNotFound(video_id)
        return result[0]

    def _check_editable(self, video: Video) -> None:
        if not video.storyboard:
            raise NoStoryboard(video.id)
        if video.status in LOCKED_STATUSES:
            raise StoryboardEditError(f"storyboard cannot be edited while the video is {video.status.value}")

    def _check_index(self, video: Video, index: int) -> None:
        if index < 0 or index >= len(video.storyboard):
            raise StoryboardEditError(
                f"scene index {index} is out of range for a storyboard of {len(video.storyboard)} scenes"
            )

    def _sync_images_done(self, video: Video) -> None:
        video.progress.images_done = min(video.progress.images_done, video.images_ready())
