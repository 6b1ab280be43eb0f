from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, Optional
from uuid import UUID

from storyshort.models.domain import Video, VideoStatus
from storyshort.services.errors import InvalidTransition, VideoNotFound
from storyshort.storage.repository import VideoRecordStore

S = VideoStatus

TRANSITIONS: Dict[VideoStatus, FrozenSet[VideoStatus]] = {
    S.PENDING: frozenset({S.SCRIPT_GENERATED, S.SCRIPT_FAILED, S.CANCELLED}),
    S.SCRIPT_GENERATED: frozenset({S.SCRIPT_APPROVED, S.SCRIPT_GENERATED, S.SCRIPT_FAILED, S.CANCELLED}),
    S.SCRIPT_APPROVED: frozenset({S.STORYBOARD_GENERATED, S.STORYBOARD_FAILED, S.CANCELLED}),
    S.STORYBOARD_GENERATED: frozenset({S.ASSETS_GENERATING, S.ASSETS_GENERATED, S.ASSETS_FAILED, S.CANCELLED}),
    S.ASSETS_GENERATING: frozenset(
        {S.ASSETS_GENERATING, S.ASSETS_GENERATED, S.ASSETS_FAILED, S.RENDERING, S.RENDER_FAILED, S.CANCELLED}
    ),
    S.ASSETS_GENERATED: frozenset({S.ASSETS_GENERATING, S.RENDERING, S.RENDER_FAILED, S.CANCELLED}),
    S.RENDERING: frozenset({S.COMPLETED, S.RENDER_FAILED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.SCRIPT_FAILED: frozenset({S.SCRIPT_GENERATED, S.CANCELLED}),
    S.STORYBOARD_FAILED: frozenset({S.STORYBOARD_GENERATED, S.CANCELLED}),
    S.ASSETS_FAILED: frozenset({S.ASSETS_GENERATING, S.ASSETS_GENERATED, S.ASSETS_FAILED, S.CANCELLED}),
    S.RENDER_FAILED: frozenset(
        {S.RENDERING, S.RENDER_FAILED, S.ASSETS_GENERATING, S.ASSETS_GENERATED, S.CANCELLED}
    ),
    # retry after cancellation goes back through the orchestrator
    S.CANCELLED: frozenset({S.ASSETS_GENERATING, S.ASSETS_GENERATED}),
}


def can_transition(current: VideoStatus, target: VideoStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


class StateMachine:
    """The only writer of ``Video.status``."""

    def __init__(self, store: VideoRecordStore, logger: Optional[logging.Logger] = None) -> None:
        self.store = store
        self.log = logger or logging.getLogger(__name__)

    def check(self, video: Video, target: VideoStatus) -> None:
        if not can_transition(video.status, target):
            raise InvalidTransition(video.status, target)

    def apply(self, video: Video, target: VideoStatus, error: str | None = None) -> Video:
        """Validate ``target`` against ``video`` and mutate the model in place."""
        self.check(video, target)
        if target == S.RENDERING and not video.render_ready():
            raise InvalidTransition(video.status, target, "every scene needs an image and the audio must exist")
        if target == S.COMPLETED and not video.final_video_url:
            raise InvalidTransition(video.status, target, "final video url is not set")
        if target.is_failure:
            message = error or video.error_message
            if not message:
                raise InvalidTransition(video.status, target, "failure states require an error message")
            video.error_message = message
        else:
            video.error_message = None
        video.status = target
        return video

    def transition(
        self,
        video_id: UUID,
        target: VideoStatus,
        error: str | None = None,
        **fields: Any,
    ) -> Video:
        """Atomically apply ``fields`` and move to ``target``.

        Nothing is written when the transition is rejected.
        """
        previous: dict[str, VideoStatus] = {}

        def change(video: Video) -> None:
            previous["status"] = video.status
            for name, value in fields.items():
                setattr(video, name, value)
            self.apply(video, target, error)

        result = self.store.mutate(video_id, change)
        if result is None:
            raise VideoNotFound(video_id)
        video, _ = result
        if previous["status"] != target:
            self.log.info(
                "video status changed",
                extra={"video_id": str(video_id), "from": previous["status"].value, "to": target.value},
            )
        return video

    def cancel(self, video_id: UUID) -> Video:
        return self.transition(video_id, S.CANCELLED)

    def is_cancelled(self, video_id: UUID) -> bool:
        video = self.store.get(video_id)
        return video is not None and video.status == S.CANCELLED
