from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, List, TypeVar
from uuid import UUID

from storyshort.models.domain import Video

T = TypeVar("T")


class VideoRecordStore:
    """Single-row-per-video store. Every read hands out a deep copy."""

    def __init__(self) -> None:
        self._videos: Dict[UUID, Video] = {}
        self._lock = Lock()

    def save(self, video: Video) -> Video:
        with self._lock:
            video.updated_at = datetime.utcnow()
            self._videos[video.id] = video.model_copy(deep=True)
        return video

    def get(self, video_id: UUID) -> Video | None:
        with self._lock:
            video = self._videos.get(video_id)
            return video.model_copy(deep=True) if video else None

    def list(self) -> List[Video]:
        with self._lock:
            return [video.model_copy(deep=True) for video in self._videos.values()]

    def delete(self, video_id: UUID) -> bool:
        with self._lock:
            return self._videos.pop(video_id, None) is not None

    def update(self, video_id: UUID, **fields: Any) -> Video | None:
        """Atomically overwrite top-level fields."""
        with self._lock:
            current = self._videos.get(video_id)
            if current is None:
                return None
            updated = current.model_copy(update=fields, deep=True)
            updated.updated_at = datetime.utcnow()
            self._videos[video_id] = updated
            return updated.model_copy(deep=True)

    def mutate(self, video_id: UUID, change: Callable[[Video], T]) -> tuple[Video, T] | None:
        """Atomic read-modify-write.

        ``change`` receives a private copy of the current row; the copy is
        committed only if ``change`` returns without raising.
        """
        with self._lock:
            current = self._videos.get(video_id)
            if current is None:
                return None
            draft = current.model_copy(deep=True)
            result = change(draft)
            draft.updated_at = datetime.utcnow()
            self._videos[video_id] = draft
            return draft.model_copy(deep=True), result
