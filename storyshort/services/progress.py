from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Iterator, Optional
from uuid import UUID

from storyshort.config import Settings
from storyshort.events.publisher import ProgressEventPublisher
from storyshort.models.domain import ProgressEvent, Video, VideoStatus
from storyshort.storage.repository import VideoRecordStore

S = VideoStatus

STATUS_PERCENTAGE: Dict[VideoStatus, int] = {
    S.PENDING: 0,
    S.SCRIPT_GENERATED: 10,
    S.SCRIPT_APPROVED: 20,
    S.STORYBOARD_GENERATED: 30,
    S.ASSETS_GENERATING: 35,
    S.ASSETS_GENERATED: 85,
    S.RENDERING: 90,
    S.COMPLETED: 100,
    # failures report the stage they stopped in
    S.SCRIPT_FAILED: 0,
    S.STORYBOARD_FAILED: 20,
    S.ASSETS_FAILED: 35,
    S.RENDER_FAILED: 85,
    S.CANCELLED: 0,
}
ASSET_SPAN = 45

EVENT_PROGRESS = "progress"
EVENT_DONE = "done"
EVENT_ERROR = "error"
EVENT_INITIALIZING = "initializing"
TERMINAL_EVENTS = frozenset({EVENT_DONE, EVENT_ERROR})


def percentage_for(video: Video) -> int:
    base = STATUS_PERCENTAGE.get(video.status, 0)
    if video.status != S.ASSETS_GENERATING:
        return base
    progress = video.progress
    images_total = progress.images_total or len(video.storyboard)
    units = images_total + 2
    done = min(progress.images_done, images_total) + int(progress.audio_done) + int(progress.captions_done)
    return base + int(ASSET_SPAN * done / units)


def event_for(video: Video) -> ProgressEvent:
    if video.status.is_terminal:
        kind = EVENT_DONE
        detail = "video completed" if video.status == S.COMPLETED else "video cancelled"
    elif video.status.is_failure:
        kind = EVENT_ERROR
        detail = video.error_message
    else:
        kind = EVENT_PROGRESS
        detail = _describe(video)
    return ProgressEvent(
        type=kind,
        status=video.status,
        percentage=percentage_for(video),
        detail=detail,
        assets=video.progress.model_copy(),
    )


def _describe(video: Video) -> str:
    if video.status == S.ASSETS_GENERATING:
        progress = video.progress
        parts = [f"images {progress.images_done}/{progress.images_total}"]
        parts.append("audio ready" if progress.audio_done else "audio pending")
        parts.append("captions ready" if progress.captions_done else "captions pending")
        return ", ".join(parts)
    return video.status.value.replace("_", " ")


class ProgressReporter:
    """Read side of a video's progress: one-off snapshots and a polling stream.

    The stream ends with a ``done`` or ``error`` event, when the caller sets
    its stop event, or with an ``error`` event once ``progress_timeout`` elapses.
    """

    def __init__(
        self,
        store: VideoRecordStore,
        settings: Settings,
        publisher: Optional[ProgressEventPublisher] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.poll_interval = settings.progress_poll_interval
        self.timeout = settings.progress_timeout
        self.publisher = publisher
        self.log = logger or logging.getLogger(__name__)
        self._clock = clock

    def snapshot(self, video_id: UUID) -> ProgressEvent:
        video = self.store.get(video_id)
        if video is None:
            return ProgressEvent(type=EVENT_INITIALIZING, percentage=0, detail="waiting for the video record")
        return event_for(video)

    def subscribe(
        self,
        video_id: UUID,
        stop: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[ProgressEvent]:
        stop = stop or threading.Event()
        deadline = self._clock() + (self.timeout if timeout is None else timeout)
        highest = 0
        last_seen: tuple | None = None
        while not stop.is_set():
            event = self.snapshot(video_id)
            highest = max(highest, event.percentage)
            event.percentage = highest
            fingerprint = (event.type, event.status, event.percentage, event.detail)
            if fingerprint != last_seen:
                last_seen = fingerprint
                yield event
            if event.type in TERMINAL_EVENTS:
                return
            if self._clock() >= deadline:
                self.log.info("progress subscription timed out", extra={"video_id": str(video_id)})
                yield ProgressEvent(
                    type=EVENT_ERROR,
                    status=event.status,
                    percentage=highest,
                    detail="timed out waiting for the video to finish",
                    assets=event.assets,
                )
                return
            stop.wait(self.poll_interval)

    def push(self, video_id: UUID) -> None:
        if self.publisher is None:
            return
        self.publisher.publish_progress(video_id, self.snapshot(video_id))
