from __future__ import annotations

from uuid import UUID

from storyshort.models.domain import VideoStatus


class VideoNotFound(ValueError):
    def __init__(self, video_id: UUID) -> None:
        super().__init__(f"video {video_id} not found")
        self.video_id = video_id


class InvalidTransition(Exception):
    """Status change that the transition table does not permit."""

    def __init__(self, from_status: VideoStatus, to_status: VideoStatus, reason: str | None = None) -> None:
        message = f"cannot move video from {from_status.value} to {to_status.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason


class NoStoryboard(Exception):
    def __init__(self, video_id: UUID) -> None:
        super().__init__(f"video {video_id} has no storyboard; generate one before requesting assets")
        self.video_id = video_id


class SceneValidationError(ValueError):
    """Render readiness failure; ``missing_scenes`` holds 1-indexed scene numbers."""

    def __init__(self, missing_scenes: list[int], missing_audio: bool = False) -> None:
        problems = [f"missing image in scene {number}" for number in missing_scenes]
        if missing_audio:
            problems.append("missing narration audio")
        super().__init__("; ".join(problems) or "video is not ready to render")
        self.missing_scenes = missing_scenes
        self.missing_audio = missing_audio


class StoryboardEditError(ValueError):
    pass


class RenderError(Exception):
    """Render attempt failure.

    ``category`` is one of encoder_missing, timeout, encoder_failed,
    invalid_plan, inputs_unavailable or cancelled.
    """

    def __init__(self, category: str, message: str, stderr_tail: str | None = None) -> None:
        super().__init__(message)
        self.category = category
        self.stderr_tail = stderr_tail
