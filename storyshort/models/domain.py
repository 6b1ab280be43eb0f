from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set
from uuid import UUID

from pydantic import BaseModel, Field


class VideoStatus(str, Enum):
    PENDING = "pending"
    SCRIPT_GENERATED = "script_generated"
    SCRIPT_APPROVED = "script_approved"
    STORYBOARD_GENERATED = "storyboard_generated"
    ASSETS_GENERATING = "assets_generating"
    ASSETS_GENERATED = "assets_generated"
    RENDERING = "rendering"
    COMPLETED = "completed"
    SCRIPT_FAILED = "script_failed"
    STORYBOARD_FAILED = "storyboard_failed"
    ASSETS_FAILED = "assets_failed"
    RENDER_FAILED = "render_failed"
    CANCELLED = "cancelled"

    @property
    def is_failure(self) -> bool:
        return self in FAILURE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in (VideoStatus.COMPLETED, VideoStatus.CANCELLED)


FAILURE_STATUSES = frozenset(
    {
        VideoStatus.SCRIPT_FAILED,
        VideoStatus.STORYBOARD_FAILED,
        VideoStatus.ASSETS_FAILED,
        VideoStatus.RENDER_FAILED,
    }
)


class Scene(BaseModel):
    text: str
    image_prompt: Optional[str] = None
    image_url: Optional[str] = None
    duration_seconds: float = Field(default=3.0, gt=0)
    # bumped whenever the scene is marked for a new image
    revision: int = 0

    @property
    def prompt(self) -> str:
        return (self.image_prompt or self.text).strip()


class VideoProgress(BaseModel):
    images_done: int = 0
    images_total: int = 0
    audio_done: bool = False
    captions_done: bool = False


class Video(BaseModel):
    id: UUID
    status: VideoStatus = VideoStatus.PENDING
    input_text: Optional[str] = None
    script_text: Optional[str] = None
    storyboard: List[Scene] = Field(default_factory=list)
    storyboard_version: int = 0
    dirty_scenes: Set[int] = Field(default_factory=set)
    audio_url: Optional[str] = None
    captions_url: Optional[str] = None
    progress: VideoProgress = Field(default_factory=VideoProgress)
    total_duration: Optional[float] = None
    final_video_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def missing_images(self) -> list[int]:
        return [idx for idx, scene in enumerate(self.storyboard) if not scene.image_url]

    def images_ready(self) -> int:
        return sum(
            1
            for idx, scene in enumerate(self.storyboard)
            if scene.image_url and idx not in self.dirty_scenes
        )

    def render_ready(self) -> bool:
        return bool(self.storyboard) and not self.missing_images() and bool(self.audio_url)


class AssetRun(BaseModel):
    audio: bool = False
    captions: bool = False
    images: List[int] = Field(default_factory=list)


class AssetFailure(BaseModel):
    kind: str
    scene: Optional[int] = None
    category: str
    message: str


class EnsureAssetsResult(BaseModel):
    ok: bool
    ran: AssetRun = Field(default_factory=AssetRun)
    urls: Dict[str, Optional[str]] = Field(default_factory=dict)
    next_status: VideoStatus
    message: str
    failures: List[AssetFailure] = Field(default_factory=list)
    outstanding: List[str] = Field(default_factory=list)


class RenderResult(BaseModel):
    final_url: str
    duration: Optional[float] = None


class ProgressEvent(BaseModel):
    type: str
    status: Optional[VideoStatus] = None
    percentage: int = 0
    detail: Optional[str] = None
    assets: Optional[VideoProgress] = None
