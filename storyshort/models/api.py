from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import Scene, Video, VideoStatus


class VideoCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    input_text: Optional[str] = Field(default=None, validation_alias="input_text")
    script_text: Optional[str] = Field(default=None, validation_alias="script_text")


class VideoResponse(BaseModel):
    video: Video


class VideoListResponse(BaseModel):
    items: List[Video]


class AssetsSummary(BaseModel):
    images: int
    audio: bool
    captions: bool
    render_ready: bool


class VideoStatusResponse(BaseModel):
    status: VideoStatus
    assets: AssetsSummary
    error_message: Optional[str] = None


class ScriptRequest(BaseModel):
    script_text: str

    @field_validator("script_text")
    @classmethod
    def validate_script(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("script_text must not be empty")
        return value


class ScenePayload(BaseModel):
    text: str
    image_prompt: Optional[str] = None
    image_url: Optional[str] = None
    duration_seconds: float = Field(default=3.0, gt=0)

    def to_scene(self) -> Scene:
        return Scene(
            text=self.text.strip(),
            image_prompt=(self.image_prompt or "").strip() or None,
            image_url=self.image_url,
            duration_seconds=self.duration_seconds,
        )


class StoryboardRequest(BaseModel):
    scenes: List[ScenePayload]


class SceneEditRequest(BaseModel):
    text: Optional[str] = None
    duration_seconds: Optional[float] = Field(default=None, gt=0)
    image_prompt: Optional[str] = None


class SceneReorderRequest(BaseModel):
    order: List[int]


class StageFailureRequest(BaseModel):
    stage: Literal["script", "storyboard", "assets", "render"]
    message: str = Field(..., min_length=1)


class RenderResponse(BaseModel):
    ok: bool = True
    final_url: str
    duration_seconds: Optional[float] = None


class RenderValidationResponse(BaseModel):
    ok: bool = False
    error: str
    missing_scenes: List[int] = Field(default_factory=list)
    missing_audio: bool = False


class ProcessResponse(BaseModel):
    video_id: str
    queued: bool = True
