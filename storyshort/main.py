from __future__ import annotations

import logging
import threading
from typing import Iterator
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse, StreamingResponse

from storyshort.config import Settings, get_settings
from storyshort.models.api import (
    ProcessResponse,
    RenderResponse,
    RenderValidationResponse,
    SceneEditRequest,
    SceneReorderRequest,
    ScriptRequest,
    StageFailureRequest,
    StoryboardRequest,
    VideoCreateRequest,
    VideoListResponse,
    VideoResponse,
    VideoStatusResponse,
)
from storyshort.models.domain import EnsureAssetsResult, ProgressEvent
from storyshort.queue.queue import KafkaQueue, LocalQueue
from storyshort.services.errors import (
    InvalidTransition,
    NoStoryboard,
    RenderError,
    SceneValidationError,
    StoryboardEditError,
    VideoNotFound,
)
from storyshort.services.video_service import VideoService
from storyshort.storage.repository import VideoRecordStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = FastAPI(title=get_settings().app_name)

_repo = VideoRecordStore()
_service: VideoService | None = None


def get_video_service(settings: Settings = Depends(get_settings)) -> VideoService:
    global _service
    if _service is None:
        service = VideoService(repo=_repo, settings=settings)
        queue = _build_queue(settings, service)
        service.bind_queue(queue)
        _service = service
    return _service


@app.on_event("shutdown")
def shutdown() -> None:
    if _service is not None:
        _service.close()


def _build_queue(settings: Settings, service: VideoService):
    if settings.kafka_enabled:
        return KafkaQueue(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            topic=settings.kafka_topic,
            group_id=settings.kafka_group_id,
            processor=service.process_video,
        )
    return LocalQueue(processor=service.process_video)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, VideoNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (InvalidTransition, NoStoryboard)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, RenderError):
        code = status.HTTP_409_CONFLICT if exc.category == "cancelled" else status.HTTP_500_INTERNAL_SERVER_ERROR
        return HTTPException(status_code=code, detail={"category": exc.category, "message": str(exc)})
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


DOMAIN_ERRORS = (VideoNotFound, InvalidTransition, NoStoryboard, StoryboardEditError, RenderError, ValueError)


@app.post("/videos", response_model=VideoResponse, status_code=status.HTTP_201_CREATED)
def create_video(
    payload: VideoCreateRequest,
    service: VideoService = Depends(get_video_service),
) -> VideoResponse:
    try:
        video = service.create_video(input_text=payload.input_text, script_text=payload.script_text)
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return VideoResponse(video=video)


@app.get("/videos", response_model=VideoListResponse)
def list_videos(service: VideoService = Depends(get_video_service)) -> VideoListResponse:
    return VideoListResponse(items=service.list_videos())


@app.get("/videos/{video_id}", response_model=VideoResponse)
def get_video(video_id: UUID, service: VideoService = Depends(get_video_service)) -> VideoResponse:
    try:
        video = service.get_video(video_id)
    except VideoNotFound as exc:
        raise _http_error(exc) from exc
    return VideoResponse(video=video)


@app.get("/videos/{video_id}/status", response_model=VideoStatusResponse)
def get_video_status(video_id: UUID, service: VideoService = Depends(get_video_service)) -> VideoStatusResponse:
    try:
        return service.status(video_id)
    except VideoNotFound as exc:
        raise _http_error(exc) from exc


@app.post("/videos/{video_id}/script", response_model=VideoResponse)
def record_script(
    video_id: UUID,
    payload: ScriptRequest,
    service: VideoService = Depends(get_video_service),
) -> VideoResponse:
    try:
        video = service.record_script(video_id, payload.script_text)
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return VideoResponse(video=video)


@app.post("/videos/{video_id}/script:approve", response_model=VideoResponse)
def approve_script(video_id: UUID, service: VideoService = Depends(get_video_service)) -> VideoResponse:
    try:
        video = service.approve_script(video_id)
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return VideoResponse(video=video)


@app.post("/videos/{video_id}/storyboard", response_model=VideoResponse)
def record_storyboard(
    video_id: UUID,
    payload: StoryboardRequest,
    service: VideoService = Depends(get_video_service),
) -> VideoResponse:
    try:
        video = service.record_storyboard(video_id, [scene.to_scene() for scene in payload.scenes])
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return VideoResponse(video=video)


@app.patch("/videos/{video_id}/scenes/{index}", response_model=VideoResponse)
def edit_scene(
    video_id: UUID,
    index: int,
    payload: SceneEditRequest,
    service: VideoService = Depends(get_video_service),
) -> VideoResponse:
    try:
        video = service.edit_scene(
            video_id,
            index,
            text=payload.text,
            duration_seconds=payload.duration_seconds,
            image_prompt=payload.image_prompt,
        )
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return VideoResponse(video=video)


@app.delete("/videos/{video_id}/scenes/{index}", response_model=VideoResponse)
def delete_scene(video_id: UUID, index: int, service: VideoService = Depends(get_video_service)) -> VideoResponse:
    try:
        video = service.delete_scene(video_id, index)
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return VideoResponse(video=video)


@app.post("/videos/{video_id}/scenes:reorder", response_model=VideoResponse)
def reorder_scenes(
    video_id: UUID,
    payload: SceneReorderRequest,
    service: VideoService = Depends(get_video_service),
) -> VideoResponse:
    try:
        video = service.reorder_scenes(video_id, payload.order)
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return VideoResponse(video=video)


@app.post("/videos/{video_id}/scenes/{index}:regenerate", response_model=EnsureAssetsResult)
def regenerate_scene(
    video_id: UUID,
    index: int,
    service: VideoService = Depends(get_video_service),
) -> EnsureAssetsResult:
    try:
        return service.regenerate_scene(video_id, index)
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc


@app.post("/videos/{video_id}/stages:fail", response_model=VideoResponse)
def fail_stage(
    video_id: UUID,
    payload: StageFailureRequest,
    service: VideoService = Depends(get_video_service),
) -> VideoResponse:
    try:
        video = service.fail_stage(video_id, payload.stage, payload.message)
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return VideoResponse(video=video)


@app.post("/videos/{video_id}/assets:ensure", response_model=EnsureAssetsResult)
def ensure_assets(video_id: UUID, service: VideoService = Depends(get_video_service)) -> EnsureAssetsResult:
    try:
        return service.ensure_assets(video_id)
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc


@app.post(
    "/videos/{video_id}/render",
    response_model=RenderResponse,
    responses={status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": RenderValidationResponse}},
)
def render_video(video_id: UUID, service: VideoService = Depends(get_video_service)):
    try:
        result = service.render(video_id)
    except SceneValidationError as exc:
        body = RenderValidationResponse(
            error=str(exc),
            missing_scenes=exc.missing_scenes,
            missing_audio=exc.missing_audio,
        )
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body.model_dump())
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return RenderResponse(final_url=result.final_url, duration_seconds=result.duration)


@app.post("/videos/{video_id}:cancel", response_model=VideoResponse)
def cancel_video(video_id: UUID, service: VideoService = Depends(get_video_service)) -> VideoResponse:
    try:
        video = service.cancel(video_id)
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return VideoResponse(video=video)


@app.post("/videos/{video_id}:process", response_model=ProcessResponse, status_code=status.HTTP_202_ACCEPTED)
def process_video(video_id: UUID, service: VideoService = Depends(get_video_service)) -> ProcessResponse:
    try:
        queued = service.enqueue(video_id)
    except VideoNotFound as exc:
        raise _http_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ProcessResponse(video_id=str(video_id), queued=queued)


@app.get("/videos/{video_id}/progress:snapshot", response_model=ProgressEvent)
def progress_snapshot(video_id: UUID, service: VideoService = Depends(get_video_service)) -> ProgressEvent:
    return service.progress_snapshot(video_id)


@app.get("/videos/{video_id}/progress")
def progress_stream(video_id: UUID, service: VideoService = Depends(get_video_service)) -> StreamingResponse:
    stop = threading.Event()
    return StreamingResponse(_sse(service.progress_stream(video_id, stop=stop), stop), media_type="text/event-stream")


def _sse(events: Iterator[ProgressEvent], stop: threading.Event) -> Iterator[str]:
    try:
        for event in events:
            yield f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"
    finally:
        stop.set()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")
