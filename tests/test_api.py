from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from storyshort.clients.errors import TransientError
from storyshort.main import app, get_video_service
from storyshort.queue.queue import LocalQueue
from storyshort.services.video_service import VideoService
from storyshort.storage.repository import VideoRecordStore

from conftest import SCRIPT


client = TestClient(app)


@pytest.fixture(autouse=True)
def api_service(settings, storage, tts, images, encoder):
    service = VideoService(
        VideoRecordStore(),
        settings,
        tts=tts,
        images=images,
        storage=storage,
        encoder=encoder,
        duration_probe=lambda audio: None,
    )
    queue = LocalQueue(processor=service.process_video)
    service.bind_queue(queue)
    app.dependency_overrides[get_video_service] = lambda: service
    yield service
    app.dependency_overrides.clear()


def _storyboard(count=3):
    return {
        "scenes": [
            {"text": f"Scene {idx + 1} narration.", "image_prompt": f"prompt {idx + 1}", "duration_seconds": 2.5}
            for idx in range(count)
        ]
    }


def _prepared_video(count=3):
    create_resp = client.post("/videos", json={"input_text": "octopus facts"})
    assert create_resp.status_code == 201
    video_id = create_resp.json()["video"]["id"]

    assert client.post(f"/videos/{video_id}/script", json={"script_text": SCRIPT}).status_code == 200
    assert client.post(f"/videos/{video_id}/script:approve").status_code == 200
    storyboard_resp = client.post(f"/videos/{video_id}/storyboard", json=_storyboard(count))
    assert storyboard_resp.status_code == 200
    assert storyboard_resp.json()["video"]["status"] == "storyboard_generated"
    return video_id


def test_video_flow_end_to_end():
    video_id = _prepared_video(3)

    status_resp = client.get(f"/videos/{video_id}/status")
    assert status_resp.status_code == 200
    assert status_resp.json()["assets"]["render_ready"] is False

    ensure_resp = client.post(f"/videos/{video_id}/assets:ensure")
    assert ensure_resp.status_code == 200
    assert ensure_resp.json()["next_status"] == "assets_generated"
    assert ensure_resp.json()["ran"]["images"] == [0, 1, 2]

    again = client.post(f"/videos/{video_id}/assets:ensure")
    assert again.json()["ran"] == {"audio": False, "captions": False, "images": []}

    render_resp = client.post(f"/videos/{video_id}/render")
    assert render_resp.status_code == 200
    body = render_resp.json()
    assert body["ok"] is True
    assert body["final_url"].endswith(f"videos/{video_id}/final.mp4")

    video = client.get(f"/videos/{video_id}").json()["video"]
    assert video["status"] == "completed"
    assert video["final_video_url"] == body["final_url"]

    snapshot = client.get(f"/videos/{video_id}/progress:snapshot").json()
    assert snapshot["type"] == "done"
    assert snapshot["percentage"] == 100

    stream_resp = client.get(f"/videos/{video_id}/progress")
    assert stream_resp.status_code == 200
    assert stream_resp.headers["content-type"].startswith("text/event-stream")
    assert "event: done" in stream_resp.text

    list_resp = client.get("/videos")
    assert any(item["id"] == video_id for item in list_resp.json()["items"])


def test_render_with_missing_image_returns_scene_numbers(images):
    video_id = _prepared_video(3)
    images.failures["prompt 2"] = TransientError("image", "image provider timed out")
    client.post(f"/videos/{video_id}/assets:ensure")

    render_resp = client.post(f"/videos/{video_id}/render")
    assert render_resp.status_code == 422
    body = render_resp.json()
    assert body["ok"] is False
    assert body["missing_scenes"] == [2]
    assert "scene 2" in body["error"]


def test_render_from_pending_is_a_conflict(encoder):
    video_id = client.post("/videos", json={"input_text": "idea"}).json()["video"]["id"]

    render_resp = client.post(f"/videos/{video_id}/render")

    assert render_resp.status_code == 409
    assert client.get(f"/videos/{video_id}").json()["video"]["status"] == "pending"
    assert encoder.commands == []


def test_unknown_video_is_not_found():
    assert client.get(f"/videos/{uuid4()}").status_code == 404
    assert client.post(f"/videos/{uuid4()}/assets:ensure").status_code == 404
    assert client.get(f"/videos/{uuid4()}/progress:snapshot").json()["type"] == "initializing"


def test_scene_edit_and_cancel():
    video_id = _prepared_video(2)
    client.post(f"/videos/{video_id}/assets:ensure")

    edit_resp = client.patch(f"/videos/{video_id}/scenes/0", json={"text": "A sharper opening line."})
    assert edit_resp.status_code == 200
    assert edit_resp.json()["video"]["dirty_scenes"] == [0]

    bad_edit = client.patch(f"/videos/{video_id}/scenes/9", json={"text": "nope"})
    assert bad_edit.status_code == 400

    cancel_resp = client.post(f"/videos/{video_id}:cancel")
    assert cancel_resp.status_code == 200
    assert cancel_resp.json()["video"]["status"] == "cancelled"

    stream_resp = client.get(f"/videos/{video_id}/progress")
    assert "event: done" in stream_resp.text


def test_stage_failure_is_reported():
    video_id = client.post("/videos", json={"input_text": "idea"}).json()["video"]["id"]

    fail_resp = client.post(
        f"/videos/{video_id}/stages:fail",
        json={"stage": "script", "message": "script model refused the prompt"},
    )

    assert fail_resp.status_code == 200
    snapshot = client.get(f"/videos/{video_id}/progress:snapshot").json()
    assert snapshot["type"] == "error"
    assert snapshot["detail"] == "script model refused the prompt"


def test_process_runs_assets_and_render_on_the_queue(api_service):
    video_id = _prepared_video(2)

    process_resp = client.post(f"/videos/{video_id}:process")
    assert process_resp.status_code == 202
    assert process_resp.json()["queued"] is True

    api_service.queue.join()
    status_resp = client.get(f"/videos/{video_id}/status")
    assert status_resp.json()["status"] == "completed"
    assert status_resp.json()["assets"]["render_ready"] is True
