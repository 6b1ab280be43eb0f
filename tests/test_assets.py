import pytest

from storyshort.clients.errors import MissingCredentialsError, QuotaExceededError, TransientError
from storyshort.models.domain import VideoStatus
from storyshort.services.errors import NoStoryboard
from storyshort.services.subtitles import parse_captions

from conftest import FakeTranscriber


def test_full_pass_generates_everything(service, make_video, tts, images, storage):
    video = make_video(3)
    result = service.ensure_assets(video.id)

    assert result.ok
    assert result.next_status == VideoStatus.ASSETS_GENERATED
    assert result.ran.images == [0, 1, 2]
    assert result.ran.audio and result.ran.captions
    assert sorted(images.calls) == ["prompt 1", "prompt 2", "prompt 3"]
    # narration is read without the section labels
    assert len(tts.calls) == 1
    assert "HOOK:" not in tts.calls[0]

    stored = service.get_video(video.id)
    assert stored.status == VideoStatus.ASSETS_GENERATED
    assert stored.render_ready()
    assert stored.progress.images_done == stored.progress.images_total == 3
    assert stored.progress.audio_done and stored.progress.captions_done
    assert stored.storyboard[0].image_url.endswith(f"videos/{video.id}/images/scene-1.png")
    assert stored.audio_url.endswith(f"videos/{video.id}/audio.mp3")
    captions = storage.fetch(stored.captions_url).decode("utf-8")
    assert parse_captions(captions)
    assert result.urls == {"audio": stored.audio_url, "captions": stored.captions_url}


def test_second_pass_is_a_no_op(service, make_video, tts, images, storage):
    video = make_video(3)
    service.ensure_assets(video.id)
    image_calls, tts_calls = len(images.calls), len(tts.calls)
    objects = storage.list_video_assets(video.id)

    again = service.ensure_assets(video.id)

    assert again.ok
    assert again.ran.model_dump() == {"audio": False, "captions": False, "images": []}
    assert again.next_status == VideoStatus.ASSETS_GENERATED
    assert len(images.calls) == image_calls
    assert len(tts.calls) == tts_calls
    assert storage.list_video_assets(video.id) == objects


def test_one_transient_scene_failure_is_tolerated(service, make_video, images):
    video = make_video(5)
    images.failures["prompt 3"] = TransientError("image", "image provider timed out")

    result = service.ensure_assets(video.id)

    stored = service.get_video(video.id)
    assert result.ok
    assert result.next_status == VideoStatus.ASSETS_GENERATING
    assert stored.status == VideoStatus.ASSETS_GENERATING
    assert [idx for idx, scene in enumerate(stored.storyboard) if scene.image_url] == [0, 1, 3, 4]
    assert result.ran.images == [0, 1, 3, 4]
    assert "image for scene 3" in result.outstanding
    assert [failure.scene for failure in result.failures] == [3]
    # retried with backoff before giving up
    assert images.calls.count("prompt 3") == 3
    assert stored.audio_url and stored.captions_url

    del images.failures["prompt 3"]
    retry = service.ensure_assets(video.id)
    assert retry.ran.images == [2]
    assert not retry.ran.audio
    assert retry.next_status == VideoStatus.ASSETS_GENERATED


def test_images_done_never_decreases_during_a_pass(service, make_video):
    video = make_video(4)
    seen = []
    push = service.assets.on_progress

    def record(video_id):
        seen.append(service.get_video(video_id).progress.images_done)
        push(video_id)

    service.assets.on_progress = record
    service.ensure_assets(video.id)

    assert seen
    assert seen == sorted(seen)
    assert seen[-1] == 4


def test_missing_speech_credentials_fail_the_pass(service, make_video, tts):
    video = make_video(2)
    tts.error = MissingCredentialsError("ElevenLabs", "Speech synthesis is not configured")

    result = service.ensure_assets(video.id)

    stored = service.get_video(video.id)
    assert not result.ok
    assert result.next_status == VideoStatus.ASSETS_FAILED
    assert stored.error_message == "Speech synthesis is not configured"
    assert [failure.category for failure in result.failures] == ["missing_credentials"]
    # not retried, and the images still landed
    assert len(tts.calls) == 1
    assert all(scene.image_url for scene in stored.storyboard)


def test_quota_on_one_scene_is_fatal_but_siblings_finish(service, make_video, images):
    video = make_video(3)
    images.failures["prompt 2"] = QuotaExceededError("OpenAI Images", "Image generation quota exceeded")

    result = service.ensure_assets(video.id)

    stored = service.get_video(video.id)
    assert stored.status == VideoStatus.ASSETS_FAILED
    assert stored.error_message == "scene 2: Image generation quota exceeded"
    assert images.calls.count("prompt 2") == 1
    assert stored.storyboard[0].image_url and stored.storyboard[2].image_url
    assert result.failures[0].category == "quota_exceeded"

    # retry after the quota is restored resumes from what is persisted
    del images.failures["prompt 2"]
    retry = service.ensure_assets(video.id)
    assert retry.ran.images == [1]
    assert service.get_video(video.id).error_message is None


def test_no_storyboard(service):
    video = service.create_video(script_text="HOOK: hi")
    with pytest.raises(NoStoryboard):
        service.ensure_assets(video.id)
    assert service.get_video(video.id).status == VideoStatus.SCRIPT_GENERATED


def test_transcription_is_authoritative(service, make_video, storage):
    srt = "1\n00:00:00,000 --> 00:00:02,000\nfrom the transcript\n"
    service.remote.transcriber = FakeTranscriber(srt=srt)
    video = make_video(1)

    service.ensure_assets(video.id)

    stored = service.get_video(video.id)
    captions = storage.fetch(stored.captions_url).decode("utf-8")
    assert captions == srt


def test_transcription_failure_falls_back_to_estimate(service, make_video, storage):
    transcriber = FakeTranscriber(error=RuntimeError("model crashed"))
    service.remote.transcriber = transcriber
    video = make_video(1)

    result = service.ensure_assets(video.id)

    assert transcriber.calls == 1
    assert result.ran.captions
    stored = service.get_video(video.id)
    captions = parse_captions(storage.fetch(stored.captions_url).decode("utf-8"))
    assert captions[0].text.startswith("Did you know")


def test_cancelled_video_resumes_on_retry(service, make_video):
    video = make_video(2)
    service.cancel(video.id)

    result = service.ensure_assets(video.id)

    assert result.next_status == VideoStatus.ASSETS_GENERATED
    assert service.get_video(video.id).status == VideoStatus.ASSETS_GENERATED


def test_cancellation_stops_remaining_work(service, make_video, images, tts, settings):
    settings.image_concurrency = 1
    video = make_video(4)
    images.on_call = lambda prompt: service.cancel(video.id) if prompt == "prompt 1" else None

    result = service.ensure_assets(video.id)

    assert not result.ok
    assert result.next_status == VideoStatus.CANCELLED
    assert images.calls == ["prompt 1"]
    assert tts.calls == []
    assert service.get_video(video.id).status == VideoStatus.CANCELLED


def test_per_kind_operations_report_whether_they_worked(service, make_video):
    video = make_video(2)
    assert service.assets.ensure_audio(video.id) is True
    assert service.assets.ensure_audio(video.id) is False
    assert service.assets.ensure_captions(video.id) is True
    assert service.assets.ensure_captions(video.id) is False
    assert service.assets.ensure_scene_image(video.id, 1) is True
    assert service.assets.ensure_scene_image(video.id, 1) is False


def test_failed_audio_upload_does_not_stop_captions(service, make_video, storage, monkeypatch):
    video = make_video(2)
    put = storage.put_video_asset

    def flaky_put(video_id, name, content, content_type):
        if name == "audio.mp3":
            raise ValueError("S3 upload failed: timeout")
        return put(video_id, name, content, content_type=content_type)

    monkeypatch.setattr(storage, "put_video_asset", flaky_put)

    result = service.ensure_assets(video.id)

    stored = service.get_video(video.id)
    assert result.ok
    assert not result.ran.audio and result.ran.captions
    assert [(failure.kind, failure.category) for failure in result.failures] == [("audio", "transient")]
    assert result.outstanding == ["audio"]
    assert stored.status == VideoStatus.ASSETS_GENERATING
    assert stored.audio_url is None
    assert stored.captions_url

    monkeypatch.setattr(storage, "put_video_asset", put)
    retry = service.ensure_assets(video.id)
    assert retry.ran.audio and not retry.ran.captions
    assert retry.next_status == VideoStatus.ASSETS_GENERATED


def test_webvtt_transcript_is_stored_as_srt(service, make_video, storage):
    vtt = "WEBVTT\n\n00:00:00.000 --> 00:00:01.500\n{\\an8}kept literally\n"
    service.remote.transcriber = FakeTranscriber(srt=vtt)
    video = make_video(1)

    service.ensure_assets(video.id)

    captions = storage.fetch(service.get_video(video.id).captions_url).decode("utf-8")
    assert captions.startswith("1\n00:00:00,000 --> 00:00:01,500\n")
    assert parse_captions(captions)[0].text == "{\\an8}kept literally"
