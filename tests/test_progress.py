import threading
from uuid import uuid4

import pytest

from storyshort.models.domain import Scene, Video, VideoProgress, VideoStatus
from storyshort.services.progress import ProgressReporter, percentage_for
from storyshort.storage.repository import VideoRecordStore


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish_progress(self, video_id, event):
        self.events.append((video_id, event))


@pytest.fixture
def store():
    return VideoRecordStore()


@pytest.fixture
def reporter(store, settings):
    return ProgressReporter(store, settings)


def _video(store, **fields):
    video = Video(id=uuid4(), storyboard=[Scene(text=str(idx)) for idx in range(4)], **fields)
    store.save(video)
    return video


def test_snapshot_before_the_record_exists(reporter):
    event = reporter.snapshot(uuid4())
    assert event.type == "initializing"
    assert event.percentage == 0


def test_percentage_mapping(store):
    assert percentage_for(_video(store, status=VideoStatus.PENDING)) == 0
    assert percentage_for(_video(store, status=VideoStatus.STORYBOARD_GENERATED)) == 30
    assert percentage_for(_video(store, status=VideoStatus.ASSETS_GENERATED)) == 85
    assert percentage_for(_video(store, status=VideoStatus.COMPLETED)) == 100
    halfway = _video(
        store,
        status=VideoStatus.ASSETS_GENERATING,
        progress=VideoProgress(images_done=2, images_total=4, audio_done=True),
    )
    assert 35 < percentage_for(halfway) < 85


def test_stream_is_monotonic_and_ends_with_done(store, reporter):
    video = _video(
        store,
        status=VideoStatus.ASSETS_GENERATING,
        progress=VideoProgress(images_done=3, images_total=4),
    )
    stream = reporter.subscribe(video.id)

    first = next(stream)
    assert first.type == "progress"

    # a new pass after an edit restarts the image count
    store.update(video.id, progress=VideoProgress(images_done=1, images_total=4))
    second = next(stream)
    assert second.percentage == first.percentage
    assert second.detail.startswith("images 1/4")

    store.update(video.id, status=VideoStatus.COMPLETED, final_video_url="/v/final.mp4")
    last = next(stream)
    assert last.type == "done"
    assert last.percentage == 100
    with pytest.raises(StopIteration):
        next(stream)


def test_failure_ends_the_stream_with_error(store, reporter):
    video = _video(store, status=VideoStatus.RENDER_FAILED, error_message="render failed (timeout): too slow")
    events = list(reporter.subscribe(video.id))
    assert [event.type for event in events] == ["error"]
    assert events[0].detail == "render failed (timeout): too slow"


def test_cancelled_is_done(store, reporter):
    video = _video(store, status=VideoStatus.CANCELLED)
    events = list(reporter.subscribe(video.id))
    assert events[-1].type == "done"


def test_subscription_times_out(store, reporter):
    video = _video(store, status=VideoStatus.RENDERING)
    events = list(reporter.subscribe(video.id, timeout=0))
    assert [event.type for event in events] == ["progress", "error"]
    assert "timed out" in events[-1].detail


def test_stop_signal_ends_the_stream(store, reporter):
    video = _video(store, status=VideoStatus.RENDERING)
    stop = threading.Event()
    stream = reporter.subscribe(video.id, stop=stop)
    assert next(stream).type == "progress"
    stop.set()
    with pytest.raises(StopIteration):
        next(stream)


def test_push_publishes_snapshots(store, settings):
    publisher = RecordingPublisher()
    reporter = ProgressReporter(store, settings, publisher=publisher)
    video = _video(store, status=VideoStatus.SCRIPT_APPROVED)
    reporter.push(video.id)
    assert publisher.events[0][0] == video.id
    assert publisher.events[0][1].percentage == 20
