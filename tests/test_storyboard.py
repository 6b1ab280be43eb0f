import pytest

from storyshort.models.domain import VideoStatus
from storyshort.services.errors import StoryboardEditError

from conftest import png_bytes


def _image_bytes(storage, video, index):
    return storage.fetch(video.storyboard[index].image_url)


def test_text_edit_marks_only_that_scene_dirty(service, make_video):
    video = make_video(3)
    service.ensure_assets(video.id)
    before = service.get_video(video.id)

    edited = service.edit_scene(video.id, 1, text="A brand new line for scene two.")

    assert edited.dirty_scenes == {1}
    assert edited.storyboard_version == before.storyboard_version + 1
    # the stale image stays until it is overwritten
    assert edited.storyboard[1].image_url == before.storyboard[1].image_url


def test_duration_edit_bumps_version_without_dirtying(service, make_video):
    video = make_video(2)
    edited = service.edit_scene(video.id, 0, duration_seconds=4.0)
    assert edited.storyboard[0].duration_seconds == 4.0
    assert edited.dirty_scenes == set()
    assert edited.storyboard_version == video.storyboard_version + 1


def test_unchanged_edit_is_a_no_op(service, make_video):
    video = make_video(2)
    edited = service.edit_scene(video.id, 0, text=video.storyboard[0].text)
    assert edited.storyboard_version == video.storyboard_version
    assert edited.dirty_scenes == set()


def test_regeneration_is_scoped_to_dirty_scenes(service, make_video, images, storage):
    video = make_video(3)
    service.ensure_assets(video.id)
    before = service.get_video(video.id)
    untouched = {idx: _image_bytes(storage, before, idx) for idx in (0, 2)}
    images.calls.clear()

    service.edit_scene(video.id, 1, image_prompt="a lighthouse at dusk")
    result = service.ensure_assets(video.id)

    after = service.get_video(video.id)
    assert images.calls == ["a lighthouse at dusk"]
    assert result.ran.images == [1]
    assert not result.ran.audio and not result.ran.captions
    assert after.dirty_scenes == set()
    assert after.status == VideoStatus.ASSETS_GENERATED
    for idx, content in untouched.items():
        assert after.storyboard[idx].image_url == before.storyboard[idx].image_url
        assert _image_bytes(storage, after, idx) == content
    assert _image_bytes(storage, after, 1) == png_bytes("a lighthouse at dusk")


def test_regenerate_scene(service, make_video, images):
    video = make_video(3)
    service.ensure_assets(video.id)
    images.calls.clear()

    result = service.regenerate_scene(video.id, 2)

    assert images.calls == ["prompt 3"]
    assert result.ran.images == [2]
    assert service.get_video(video.id).storyboard_version == video.storyboard_version + 1


def test_reorder_moves_images_and_dirty_flags(service, make_video):
    video = make_video(3)
    service.ensure_assets(video.id)
    service.storyboard.mark_dirty(video.id, [0])
    before = service.get_video(video.id)

    after = service.reorder_scenes(video.id, [2, 0, 1])

    assert [scene.text for scene in after.storyboard] == [before.storyboard[i].text for i in (2, 0, 1)]
    assert after.storyboard[1].image_url == before.storyboard[0].image_url
    assert after.dirty_scenes == {1}
    with pytest.raises(StoryboardEditError):
        service.reorder_scenes(video.id, [0, 0, 1])


def test_delete_shifts_dirty_indices(service, make_video):
    video = make_video(4)
    service.storyboard.mark_dirty(video.id, [0, 3])

    after = service.delete_scene(video.id, 1)

    assert len(after.storyboard) == 3
    assert after.dirty_scenes == {0, 2}
    assert after.progress.images_total == 3


def test_edits_are_validated(service, make_video):
    video = make_video(2)
    with pytest.raises(StoryboardEditError):
        service.edit_scene(video.id, 5, text="nope")
    with pytest.raises(StoryboardEditError):
        service.edit_scene(video.id, 0, text="   ")
    with pytest.raises(StoryboardEditError):
        service.storyboard.mark_dirty(video.id, [-1])
    assert service.get_video(video.id).storyboard_version == video.storyboard_version


def test_storyboard_is_locked_while_rendering(service, make_video):
    video = make_video(1)
    service.repo.update(video.id, status=VideoStatus.RENDERING)
    with pytest.raises(StoryboardEditError):
        service.edit_scene(video.id, 0, text="too late")


def test_unrelated_edit_during_generation_still_clears_dirty_flag(service, make_video, images):
    video = make_video(3)
    service.ensure_assets(video.id)
    service.storyboard.mark_dirty(video.id, [0])
    images.calls.clear()
    images.on_call = lambda prompt: service.edit_scene(video.id, 2, duration_seconds=9.0) if prompt == "prompt 1" else None

    service.ensure_assets(video.id)

    after = service.get_video(video.id)
    assert after.dirty_scenes == set()
    assert after.status == VideoStatus.ASSETS_GENERATED
    assert after.storyboard[2].duration_seconds == 9.0
    again = service.ensure_assets(video.id)
    assert again.ran.images == []
    assert images.calls == ["prompt 1"]


def test_scene_marked_again_during_generation_stays_dirty(service, make_video, images):
    video = make_video(2)
    service.ensure_assets(video.id)
    service.storyboard.mark_dirty(video.id, [1])
    marked = []

    def mark_again(prompt):
        if not marked:
            marked.append(prompt)
            service.storyboard.mark_dirty(video.id, [1])

    images.on_call = mark_again
    service.ensure_assets(video.id)

    assert service.get_video(video.id).dirty_scenes == {1}
