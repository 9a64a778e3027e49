import time
import pytest
from downtranscoder.domain.models import DiscoveredFile, MediaItem, MediaState, MediaType, TranscodePreset
from downtranscoder.domain.errors import AccessDenied, InvalidStateTransition, ItemNotFound
from downtranscoder.domain.events import ItemStateChanged

def add(state_service, file_id=7, owner="alice"):
    return state_service.add_or_update(DiscoveredFile(
        file_id=file_id,
        name=f"clip{file_id}.mp4",
        path=f"{owner}/clip{file_id}.mp4",
        size=11_000_000_000,
        media_type=MediaType.VIDEO,
        extension="mp4",
        owner_id=owner,
    ))

def assert_invariants(item: MediaItem):
    assert (item.abort_reason is not None) == (item.state == MediaState.ABORTED)
    if item.state != MediaState.TRANSCODING:
        assert item.transcode_progress is None

def test_full_lifecycle_keeps_invariants(state_service):
    item = add(state_service)
    path = [
        (MediaState.QUEUED, None),
        (MediaState.TRANSCODING, None),
        (MediaState.ABORTED, "ffmpeg exited with code 1"),
        (MediaState.FOUND, None),
        (MediaState.QUEUED, None),
        (MediaState.TRANSCODING, None),
        (MediaState.TRANSCODED, None),
    ]
    for state, reason in path:
        item = state_service.update_state(item.id, state, reason)
        assert item.state == state
        assert_invariants(item)

@pytest.mark.parametrize("setup, target", [
    ([MediaState.QUEUED, MediaState.TRANSCODING, MediaState.TRANSCODED], MediaState.QUEUED),
    ([MediaState.DISCARDED], MediaState.QUEUED),
    ([], MediaState.TRANSCODING),
    ([], MediaState.TRANSCODED),
])
def test_invalid_transitions_are_rejected(state_service, setup, target):
    item = add(state_service)
    for state in setup:
        state_service.update_state(item.id, state)
    before = state_service.get_item(item.id)

    with pytest.raises(InvalidStateTransition):
        state_service.update_state(item.id, target)

    assert state_service.get_item(item.id) == before

def test_same_state_update_is_allowed(state_service):
    item = add(state_service)
    assert state_service.update_state(item.id, MediaState.FOUND).state == MediaState.FOUND

def test_ownership_is_enforced(state_service):
    item = add(state_service, owner="alice")
    with pytest.raises(AccessDenied):
        state_service.update_state(item.id, MediaState.QUEUED, user_id="bob")
    assert state_service.get_item(item.id).state == MediaState.FOUND

    assert state_service.update_state(item.id, MediaState.QUEUED, user_id="alice").state == MediaState.QUEUED

def test_missing_item(state_service):
    with pytest.raises(ItemNotFound):
        state_service.update_state(999, MediaState.QUEUED)

def test_state_change_publishes_event(state_service, collected_events):
    item = add(state_service)
    state_service.update_state(item.id, MediaState.QUEUED)

    changes = [e for e in collected_events if isinstance(e, ItemStateChanged)]
    assert len(changes) == 1
    assert changes[0].previous_state == MediaState.FOUND
    assert changes[0].item.state == MediaState.QUEUED

def test_update_preset(state_service):
    item = add(state_service)
    assert state_service.update_preset(item.id, TranscodePreset.H264_CRF23).transcode_preset == TranscodePreset.H264_CRF23
    with pytest.raises(AccessDenied):
        state_service.update_preset(item.id, None, user_id="mallory")

def test_queue_all_found(state_service):
    a = add(state_service, file_id=1)
    b = add(state_service, file_id=2, owner="bob")
    c = add(state_service, file_id=3)
    state_service.update_state(c.id, MediaState.DISCARDED)

    queued = state_service.queue_all_found("alice")
    assert [i.id for i in queued] == [a.id]
    assert state_service.get_item(b.id).state == MediaState.FOUND

def test_items_filter(state_service):
    a = add(state_service, file_id=1)
    add(state_service, file_id=2)
    state_service.update_state(a.id, MediaState.QUEUED)
    assert [i.id for i in state_service.items(state=MediaState.QUEUED)] == [a.id]
    assert len(state_service.items("alice")) == 2

def test_cleanup_old_discarded(state_service, catalog):
    stale = catalog.insert(MediaItem(
        file_id=1, owner_id="alice", name="a.mp4", path="alice/a.mp4", size=1,
        state=MediaState.DISCARDED, created_at=1, updated_at=int(time.time()) - 31 * 24 * 3600,
    ))
    fresh = add(state_service, file_id=2)
    state_service.update_state(fresh.id, MediaState.DISCARDED)

    assert state_service.cleanup_old_discarded() == 1
    assert catalog.find_by_id(stale.id) is None
    assert catalog.find_by_id(fresh.id) is not None

def test_clear_found_and_reset(state_service):
    a = add(state_service, file_id=1)
    add(state_service, file_id=2)
    state_service.update_state(a.id, MediaState.QUEUED)

    assert state_service.clear_found() == 1
    assert state_service.reset_all() == 1
    assert state_service.items() == []
