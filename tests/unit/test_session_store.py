"""
Unit tests for the blob store and the session registry lifecycle.
"""
import asyncio

from bookgen.session_store import RESTART_FAILURE_MESSAGE, FileBlobStore, SessionRegistry
from bookgen.state import COMPLETED, FAILED, GENERATING, QUEUED, Session
from tests.fakes import ready_session, small_config


def test_blob_store_round_trip(tmp_path):
    store = FileBlobStore(tmp_path / "sessions")
    assert store.keys() == []
    store.put("abc", {"status": "queued"})
    assert store.get("abc") == {"status": "queued"}
    assert store.keys() == ["abc"]
    store.delete("abc")
    assert store.get("abc") is None
    store.delete("abc")


def test_save_and_reload_from_disk(tmp_path):
    store = FileBlobStore(tmp_path)
    session = ready_session()
    SessionRegistry(store).save(session)

    fresh = SessionRegistry(store)
    loaded = fresh.get(session.id)
    assert loaded is not None
    assert loaded.subtopic_markdowns == session.subtopic_markdowns
    assert loaded.structure.title == "Graph Theory Basics"


def test_create_session_is_persisted(tmp_path):
    registry = SessionRegistry(FileBlobStore(tmp_path))
    session = registry.create_session("Graph Theory Basics", model="m", author="Ada", config=small_config())
    assert (tmp_path / f"{session.id}.json").exists()
    assert session.status == QUEUED
    assert session.model == "m"


def test_admission_counts_in_flight_sessions():
    registry = SessionRegistry()
    for _ in range(2):
        registry.create_session("Graph Theory Basics", config=small_config())
    assert registry.active_count() == 2
    assert registry.can_accept(3)
    assert not registry.can_accept(2)

    registry.all()[0].status = COMPLETED
    assert registry.can_accept(2)


def test_rehydrate_fails_interrupted_sessions(tmp_path):
    store = FileBlobStore(tmp_path)
    interrupted = ready_session()
    interrupted.status = GENERATING
    finished = ready_session()
    store.put(interrupted.id, interrupted.to_dict())
    store.put(finished.id, finished.to_dict())
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

    registry = SessionRegistry(store)
    assert registry.rehydrate() == 2

    failed = registry.get(interrupted.id)
    assert failed.status == FAILED
    assert failed.error == RESTART_FAILURE_MESSAGE
    assert failed.structure is not None
    assert Session.from_dict(store.get(interrupted.id)).status == FAILED
    assert registry.get(finished.id).subtopic_markdowns


def test_sweep_skips_generating_sessions():
    registry = SessionRegistry()
    idle = ready_session()
    busy = ready_session()
    busy.status = GENERATING
    idle.last_activity_at = busy.last_activity_at = 1000.0
    registry.save(idle)
    registry.save(busy)

    swept = registry.sweep_expired(ttl=60, now=2000.0)

    assert swept == [idle.id]
    assert registry.get(idle.id) is None
    assert registry.get(busy.id) is busy
    assert idle.subtopic_markdowns == {}


def test_schedule_cleanup_deletes_after_delay(tmp_path):
    registry = SessionRegistry(FileBlobStore(tmp_path))
    session = ready_session()
    registry.save(session)

    async def scenario():
        registry.schedule_cleanup(session.id, 0.01)
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    assert registry.get(session.id) is None
    assert not (tmp_path / f"{session.id}.json").exists()


def test_delete_cancels_pending_cleanup():
    registry = SessionRegistry()
    session = ready_session()
    registry.save(session)

    async def scenario():
        handle = registry.schedule_cleanup(session.id, 60)
        registry.delete(session.id)
        return handle

    handle = asyncio.run(scenario())
    assert handle.cancelled()
