import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import SQLModel, create_engine

from photo_catalog.catalog import AsyncCatalog, CatalogStore, resolve_sort_field
from photo_catalog.core.bridge import AsyncBridge, bounded_gather
from photo_catalog.core.exceptions import UpstreamFailure
from photo_catalog.domain import Batch, File, UploadStatus, utc_now


@pytest.fixture
def store(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'catalog.db'}", connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    yield CatalogStore(engine)
    engine.dispose()


def _file(owner="u1", name="a.jpg", tags=(), when=None, batch_id=None):
    return File.create(
        owner_id=owner,
        original_name=name,
        content_type="image/jpeg",
        size_bytes=100,
        tags=tags,
        batch_id=batch_id,
        now=when,
    )


def test_save_and_find_realizes_tags(store):
    saved = store.save(_file(tags=["b", "a"]))
    found = store.find_by_id(saved.id)
    assert found == saved
    assert found.tags == {"a", "b"}
    assert found.status is UploadStatus.PENDING
    assert store.find_by_id("missing") is None


def test_save_updates_tags_in_place(store):
    file = store.save(_file(tags=["keep", "drop"]))
    file.tags = {"keep", "new"}
    store.save(file)

    found = store.find_by_id(file.id)
    assert found.tags == {"keep", "new"}
    assert found.status is UploadStatus.PENDING


def test_paged_order_breaks_ties_by_id(store):
    when = datetime(2024, 1, 1, tzinfo=timezone.utc)
    files = [store.save(_file(name=f"{i}.jpg", when=when)) for i in range(4)]
    expected = sorted((f.id for f in files), reverse=True)

    page0 = store.find_by_owner_paged("u1", 0, 2, "uploadDate")
    page1 = store.find_by_owner_paged("u1", 1, 2, "uploadDate")
    assert [f.id for f in page0 + page1] == expected


def test_tag_match_is_conjunctive(store):
    both = store.save(_file(tags=["beach", "summer"]))
    store.save(_file(tags=["beach"]))
    store.save(_file(owner="u2", tags=["beach", "summer"]))

    matched = store.find_by_owner_and_tags_paged("u1", {"beach", "summer"}, 0, 10, "uploadDate")
    assert [f.id for f in matched] == [both.id]
    assert store.count_by_owner("u1", {"beach", "summer"}) == 1
    assert store.count_by_owner("u1", {"beach"}) == 2
    assert store.count_by_owner("u1") == 2


def test_sort_field_allow_list():
    assert resolve_sort_field(None) == "uploadDate"
    assert resolve_sort_field("size_bytes") == "size"
    assert resolve_sort_field("filename") == "filename"
    assert resolve_sort_field("id; DROP TABLE file") == "uploadDate"


def test_delete_cascades_tags(store):
    file = store.save(_file(tags=["x"]))
    assert store.delete_by_id(file.id) is True
    assert store.delete_by_id(file.id) is False
    assert store.count_by_owner("u1", {"x"}) == 0


def test_completion_increments_batch_once_per_file(store):
    batch = store.save_batch(Batch.create("u1", 1))
    first = store.save(_file(batch_id=batch.id))
    second = store.save(_file(batch_id=batch.id))

    first.mark_completed()
    store.save_completion(first)
    second.mark_completed()
    store.save_completion(second)

    stored = store.find_batch(batch.id)
    # Never exceeds the declared total
    assert stored.completed_files == 1
    assert stored.status is UploadStatus.COMPLETED


def test_status_changes_are_compare_and_set(store):
    file = store.save(_file())

    started = store.find_by_id(file.id)
    started.mark_uploading()
    assert store.save_progress(started).status is UploadStatus.UPLOADING
    assert store.save_progress(started) is None

    completed = store.find_by_id(file.id)
    completed.mark_completed()
    stale = store.find_by_id(file.id)
    stale.mark_failed("late report")
    assert store.save_completion(completed).status is UploadStatus.COMPLETED
    assert store.save_failure(stale) is None

    found = store.find_by_id(file.id)
    assert found.status is UploadStatus.COMPLETED
    assert found.error_message is None


def test_tag_save_does_not_roll_back_status(store):
    file = store.save(_file())
    loaded_before_completion = store.find_by_id(file.id)

    done = store.find_by_id(file.id)
    done.mark_completed()
    store.save_completion(done)

    loaded_before_completion.tags = {"late"}
    saved = store.save(loaded_before_completion)
    assert saved.status is UploadStatus.COMPLETED
    assert saved.tags == {"late"}


def test_save_many_is_all_or_nothing(store):
    first = store.save(_file(tags=["old"]))
    first.tags = {"new"}
    clash = _file()
    duplicate = File(
        id="another-id",
        owner_id="u1",
        original_name="dup.jpg",
        storage_key=first.storage_key,
        content_type="image/jpeg",
        size_bytes=1,
        upload_date=utc_now(),
    )
    with pytest.raises(IntegrityError):
        store.save_many([first, clash, duplicate])

    assert store.find_by_id(first.id).tags == {"old"}
    assert store.find_by_id(clash.id) is None

    second = store.save(_file())
    second.tags = {"b"}
    first.tags = {"a"}
    saved = store.save_many([first, second])
    assert [f.tags for f in saved] == [{"a"}, {"b"}]


def test_ping(store):
    assert store.ping() is True


def test_find_many(store):
    a = store.save(_file())
    b = store.save(_file())
    assert {f.id for f in store.find_many([a.id, b.id, "nope"])} == {a.id, b.id}
    assert store.find_many([]) == []


def test_fail_stale_uploads(store):
    old = store.save(_file(when=utc_now() - timedelta(days=2)))
    done = _file(when=utc_now() - timedelta(days=2))
    done.mark_completed()
    store.save(done)
    fresh = store.save(_file())

    assert store.fail_stale_uploads(utc_now() - timedelta(hours=24), "upload expired") == 1
    assert store.find_by_id(old.id).status is UploadStatus.FAILED
    assert store.find_by_id(old.id).error_message == "upload expired"
    assert store.find_by_id(done.id).status is UploadStatus.COMPLETED
    assert store.find_by_id(fresh.id).status is UploadStatus.PENDING


def test_async_catalog_runs_off_the_loop_thread(store):
    bridge = AsyncBridge(2, name="test")
    catalog = AsyncCatalog(store, bridge)

    async def scenario():
        loop_thread = threading.get_ident()
        seen = []

        def record(file):
            seen.append(threading.get_ident())
            return store.save(file)

        saved = await bridge.run(record, _file(tags=["t"]))
        found = await catalog.find_by_id(saved.id)
        return loop_thread, seen, found

    try:
        loop_thread, seen, found = asyncio.run(scenario())
    finally:
        bridge.shutdown()
    assert seen and seen[0] != loop_thread
    assert found.tags == {"t"}


def test_bridge_translates_upstream_errors():
    bridge = AsyncBridge(1, name="test", upstream_errors=(OperationalError,), upstream_message="Catalog unavailable")

    def broken():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    def other():
        raise KeyError("not translated")

    try:
        with pytest.raises(UpstreamFailure) as exc_info:
            asyncio.run(bridge.run(broken))
        assert exc_info.value.message == "Catalog unavailable"
        with pytest.raises(KeyError):
            asyncio.run(bridge.run(other))
    finally:
        bridge.shutdown()


def test_bounded_gather_limits_concurrency_and_keeps_order():
    state = {"active": 0, "peak": 0}

    async def work(i):
        state["active"] += 1
        state["peak"] = max(state["peak"], state["active"])
        await asyncio.sleep(0.01 * (5 - i % 5))
        state["active"] -= 1
        return i

    result = asyncio.run(bounded_gather((work(i) for i in range(10)), 3))
    assert result == list(range(10))
    assert state["peak"] <= 3
