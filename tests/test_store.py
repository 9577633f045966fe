import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from core.errors import PersistenceError
from core.models import EndReason, TaskResult
from data.database import init_db, session_scope
from data.repositories import RecordRepository, TaskRepository
from data.store import CrawlStore

from conftest import make_record


async def _store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'crawl.db'}")
    await init_db(engine)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    return CrawlStore(factory), factory, engine


def _result(job_id, new_count=2) -> TaskResult:
    return TaskResult(
        job_id=job_id,
        target_id="list-1",
        success=True,
        end_reason=EndReason.TARGET_REACHED,
        message="done",
        new_count=new_count,
        task_local_duplicate_count=0,
        persisted_duplicate_count=0,
        skipped_count=0,
        scroll_attempts=1,
        execution_time_ms=1200,
    )


@pytest.mark.asyncio
async def test_upsert_is_idempotent_per_target(tmp_path):
    store, factory, engine = await _store(tmp_path)
    record = make_record(1)

    assert not await store.exists("1", "list-1")
    assert await store.upsert(record, "job-1") is True
    assert await store.upsert(record, "job-2") is False
    assert await store.exists("1", "list-1")
    assert not await store.exists("1", "list-2")

    # same id under another target is a separate record
    assert await store.upsert(make_record(1, target_id="list-2")) is True

    async with session_scope(factory) as session:
        counts = await RecordRepository(session).count_by_target()
    assert counts == {"list-1": 1, "list-2": 1}
    await engine.dispose()


@pytest.mark.asyncio
async def test_timestamps_round_trip_as_integers(tmp_path):
    store, factory, engine = await _store(tmp_path)
    published = 4_102_444_800_999  # year 2100, in ms
    await store.upsert(make_record(9, published_at=published, scraped_at=published + 1))

    async with session_scope(factory) as session:
        rows = await RecordRepository(session).list_records(target_id="list-1")
    assert len(rows) == 1
    assert rows[0].published_at == published
    assert rows[0].scraped_at == published + 1
    assert isinstance(rows[0].published_at, int)
    await engine.dispose()


@pytest.mark.asyncio
async def test_task_status_mirroring(tmp_path):
    store, factory, engine = await _store(tmp_path)
    task_id = await store.create_task("list-1", "twitter_list", {"max_records": 20})

    await store.mark_running(task_id)
    await store.update_record_count(task_id, 1)
    async with session_scope(factory) as session:
        task = await TaskRepository(session).get(task_id)
        assert task.status == "running"
        assert task.record_count == 1
        assert task.started_at is not None

    await store.mark_completed(task_id, _result(task_id))
    async with session_scope(factory) as session:
        task = await TaskRepository(session).get(task_id)
        assert task.status == "completed"
        assert task.record_count == 2
        assert task.result["end_reason"] == "TARGET_REACHED"
        assert task.completed_at is not None
    await engine.dispose()


@pytest.mark.asyncio
async def test_fail_orphaned_running(tmp_path):
    store, factory, engine = await _store(tmp_path)
    lost = await store.create_task("list-1", "twitter_list", {})
    alive = await store.create_task("list-2", "twitter_list", {})
    done = await store.create_task("list-3", "twitter_list", {})
    for task_id in (lost, alive, done):
        await store.mark_running(task_id)
    await store.mark_completed(done, _result(done))

    demoted = await store.fail_orphaned_running(keep={alive})

    assert demoted == [lost]
    async with session_scope(factory) as session:
        repo = TaskRepository(session)
        assert (await repo.get(lost)).status == "failed"
        assert (await repo.get(lost)).result["error"]["code"] == "ORPHANED_TASK"
        assert (await repo.get(alive)).status == "running"
        assert (await repo.get(done)).status == "completed"
    await engine.dispose()


@pytest.mark.asyncio
async def test_storage_errors_become_persistence_errors(tmp_path):
    # tables never created
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    store = CrawlStore(async_sessionmaker(engine, expire_on_commit=False))

    with pytest.raises(PersistenceError):
        await store.exists("1", "list-1")
    with pytest.raises(PersistenceError):
        await store.upsert(make_record(1))
    await engine.dispose()
