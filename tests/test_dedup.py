import pytest

from core.errors import PersistenceError
from core.models import Classification
from crawler.dedup import DedupLedger

from conftest import FakeStore, make_record


@pytest.mark.asyncio
async def test_repeated_record_is_new_once_then_task_local():
    store = FakeStore()
    ledger = DedupLedger("list-1", store, set())
    record = make_record(1)

    results = [await ledger.classify(record) for _ in range(5)]

    assert results.count(Classification.NEW) == 1
    assert results.count(Classification.TASK_LOCAL) == 4
    assert Classification.PERSISTED not in results
    assert results[0] is Classification.NEW


@pytest.mark.asyncio
async def test_previously_stored_record_is_never_new():
    record = make_record(7)
    store = FakeStore(persisted=[record])
    ledger = DedupLedger("list-1", store, set())

    results = [await ledger.classify(record) for _ in range(3)]

    assert results == [Classification.PERSISTED] * 3
    # already looked up this run: no second storage round trip
    assert store.exists_calls == 1
    assert "7" in ledger


@pytest.mark.asyncio
async def test_concurrent_writer_marks_record_persisted():
    store = FakeStore()
    ledger = DedupLedger("list-1", store, set())
    record = make_record(4)

    assert await ledger.classify(record) is Classification.NEW
    ledger.mark_persisted(record.id)

    assert await ledger.classify(record) is Classification.PERSISTED


@pytest.mark.asyncio
async def test_lookup_is_scoped_to_target():
    stored_elsewhere = make_record(3, target_id="other-list")
    store = FakeStore(persisted=[stored_elsewhere])
    ledger = DedupLedger("list-1", store, set())

    assert await ledger.classify(make_record(3)) is Classification.NEW


@pytest.mark.asyncio
async def test_failed_lookup_leaves_id_unrecorded():
    store = FakeStore()
    store.fail_exists = True
    processed = set()
    ledger = DedupLedger("list-1", store, processed)

    with pytest.raises(PersistenceError):
        await ledger.classify(make_record(1))
    assert processed == set()

    store.fail_exists = False
    assert await ledger.classify(make_record(1)) is Classification.NEW
    assert len(ledger) == 1
