from __future__ import annotations

import asyncio

import pytest

from app.services.ledger import ExposureLedger
from app.storage import SEEN_KEY, SHOWN_KEY, MemoryStore


def test_shown_ids_are_evicted_oldest_first():
    ledger = ExposureLedger(capacity=3)
    for movie_id in range(1, 6):
        ledger.record_shown(movie_id)

    assert ledger.shown == [3, 4, 5]
    assert not ledger.was_shown(1)
    assert ledger.was_shown(5)


def test_shown_ids_never_exceed_capacity():
    ledger = ExposureLedger(capacity=100)
    for movie_id in range(250):
        ledger.record_shown(movie_id)
        assert len(ledger.shown) <= 100


def test_re_recording_moves_id_to_newest_position():
    ledger = ExposureLedger(capacity=3, shown=[1, 2, 3])
    ledger.record_shown(1)
    ledger.record_shown(4)

    assert ledger.shown == [3, 1, 4]


def test_seen_ids_are_unbounded_and_excluded():
    ledger = ExposureLedger(capacity=1)
    ledger.mark_seen(10)
    ledger.mark_seen(11)

    assert ledger.was_seen(10) and ledger.was_seen(11)
    assert ledger.excludes(11)
    assert not ledger.excludes(12)
    assert ledger.excluded_ids() == frozenset({10, 11})


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        ExposureLedger(capacity=0)


def test_ledger_round_trips_through_store():
    store = MemoryStore()

    async def runner() -> ExposureLedger:
        ledger = ExposureLedger(capacity=5, shown=[1, 2])
        ledger.mark_seen(7)
        await ledger.save(store)
        return await ExposureLedger.load(store, capacity=5)

    loaded = asyncio.run(runner())

    assert loaded.shown == [1, 2]
    assert loaded.seen == [7]


def test_malformed_ledger_records_load_as_empty():
    store = MemoryStore({SHOWN_KEY: "not json", SEEN_KEY: '[1, "two", true, 3]'})

    loaded = asyncio.run(ExposureLedger.load(store, capacity=5))

    assert loaded.shown == []
    assert loaded.seen == [1, 3]
