"""Pruebas del almacén de conteos y su sincronización en segundo plano.

Vote count store and background sync tests.
"""

import asyncio

import pytest

from escrutinio.core.models import BLANK_KEY, VoteDelta, VoteKey
from escrutinio.errors import SyncFailure
from escrutinio.vote_store import VoteCountStore

PDC_1 = VoteKey("PDC", 1)
PDC_2 = VoteKey("PDC", 2)
LIBRE_9 = VoteKey("LIBRE", 9)


def test_decrement_at_zero_is_a_silent_noop(make_store) -> None:
    store = make_store()
    store.init_session("escr-1")

    assert store.decrement(PDC_1) == 0
    assert store.get_count(PDC_1) == 0
    assert store.pending_count == 0


def test_counts_and_party_totals(make_store) -> None:
    store = make_store()
    store.init_session("escr-1")
    store.increment(PDC_1)
    store.increment(PDC_1)
    store.increment(PDC_2)
    store.increment(LIBRE_9)
    store.increment_blank()
    store.decrement(PDC_1)

    assert store.get_count(PDC_1) == 1
    assert store.get_party_total("PDC") == 2
    assert store.get_party_totals() == {"PDC": 2, "LIBRE": 1}
    assert store.blank_count == 1
    assert store.get_count(BLANK_KEY) == 1


def test_mutation_before_init_session_fails(make_store) -> None:
    store = make_store()

    with pytest.raises(RuntimeError):
        store.increment(PDC_1)


def test_new_session_clears_counters_and_same_session_keeps_them(make_store) -> None:
    store = make_store()
    assert store.init_session("escr-1") is True
    store.increment(PDC_1)

    assert store.init_session("escr-1") is False
    assert store.get_count(PDC_1) == 1

    assert store.init_session("escr-2") is True
    assert store.get_count(PDC_1) == 0


def test_snapshot_is_read_only(make_store) -> None:
    store = make_store()
    store.init_session("escr-1")
    store.increment(PDC_1)
    snapshot = store.snapshot()
    store.increment(PDC_1)

    assert snapshot == {"PDC_1": 1}
    with pytest.raises(TypeError):
        snapshot["PDC_1"] = 5  # type: ignore[index]


def test_every_delta_carries_a_unique_batch_id(make_store, remote) -> None:
    async def scenario() -> None:
        store = make_store()
        store.init_session("escr-1")
        async with store:
            for _ in range(5):
                store.increment(PDC_1)
            assert await store.flush(timeout=2)

    asyncio.run(scenario())

    batch_ids = {delta.client_batch_id for _, delta in remote.applied}
    assert len(batch_ids) == 5


def test_deltas_reach_remote_in_issue_order(make_store, remote) -> None:
    async def scenario() -> None:
        store = make_store()
        store.init_session("escr-1")
        async with store:
            store.increment(PDC_1)
            store.increment(LIBRE_9)
            store.decrement(PDC_1)
            store.increment(PDC_1)
            assert await store.flush(timeout=2)
            assert store.last_sync_at is not None

    asyncio.run(scenario())

    applied = [(str(delta.key), delta.delta) for _, delta in remote.applied]
    assert applied == [("PDC_1", 1), ("LIBRE_9", 1), ("PDC_1", -1), ("PDC_1", 1)]
    assert remote.counts == {PDC_1: 1, LIBRE_9: 1}


def test_pause_gates_draining_but_queue_keeps_accepting(make_store, remote) -> None:
    async def scenario() -> None:
        store = make_store()
        store.init_session("escr-1")
        async with store:
            store.pause_sync()
            store.increment(PDC_1)
            store.increment(PDC_2)
            await asyncio.sleep(0.15)

            assert store.is_sync_paused
            assert remote.applied == []
            assert store.pending_count == 2
            assert await store.flush(timeout=0.1) is False

            store.resume_sync()
            assert await store.flush(timeout=2)
            assert store.pending_count == 0

    asyncio.run(scenario())

    assert len(remote.applied) == 2


def test_transient_failures_are_retried(make_store, remote) -> None:
    remote.fail_times = 2

    async def scenario() -> VoteCountStore:
        store = make_store(max_retries=3)
        store.init_session("escr-1")
        async with store:
            store.increment(PDC_1)
            assert await store.flush(timeout=2)
        return store

    store = asyncio.run(scenario())

    assert remote.calls == 3
    assert remote.counts == {PDC_1: 1}
    assert store.last_error is None


def test_exhausted_retries_keep_delta_queued_until_remote_recovers(make_store, remote) -> None:
    remote.fail_times = 10**6

    async def scenario() -> None:
        store = make_store(max_retries=2)
        store.init_session("escr-1")
        async with store:
            store.increment(PDC_1)
            store.decrement(PDC_1)
            assert await store.flush(timeout=0.3) is False
            assert store.pending_count == 2
            assert isinstance(store.last_error, SyncFailure)

            remote.fail_times = 0
            assert await store.flush(timeout=2)

    asyncio.run(scenario())

    assert [delta.delta for _, delta in remote.applied] == [1, -1]
    assert remote.counts == {PDC_1: 0}


def test_pending_deltas_of_previous_session_still_propagate(make_store, remote) -> None:
    async def scenario() -> None:
        store = make_store()
        store.init_session("escr-1")
        store.increment(PDC_1)
        store.init_session("escr-2")
        store.increment(LIBRE_9)
        async with store:
            assert await store.flush(timeout=2)

    asyncio.run(scenario())

    assert [(session, str(delta.key)) for session, delta in remote.applied] == [
        ("escr-1", "PDC_1"),
        ("escr-2", "LIBRE_9"),
    ]


def test_load_from_remote_reapplies_pending_local_deltas(make_store, remote) -> None:
    remote.counts = {PDC_1: 2, LIBRE_9: 0}

    async def scenario() -> VoteCountStore:
        store = make_store()
        store.init_session("escr-1")
        store.pause_sync()
        store.increment(PDC_1)
        store.increment(PDC_2)
        assert await store.load_from_remote("escr-1")
        return store

    store = asyncio.run(scenario())

    assert store.get_count(PDC_1) == 3
    assert store.get_count(PDC_2) == 1
    assert store.get_count(LIBRE_9) == 0
    assert store.pending_count == 2


def test_failed_remote_load_keeps_local_state(make_store, remote) -> None:
    remote.load_error = ConnectionError("offline")

    async def scenario() -> VoteCountStore:
        store = make_store()
        store.init_session("escr-1")
        store.increment(PDC_1)
        assert await store.load_from_remote("escr-1") is False
        return store

    store = asyncio.run(scenario())

    assert store.get_count(PDC_1) == 1


def test_aclose_is_bounded_when_remote_is_unreachable(make_store, remote) -> None:
    remote.fail_times = 10**6

    async def scenario() -> VoteCountStore:
        store = make_store(close_timeout_seconds=0.2)
        store.init_session("escr-1")
        async with store:
            store.increment(PDC_1)
        return store

    store = asyncio.run(asyncio.wait_for(scenario(), timeout=5))

    assert store.pending_count == 1
    assert store.get_count(PDC_1) == 1
    assert remote.applied == []


def test_remote_load_holds_sync_until_pending_deltas_are_reapplied(make_store, remote) -> None:
    async def slow_load(session_id):
        observed = dict(remote.counts)
        await asyncio.sleep(0.2)
        return observed

    remote.load_counts = slow_load

    async def scenario():
        store = make_store()
        store.init_session("escr-1")
        async with store:
            store.increment(PDC_1)
            assert await store.load_from_remote("escr-1")
            after_load = store.get_count(PDC_1)
            assert not store.is_sync_paused
            assert await store.flush(timeout=2)
            return after_load, store.get_count(PDC_1)

    after_load, after_flush = asyncio.run(scenario())

    assert after_load == after_flush == 1
    assert remote.counts == {PDC_1: 1}


def test_restore_local_requeues_unconfirmed_deltas_once(make_store, remote) -> None:
    saved = VoteDelta(PDC_1, 1, 1700000000000, "batch-saved")

    async def scenario() -> VoteCountStore:
        store = make_store()
        assert store.restore_local("escr-1", {PDC_1: 1}, [("escr-1", saved)]) == 1
        assert store.restore_local("escr-1", {PDC_1: 1}, [("escr-1", saved)]) == 0
        assert store.get_count(PDC_1) == 1
        async with store:
            assert await store.flush(timeout=2)
        return store

    store = asyncio.run(scenario())

    assert [delta.client_batch_id for _, delta in remote.applied] == ["batch-saved"]
    assert store.pending_deltas() == ()


def test_sync_listeners_run_after_deliveries(make_store) -> None:
    rounds = []

    async def scenario() -> None:
        store = make_store()
        store.add_sync_listener(lambda: rounds.append(store.pending_count))
        store.init_session("escr-1")
        async with store:
            store.increment(PDC_1)
            assert await store.flush(timeout=2)

    asyncio.run(scenario())

    assert rounds and rounds[-1] == 0
