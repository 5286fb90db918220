"""Pruebas de persistencia local entre recargas.

Local persistence tests across reloads.
"""

import asyncio
import json

import pytest

from escrutinio.checkpoints import CheckpointRecorder
from escrutinio.core.models import VoteDelta, VoteKey
from escrutinio.errors import PersistenceError
from escrutinio.persistence import SCHEMA_VERSION, LocalStateStore, PersistedState, _checksum_payload
from escrutinio.session import EscrutinioSession


def test_save_and_restore_round_trip(tmp_path) -> None:
    store = LocalStateStore(tmp_path)
    state = PersistedState(
        current_papeleta=5,
        expanded_party="LIBRE",
        buffer_marks=(VoteKey("LIBRE", 9), VoteKey("PDC", 1)),
        completed_count=3,
    )

    path = store.save("escr-1", state)

    assert path.parent == tmp_path / "state"
    assert store.restore("escr-1") == state
    assert store.restore("escr-2") is None


def test_saving_another_session_removes_stale_records(tmp_path) -> None:
    store = LocalStateStore(tmp_path)
    store.save("escr-1", PersistedState(current_papeleta=2))
    store.save("escr-2", PersistedState(current_papeleta=1))

    assert store.restore("escr-1") is None
    assert [p.name for p in (tmp_path / "state").glob("*.json")] == [store.path_for("escr-2").name]


def test_corrupt_record_is_treated_as_absent(tmp_path) -> None:
    store = LocalStateStore(tmp_path)
    path = store.path_for("escr-1")
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")

    assert store.restore("escr-1") is None
    with pytest.raises(PersistenceError):
        store.load_record("escr-1")


def test_checksum_mismatch_is_treated_as_absent(tmp_path) -> None:
    store = LocalStateStore(tmp_path)
    path = store.save("escr-1", PersistedState(current_papeleta=2, completed_count=1))
    record = json.loads(path.read_text(encoding="utf-8"))
    record["state"]["completed_count"] = 40
    path.write_text(json.dumps(record), encoding="utf-8")

    assert store.restore("escr-1") is None


def test_unknown_schema_version_is_treated_as_absent(tmp_path) -> None:
    store = LocalStateStore(tmp_path)
    path = store.save("escr-1", PersistedState())
    record = json.loads(path.read_text(encoding="utf-8"))
    record["schema_version"] = 99
    path.write_text(json.dumps(record), encoding="utf-8")

    assert store.restore("escr-1") is None


def test_version_one_record_is_migrated(tmp_path) -> None:
    store = LocalStateStore(tmp_path)
    path = store.path_for("escr-1")
    path.parent.mkdir(parents=True)
    legacy = {
        "currentPapeleta": 7,
        "expandedParty": "PDC",
        "votesBuffer": [
            {"partyId": "PDC", "casillaNumber": 2, "timestamp": 1700000000000},
            "LIBRE_10",
        ],
        "completedPapeletas": 6,
    }
    path.write_text(json.dumps(legacy), encoding="utf-8")

    state = store.restore("escr-1")

    assert state == PersistedState(
        current_papeleta=7,
        expanded_party="PDC",
        buffer_marks=(VoteKey("PDC", 2), VoteKey("LIBRE", 10)),
        completed_count=6,
    )


def test_session_reload_restores_in_flight_work(tmp_path, make_store, status_source, transport) -> None:
    local_state = LocalStateStore(tmp_path)

    async def open_session(session_id: str) -> EscrutinioSession:
        return await EscrutinioSession.open(
            session_id,
            status_source=status_source,
            store=make_store(),
            recorder=CheckpointRecorder(session_id, transport),
            local_state=local_state,
        )

    async def scenario():
        async with await open_session("escr-1") as first:
            first.toggle_mark("PDC", 1)
            first.close_papeleta()
            first.toggle_mark("LIBRE", 9)
            first.toggle_mark("PLH", 25)
            first.expand_party("PLH")
            before = (first.ballot.sequence, first.ballot.marked_keys(), first.ballot.completed_count)

        async with await open_session("escr-1") as reloaded:
            after = (reloaded.ballot.sequence, reloaded.ballot.marked_keys(), reloaded.ballot.completed_count)
            expanded = reloaded.expanded_party

        async with await open_session("escr-2") as other:
            fresh = (other.ballot.sequence, other.ballot.marked_keys(), other.ballot.completed_count)
            other.toggle_mark("PDC", 3)

        return before, after, expanded, fresh

    before, after, expanded, fresh = asyncio.run(scenario())

    assert after == before == (2, [VoteKey("LIBRE", 9), VoteKey("PLH", 25)], 0)
    assert expanded == "PLH"
    assert fresh == (1, [], 0)
    assert local_state.restore("escr-1") is None


def test_counts_and_pending_deltas_round_trip(tmp_path) -> None:
    store = LocalStateStore(tmp_path)
    pending = (
        ("escr-0", VoteDelta(VoteKey("PNH", 33), 1, 1700000000000, "b-0")),
        ("escr-1", VoteDelta(VoteKey("PDC", 1), -1, 1700000000500, "b-1")),
    )
    state = PersistedState(
        current_papeleta=2,
        counts=((VoteKey("BLANK", 0), 1), (VoteKey("PDC", 1), 3)),
        pending_deltas=pending,
    )

    path = store.save("escr-1", state)
    record = json.loads(path.read_text(encoding="utf-8"))

    assert record["schema_version"] == SCHEMA_VERSION == 3
    assert record["state"]["counts"] == {"BLANK_0": 1, "PDC_1": 3}
    assert store.restore("escr-1") == state


def test_version_two_record_is_migrated(tmp_path) -> None:
    store = LocalStateStore(tmp_path)
    path = store.save("escr-1", PersistedState(current_papeleta=4, buffer_marks=(VoteKey("PDC", 2),)))
    record = json.loads(path.read_text(encoding="utf-8"))
    record.pop("checksum")
    record["schema_version"] = 2
    del record["state"]["counts"]
    del record["state"]["pending_deltas"]
    record["checksum"] = _checksum_payload(record)
    path.write_text(json.dumps(record), encoding="utf-8")

    state = store.restore("escr-1")

    assert state == PersistedState(current_papeleta=4, buffer_marks=(VoteKey("PDC", 2),))


@pytest.mark.parametrize("load_offline", [False, True])
def test_unsynced_marks_survive_reload_while_remote_is_down(
    load_offline, tmp_path, make_store, remote, status_source, transport
) -> None:
    local_state = LocalStateStore(tmp_path)
    remote.fail_times = 10**6
    if load_offline:
        remote.load_error = ConnectionError("offline")

    async def open_session(session_id: str) -> EscrutinioSession:
        return await EscrutinioSession.open(
            session_id,
            status_source=status_source,
            store=make_store(close_timeout_seconds=0.1),
            recorder=CheckpointRecorder(session_id, transport),
            local_state=local_state,
        )

    async def scenario():
        async with await open_session("escr-1") as first:
            first.toggle_mark("PDC", 1)

        async with await open_session("escr-1") as reloaded:
            restored = (
                reloaded.ballot.marked_keys(),
                reloaded.store.get_count(VoteKey("PDC", 1)),
                reloaded.store.pending_count,
            )
            reloaded.close_papeleta()
            after_close = dict(reloaded.counts())

            remote.fail_times = 0
            remote.load_error = None
            assert await reloaded.store.flush(timeout=2)
        return restored, after_close

    restored, after_close = asyncio.run(asyncio.wait_for(scenario(), timeout=10))

    assert restored == ([VoteKey("PDC", 1)], 1, 1)
    assert after_close == {"PDC_1": 1}
    assert remote.counts == {VoteKey("PDC", 1): 1}
    saved = local_state.restore("escr-1")
    assert saved is not None
    assert saved.pending_deltas == ()
    assert saved.counts_map() == {VoteKey("PDC", 1): 1}
