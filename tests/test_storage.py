"""Pruebas de escritura atómica, bitácora y geolocalización.

Atomic write, journal and geolocation tests.
"""

import asyncio
import json
import logging

import pytest
import structlog

from escrutinio.core.models import Checkpoint, CheckpointAction, GpsFix, freeze_counts
from escrutinio.errors import GeolocationUnavailable
from escrutinio.geolocation import CallbackLocationProvider, ReportedLocationProvider, acquire_fix
from escrutinio.logging import bind_context, setup_logging
from escrutinio.storage import CheckpointJournal, journal_filename, load_journal_entries, write_atomic


def _checkpoint(index: int) -> Checkpoint:
    return Checkpoint(
        checkpoint_id=f"c{index}",
        index=index,
        session_id="escr-1",
        action=CheckpointAction.FREEZE,
        votes_snapshot=freeze_counts({}),
        timestamp="2025-11-30T18:00:00+00:00",
        acting_user="observer",
        hash="0" * 64,
    )


def test_write_atomic_creates_parents_and_replaces(tmp_path) -> None:
    target = tmp_path / "nested" / "file.json"

    write_atomic(target, b"first")
    write_atomic(target, b"second")

    assert target.read_bytes() == b"second"
    assert [p.name for p in target.parent.iterdir()] == ["file.json"]


def test_journal_filename_is_keyed_by_session_digest() -> None:
    name = journal_filename("escr-01")

    assert name.endswith(".json") and len(name) == len("0123456789abcdef.json")
    assert journal_filename("escr-01") == name
    assert journal_filename("escr/1") != journal_filename("escr_1")
    assert "/" not in journal_filename("../../etc/passwd")
    with pytest.raises(ValueError):
        journal_filename("")


def test_journal_rejects_out_of_sequence_entries(tmp_path) -> None:
    journal = CheckpointJournal(tmp_path, "escr-1")
    journal.append(_checkpoint(0))

    with pytest.raises(ValueError):
        journal.append(_checkpoint(2))
    assert len(journal.load()) == 1


def test_corrupt_journal_is_reported(tmp_path) -> None:
    path = tmp_path / "journal.json"
    path.write_text("[{", encoding="utf-8")

    with pytest.raises(json.JSONDecodeError):
        load_journal_entries(path)


def test_missing_journal_is_empty(tmp_path) -> None:
    assert load_journal_entries(tmp_path / "absent.json") == []


def test_acquire_fix_without_provider_returns_none() -> None:
    assert asyncio.run(acquire_fix(None)) is None


def test_acquire_fix_passes_accuracy_preference() -> None:
    seen = []

    async def fix(high_accuracy: bool) -> GpsFix:
        seen.append(high_accuracy)
        return GpsFix(1.0, 2.0, 3.0)

    result = asyncio.run(acquire_fix(CallbackLocationProvider(fix), high_accuracy=False))

    assert result == GpsFix(1.0, 2.0, 3.0)
    assert seen == [False]


def test_reported_location_can_be_cleared() -> None:
    provider = ReportedLocationProvider(GpsFix(1.0, 1.0))
    provider.clear()

    with pytest.raises(GeolocationUnavailable):
        asyncio.run(provider.current_position(high_accuracy=True))
    assert asyncio.run(acquire_fix(provider)) is None


def test_setup_logging_writes_to_storage(tmp_path) -> None:
    root = logging.getLogger()
    previous_handlers = list(root.handlers)
    previous_level = root.level
    try:
        logger = setup_logging("info", tmp_path)
        bound = bind_context(logger, session_id="escr-1", papeleta=3, user="observer")
        bound.info("papeleta_closed", marks=2)
        assert (tmp_path / "logs" / "escrutinio.log").exists()
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in previous_handlers:
            root.addHandler(handler)
        root.setLevel(previous_level)
        structlog.reset_defaults()


def test_provider_errors_degrade_to_no_fix() -> None:
    async def denied(high_accuracy: bool) -> GpsFix:
        raise PermissionError("User denied Geolocation")

    assert asyncio.run(acquire_fix(CallbackLocationProvider(denied))) is None
