"""Dobles en memoria de los colaboradores externos del escrutinio.

In-memory doubles of the tally core's external collaborators.
"""

from __future__ import annotations

import asyncio
import hashlib
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import pytest

from escrutinio.core.models import (
    Checkpoint,
    FinalTally,
    SessionStatus,
    SessionStatusInfo,
    VoteDelta,
    VoteKey,
)
from escrutinio.errors import EvidenceUploadFailure
from escrutinio.vote_store import VoteCountStore

PARTIES = ("PDC", "LIBRE", "PINU-SD", "PLH", "PNH")


class FakeRemoteStore:
    """Almacén remoto idempotente por ``client_batch_id``."""

    def __init__(self, counts: Optional[Dict[VoteKey, int]] = None) -> None:
        self.counts: Dict[VoteKey, int] = dict(counts or {})
        self.applied: List[Tuple[str, VoteDelta]] = []
        self.calls = 0
        self.fail_times = 0
        self.load_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None
        self._seen: Set[str] = set()

    async def load_counts(self, session_id: str) -> Dict[VoteKey, int]:
        if self.load_error is not None:
            raise self.load_error
        return dict(self.counts)

    async def apply_delta(self, session_id: str, delta: VoteDelta) -> None:
        self.calls += 1
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("remote tally store unavailable")
        if delta.client_batch_id in self._seen:
            return
        self._seen.add(delta.client_batch_id)
        self.applied.append((session_id, delta))
        self.counts[delta.key] = self.counts.get(delta.key, 0) + delta.delta


class FakeTransport:
    def __init__(self) -> None:
        self.submitted: List[Tuple[str, Checkpoint]] = []
        self.fail_times = 0

    async def submit_checkpoint(self, session_id: str, checkpoint: Checkpoint) -> Dict[str, Any]:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("checkpoint endpoint unavailable")
        self.submitted.append((session_id, checkpoint))
        return {"id": checkpoint.checkpoint_id}


class FakeStatusSource:
    def __init__(
        self,
        status: SessionStatus = SessionStatus.PENDING,
        seat_count: int = 8,
        party_ids: Sequence[str] = PARTIES,
    ) -> None:
        self.info = SessionStatusInfo(status=status, seat_count=seat_count, party_ids=tuple(party_ids))
        self.queries: List[str] = []

    async def get_status(self, session_id: str) -> SessionStatusInfo:
        self.queries.append(session_id)
        return self.info


class FakeEvidenceStore:
    def __init__(self) -> None:
        self.uploads: List[Tuple[str, bytes, str]] = []
        self.fail = False

    async def upload(self, session_id: str, blob: bytes, content_type: str) -> str:
        if self.fail:
            raise EvidenceUploadFailure("bucket unavailable")
        self.uploads.append((session_id, blob, content_type))
        return f"memory://{session_id}/{hashlib.sha256(blob).hexdigest()}.jpg"


class FakeSubmitter:
    """Recibe el conteo final y registra la evidencia adjunta."""

    def __init__(self) -> None:
        self.tallies: List[FinalTally] = []
        self.evidence: List[Tuple[str, str, Optional[str]]] = []

    async def submit_final_tally(self, tally: FinalTally) -> Dict[str, Any]:
        self.tallies.append(tally)
        return {"success": True}

    async def attach_evidence(self, session_id: str, url: str, sha256: Optional[str]) -> None:
        self.evidence.append((session_id, url, sha256))


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def status_source() -> FakeStatusSource:
    return FakeStatusSource()


@pytest.fixture
def evidence_store() -> FakeEvidenceStore:
    return FakeEvidenceStore()


@pytest.fixture
def submitter() -> FakeSubmitter:
    return FakeSubmitter()


@pytest.fixture
def make_store(remote: FakeRemoteStore):
    """Fábrica de ``VoteCountStore`` con tiempos cortos para pruebas."""

    def factory(**overrides: Any) -> VoteCountStore:
        options: Dict[str, Any] = {
            "sync_interval_seconds": 0.05,
            "debounce_seconds": 0.0,
            "max_retries": 3,
            "retry_delay_seconds": 0.0,
        }
        options.update(overrides)
        return VoteCountStore(remote, **options)

    return factory
