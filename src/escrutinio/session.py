"""
======================== ÍNDICE / INDEX ========================
1. Descripción general / Overview
2. Componentes principales / Main components
3. Notas de mantenimiento / Maintenance notes

======================== ESPAÑOL ========================
Archivo: `src/escrutinio/session.py`.
Coordinador del escrutinio de una JRV: une el buffer de papeletas, los
contadores, los checkpoints, la evidencia y la persistencia local bajo una
máquina de estados explícita.

Componentes detectados:
  - EscrutinioSession
  - open_session

Transiciones permitidas:
  PENDING     -> IN_PROGRESS | CLOSED
  IN_PROGRESS -> CLOSED
  CLOSED      -> IN_PROGRESS (UNFREEZE) | COMPLETED (finalize)
  COMPLETED   -> CLOSED (reopen)

======================== ENGLISH ========================
File: `src/escrutinio/session.py`.
Polling-station tally coordinator tying the papeleta buffer, counters,
checkpoints, evidence and local persistence together under an explicit
state machine.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from escrutinio.ballot import BallotBuffer, PapeletaRecord
from escrutinio.checkpoints import CheckpointRecorder
from escrutinio.config import TallySettings
from escrutinio.core.allocation import party_layout
from escrutinio.core.models import (
    Checkpoint,
    CheckpointAction,
    FinalTally,
    GpsFix,
    SessionStatus,
    SlotRange,
    freeze_counts,
)
from escrutinio.errors import (
    EvidenceRequired,
    EvidenceUploadFailure,
    InvalidAllocationInput,
    InvalidSessionTransition,
    SeatLimitReached,
    SessionNotEditable,
)
from escrutinio.evidence import EvidenceStore, S3EvidenceStore, evidence_sha256
from escrutinio.geolocation import GeolocationProvider
from escrutinio.logging import bind_context
from escrutinio.persistence import LocalStateStore, PersistedState
from escrutinio.remote import EvidenceRegistry, HttpTallyApi, SessionStatusSource, TallySubmitter
from escrutinio.storage import CheckpointJournal
from escrutinio.vote_store import VoteCountStore

_TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.PENDING: frozenset({SessionStatus.IN_PROGRESS, SessionStatus.CLOSED}),
    SessionStatus.IN_PROGRESS: frozenset({SessionStatus.CLOSED}),
    SessionStatus.CLOSED: frozenset({SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED}),
    SessionStatus.COMPLETED: frozenset({SessionStatus.CLOSED}),
}
_EDITABLE = frozenset({SessionStatus.PENDING, SessionStatus.IN_PROGRESS})


class EscrutinioSession:
    """Escrutinio legislativo de una JRV.

    Es el único escritor de su ``VoteCountStore``: toda marca pasa por el
    ``BallotBuffer`` o por los contadores de blancos/nulos de esta clase.

    English:
        Single-writer coordinator for one station tally. Use
        :meth:`EscrutinioSession.open` to build it from the status query.
    """

    def __init__(
        self,
        session_id: str,
        *,
        seat_count: int,
        party_ids: Sequence[str],
        store: VoteCountStore,
        recorder: CheckpointRecorder,
        status: SessionStatus = SessionStatus.PENDING,
        evidence_store: Optional[EvidenceStore] = None,
        evidence_registry: Optional[EvidenceRegistry] = None,
        submitter: Optional[TallySubmitter] = None,
        local_state: Optional[LocalStateStore] = None,
        drain_delay_seconds: float = 0.5,
        mesa_number: Optional[str] = None,
        logger: Optional[Any] = None,
    ) -> None:
        self.session_id = session_id
        self.seat_count = seat_count
        self.party_ids: Tuple[str, ...] = tuple(party_ids)
        self.layout: Dict[str, SlotRange] = party_layout(seat_count, self.party_ids)
        self.mesa_number = mesa_number
        self.logger = bind_context(logger or structlog.get_logger(__name__), session_id=session_id)
        self._status = SessionStatus(status)
        self._store = store
        self._recorder = recorder
        self._evidence_store = evidence_store
        self._evidence_registry = evidence_registry
        self._submitter = submitter
        self._local_state = local_state
        self._drain_delay = drain_delay_seconds
        self._closers: List[Callable[[], Awaitable[Any]]] = []
        self.ballot = BallotBuffer(store, self.layout, seat_count, logger=self.logger)
        self.expanded_party: Optional[str] = None
        self.evidence_url: Optional[str] = None
        self.evidence_hash: Optional[str] = None
        self.final_tally: Optional[FinalTally] = None
        store.add_sync_listener(self._persist_after_sync)

    @classmethod
    async def open(
        cls,
        session_id: str,
        *,
        status_source: SessionStatusSource,
        store: VoteCountStore,
        recorder: CheckpointRecorder,
        local_state: Optional[LocalStateStore] = None,
        default_parties: Sequence[str] = (),
        **kwargs: Any,
    ) -> "EscrutinioSession":
        """Consulta el estado, carga los contadores y restaura el trabajo en curso.

        English:
            Query the session status once, bind and load the counter store,
            and restore the in-flight papeleta saved for this session id.
        """
        info = await status_source.get_status(session_id)
        party_ids = tuple(info.party_ids) or tuple(default_parties)
        if not party_ids:
            raise InvalidAllocationInput(f"No parties known for session {session_id}")
        saved = local_state.restore(session_id) if local_state is not None else None
        store.init_session(session_id)
        if saved is not None:
            store.restore_local(session_id, saved.counts_map(), saved.pending_deltas)
        store.start()
        await store.load_from_remote(session_id)
        session = cls(
            session_id,
            seat_count=info.seat_count,
            party_ids=party_ids,
            store=store,
            recorder=recorder,
            status=info.status,
            local_state=local_state,
            mesa_number=info.mesa_number,
            **kwargs,
        )
        if saved is not None:
            session._restore_local_state(saved)
        session.logger.info(
            "session_opened",
            status=session.status.value,
            seat_count=session.seat_count,
            parties=len(party_ids),
            read_only=session.read_only,
            papeleta=session.ballot.sequence,
        )
        return session

    # ------------------------------------------------------------------
    # Estado / Status
    # ------------------------------------------------------------------
    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_editable(self) -> bool:
        return self._status in _EDITABLE

    @property
    def read_only(self) -> bool:
        return not self.is_editable

    @property
    def store(self) -> VoteCountStore:
        return self._store

    @property
    def checkpoints(self) -> Tuple[Checkpoint, ...]:
        return self._recorder.log

    @property
    def recorder(self) -> CheckpointRecorder:
        return self._recorder

    def counts(self) -> Mapping[str, int]:
        return self._store.snapshot()

    def party_totals(self) -> Dict[str, int]:
        return self._store.get_party_totals()

    def state(self) -> PersistedState:
        return PersistedState(
            current_papeleta=self.ballot.sequence,
            expanded_party=self.expanded_party,
            buffer_marks=tuple(self.ballot.marked_keys()),
            completed_count=self.ballot.completed_count,
            counts=tuple(sorted(self._store.get_counts().items(), key=lambda item: str(item[0]))),
            pending_deltas=self._store.pending_deltas(),
        )

    # ------------------------------------------------------------------
    # Marcas y papeletas / Marks and papeletas
    # ------------------------------------------------------------------
    def start(self) -> None:
        """PENDING -> IN_PROGRESS de forma explícita; idempotente en IN_PROGRESS."""
        if self._status is SessionStatus.IN_PROGRESS:
            return
        self._transition(SessionStatus.IN_PROGRESS)

    def toggle_mark(self, party_id: str, slot: int) -> bool:
        self._require_editable("toggle_mark")
        marked = self.ballot.toggle_mark(party_id, slot)
        self._auto_start()
        self._persist()
        return marked

    def close_papeleta(self) -> PapeletaRecord:
        self._require_editable("close_papeleta")
        record = self.ballot.close()
        self._auto_start()
        self._persist()
        return record

    def annul_papeleta(self, reason: Optional[str] = None) -> PapeletaRecord:
        self._require_editable("annul_papeleta")
        record = self.ballot.annul(reason)
        self._persist()
        return record

    def mark_blank(self) -> int:
        self._require_editable("mark_blank")
        value = self._store.increment_blank()
        self._auto_start()
        self._persist()
        return value

    def unmark_blank(self) -> int:
        self._require_editable("unmark_blank")
        value = self._store.decrement_blank()
        self._persist()
        return value

    def mark_null(self) -> int:
        self._require_editable("mark_null")
        value = self._store.increment_null()
        self._auto_start()
        self._persist()
        return value

    def unmark_null(self) -> int:
        self._require_editable("unmark_null")
        value = self._store.decrement_null()
        self._persist()
        return value

    def expand_party(self, party_id: Optional[str]) -> None:
        """Recuerda qué partido tiene abierta la grilla de casillas (UI)."""
        if party_id is not None and party_id not in self.layout:
            raise ValueError(f"Unknown party {party_id!r}")
        self.expanded_party = party_id
        self._persist()

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------
    async def freeze(self, acting_user: str, gps: Optional[GpsFix] = None) -> Checkpoint:
        """Congela el escrutinio con un checkpoint FREEZE.

        Pausa la sincronización, espera al delta en vuelo y una breve ventana
        de drenado, toma la instantánea y registra el checkpoint; la
        sincronización se reanuda siempre al salir.

        English:
            Pause sync, settle, snapshot, record FREEZE, move to CLOSED.
        """
        if self._status not in _EDITABLE:
            self.logger.error("session_freeze_rejected", status=self._status.value, user=acting_user)
            raise InvalidSessionTransition(self._status, SessionStatus.CLOSED)
        self._store.pause_sync()
        try:
            await self._store.settle()
            if self._drain_delay:
                await asyncio.sleep(self._drain_delay)
            snapshot = self._store.snapshot()
            checkpoint = await self._recorder.record(CheckpointAction.FREEZE, snapshot, acting_user, gps)
            self._transition(SessionStatus.CLOSED, user=acting_user)
        finally:
            self._store.resume_sync()
        return checkpoint

    async def unfreeze(self, acting_user: str) -> Checkpoint:
        """Registra UNFREEZE y vuelve a IN_PROGRESS.

        English: Record UNFREEZE and return to IN_PROGRESS.
        """
        if self._status is not SessionStatus.CLOSED:
            self.logger.error("session_unfreeze_rejected", status=self._status.value, user=acting_user)
            raise InvalidSessionTransition(self._status, SessionStatus.IN_PROGRESS)
        checkpoint = await self._recorder.record(
            CheckpointAction.UNFREEZE,
            self._store.snapshot(),
            acting_user,
        )
        self._transition(SessionStatus.IN_PROGRESS, user=acting_user)
        return checkpoint

    # ------------------------------------------------------------------
    # Evidencia y cierre final / Evidence and finalize
    # ------------------------------------------------------------------
    async def attach_evidence(self, blob: bytes, content_type: str = "image/jpeg") -> str:
        """Sube la foto del acta y guarda su referencia y hash.

        Raises:
            EvidenceUploadFailure: sin almacén configurado o la carga falló;
                el usuario puede finalizar con ``allow_without_evidence``.
        """
        if self._status is SessionStatus.COMPLETED:
            raise InvalidSessionTransition(self._status, None, "Evidence cannot change after completion.")
        if self._evidence_store is None:
            self.logger.warning("evidence_store_missing")
            raise EvidenceUploadFailure("No evidence store configured")
        try:
            url = await self._evidence_store.upload(self.session_id, blob, content_type)
        except EvidenceUploadFailure as exc:
            self.logger.warning("evidence_upload_failed", error=str(exc))
            raise
        self.evidence_url = url
        self.evidence_hash = evidence_sha256(blob)
        if self._evidence_registry is not None:
            await self._evidence_registry.attach_evidence(self.session_id, url, self.evidence_hash)
        self.logger.info("evidence_attached", url=url, hash=self.evidence_hash)
        return url

    async def finalize(
        self,
        acting_user: str,
        *,
        allow_without_evidence: bool = False,
        flush_timeout: Optional[float] = None,
    ) -> FinalTally:
        """Empaqueta el conteo final inmutable y lo entrega para envío.

        Requiere estado CLOSED (existe un FREEZE con los números finales) y
        evidencia adjunta, salvo anulación explícita del usuario.

        English:
            Package the immutable final tally and hand it to the submitter;
            CLOSED -> COMPLETED.
        """
        if self._status is not SessionStatus.CLOSED:
            self.logger.error("session_finalize_rejected", status=self._status.value, user=acting_user)
            raise InvalidSessionTransition(self._status, SessionStatus.COMPLETED)
        if self.evidence_url is None and not allow_without_evidence:
            self.logger.warning("session_finalize_without_evidence", user=acting_user)
            raise EvidenceRequired("Attach the acta photo or confirm finalizing without evidence.")

        flushed = await self._store.flush(timeout=flush_timeout)
        if not flushed:
            self.logger.warning("session_finalize_pending_sync", pending=self._store.pending_count)
        last = self._recorder.last_checkpoint
        tally = FinalTally(
            session_id=self.session_id,
            counts=self._store.snapshot(),
            party_totals=freeze_counts(self._store.get_party_totals()),
            blank_count=self._store.blank_count,
            null_count=self._store.null_count,
            completed_papeletas=self.ballot.completed_count,
            closed_papeletas=self.ballot.closed_count,
            annulled_papeletas=self.ballot.annulled_count,
            finalized_by=acting_user,
            finalized_at=datetime.now(timezone.utc).isoformat(),
            evidence_url=self.evidence_url,
            evidence_hash=self.evidence_hash,
            last_checkpoint_hash=last.hash if last else None,
            metadata=MappingProxyType(
                {
                    "mesa_number": self.mesa_number,
                    "seat_count": self.seat_count,
                    "parties": list(self.party_ids),
                    "without_evidence": self.evidence_url is None,
                    "pending_deltas": self._store.pending_count,
                    "device_id": self._recorder.device_id,
                }
            ),
        )
        if self._submitter is not None:
            await self._submitter.submit_final_tally(tally)
        self._transition(SessionStatus.COMPLETED, user=acting_user)
        self.final_tally = tally
        if self._local_state is not None:
            self._local_state.clear(self.session_id)
        return tally

    def reopen(self, acting_user: str) -> None:
        """COMPLETED -> CLOSED; editar de nuevo requiere un UNFREEZE.

        English: Move COMPLETED back to CLOSED; editing still needs UNFREEZE.
        """
        if self._status is not SessionStatus.COMPLETED:
            self.logger.error("session_reopen_rejected", status=self._status.value, user=acting_user)
            raise InvalidSessionTransition(self._status, SessionStatus.CLOSED)
        self._transition(SessionStatus.CLOSED, user=acting_user)
        self.logger.warning("session_reopened", user=acting_user)
        self.final_tally = None

    def on_close(self, callback: Callable[[], Awaitable[Any]]) -> None:
        self._closers.append(callback)

    async def aclose(self, timeout: Optional[float] = None) -> None:
        """Cierra el almacén (espera acotada) y guarda lo que quedó sin confirmar.

        English: Close the store within a bounded wait and save what is left.
        """
        await self._store.aclose(timeout=timeout)
        if self._status is not SessionStatus.COMPLETED:
            self._persist()
        for closer in self._closers:
            await closer()
        self._closers.clear()

    async def __aenter__(self) -> "EscrutinioSession":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Internos / Internals
    # ------------------------------------------------------------------
    def _transition(self, target: SessionStatus, *, user: Optional[str] = None) -> None:
        current = self._status
        if target not in _TRANSITIONS[current]:
            self.logger.error("session_invalid_transition", current=current.value, target=target.value)
            raise InvalidSessionTransition(current, target)
        self._status = target
        self.logger.info("session_transition", previous=current.value, status=target.value, user=user)

    def _auto_start(self) -> None:
        if self._status is SessionStatus.PENDING:
            self._transition(SessionStatus.IN_PROGRESS)

    def _require_editable(self, operation: str) -> None:
        if self._status not in _EDITABLE:
            self.logger.error("session_not_editable", operation=operation, status=self._status.value)
            raise SessionNotEditable(self._status, operation)

    def _persist(self) -> None:
        if self._local_state is not None:
            self._local_state.save(self.session_id, self.state())

    def _persist_after_sync(self) -> None:
        if self._status is not SessionStatus.COMPLETED:
            self._persist()

    def _restore_local_state(self, state: PersistedState) -> None:
        try:
            self.ballot.restore(state.current_papeleta, state.buffer_marks, state.completed_count)
        except (ValueError, SeatLimitReached) as exc:
            self.logger.warning("local_state_rejected", error=str(exc))
            return
        if state.expanded_party in self.layout:
            self.expanded_party = state.expanded_party


async def open_session(
    settings: TallySettings,
    session_id: str,
    *,
    geolocation: Optional[GeolocationProvider] = None,
    device_id: Optional[str] = None,
    http_transport: Optional[Any] = None,
    s3_client: Optional[Any] = None,
) -> EscrutinioSession:
    """Arma una sesión completa a partir de la configuración.

    English:
        Wire the HTTP API, vote store, checkpoint recorder, evidence store and
        local state from settings and open the session. The store and the
        recorder own the retry policy, so the HTTP client makes one attempt
        per call.
    """
    api = HttpTallyApi(
        settings.api_base_url,
        token=settings.api_token.get_secret_value() if settings.api_token else None,
        timeout_seconds=settings.http_timeout_seconds,
        max_attempts=1,
        default_parties=settings.parties,
        device_id=device_id,
        transport=http_transport,
    )
    store = VoteCountStore(
        api,
        sync_interval_seconds=settings.sync_interval_seconds,
        debounce_seconds=settings.sync_debounce_seconds,
        max_retries=settings.sync_max_retries,
        retry_delay_seconds=settings.sync_retry_delay_seconds,
        max_backoff_seconds=settings.sync_max_backoff_seconds,
        close_timeout_seconds=settings.http_timeout_seconds,
    )
    recorder = CheckpointRecorder(
        session_id,
        api,
        geolocation=geolocation,
        journal=CheckpointJournal(settings.storage_path, session_id),
        geolocation_timeout_seconds=settings.geolocation_timeout_seconds,
        high_accuracy=settings.geolocation_high_accuracy,
        device_id=device_id,
        submit_attempts=settings.sync_max_retries,
        submit_backoff_seconds=settings.sync_retry_delay_seconds,
    )
    evidence_store = None
    if settings.evidence_bucket:
        evidence_store = S3EvidenceStore(
            settings.evidence_bucket,
            prefix=settings.evidence_prefix,
            endpoint_url=settings.s3_endpoint_url,
            region_name=settings.aws_region,
            timeout_seconds=settings.http_timeout_seconds,
            s3_client=s3_client,
        )
    try:
        session = await EscrutinioSession.open(
            session_id,
            status_source=api,
            store=store,
            recorder=recorder,
            local_state=LocalStateStore(settings.storage_path),
            default_parties=settings.parties,
            evidence_store=evidence_store,
            evidence_registry=api,
            submitter=api,
            drain_delay_seconds=settings.drain_delay_seconds,
        )
    except Exception:
        await store.aclose(timeout=0)
        await api.aclose()
        raise
    session.on_close(api.aclose)
    return session
