"""Registro de checkpoints FREEZE/UNFREEZE con bitácora encadenada.

English:
    FREEZE/UNFREEZE checkpoint recorder with a hash-chained, append-only log.

Cada checkpoint se encadena al anterior (``previous_hash``), se agrega a la
bitácora local y luego se envía al transporte remoto. La bitácora local es
la fuente de verdad: un envío fallido queda en ``unsubmitted`` y se reintenta
con ``retry_unsubmitted``.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Tuple

import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from escrutinio.core.hashchain import (
    ChainVerificationResult,
    canonical_json,
    compute_hash,
    verify_checkpoint_log,
)
from escrutinio.core.models import Checkpoint, CheckpointAction, GpsFix, freeze_counts
from escrutinio.errors import PersistenceError
from escrutinio.geolocation import GeolocationProvider, acquire_fix
from escrutinio.remote import CheckpointTransport
from escrutinio.storage import CheckpointJournal


class CheckpointRecorder:
    """Produce y conserva los checkpoints de un escrutinio.

    Args:
        session_id: Escrutinio dueño de la bitácora.
        transport: Destino remoto de los checkpoints (opcional).
        geolocation: Proveedor de ubicación usado en FREEZE.
        journal: Bitácora en disco; si existe se carga y se verifica.
        geolocation_timeout_seconds: Espera máxima por la ubicación.
        high_accuracy: Solicitar alta precisión al proveedor.
        device_id: Identificador del dispositivo que registra.
        submit_attempts: Intentos de envío por checkpoint.
        submit_backoff_seconds: Multiplicador del backoff exponencial.

    English:
        Records immutable checkpoints; the log is never edited or truncated.
    """

    def __init__(
        self,
        session_id: str,
        transport: Optional[CheckpointTransport] = None,
        *,
        geolocation: Optional[GeolocationProvider] = None,
        journal: Optional[CheckpointJournal] = None,
        geolocation_timeout_seconds: float = 10.0,
        high_accuracy: bool = True,
        device_id: Optional[str] = None,
        submit_attempts: int = 3,
        submit_backoff_seconds: float = 0.5,
        logger: Optional[Any] = None,
    ) -> None:
        self.session_id = session_id
        self._transport = transport
        self._geolocation = geolocation
        self._journal = journal
        self._geo_timeout = geolocation_timeout_seconds
        self._high_accuracy = high_accuracy
        self.device_id = device_id
        self._submit_attempts = max(1, submit_attempts)
        self._submit_backoff = submit_backoff_seconds
        self.logger = logger or structlog.get_logger(__name__)
        self._log: List[Checkpoint] = []
        self._unsubmitted: List[Checkpoint] = []
        if journal is not None:
            self._load_journal(journal)

    @property
    def log(self) -> Tuple[Checkpoint, ...]:
        return tuple(self._log)

    @property
    def unsubmitted(self) -> Tuple[Checkpoint, ...]:
        return tuple(self._unsubmitted)

    @property
    def last_hash(self) -> Optional[str]:
        return self._log[-1].hash if self._log else None

    @property
    def last_checkpoint(self) -> Optional[Checkpoint]:
        return self._log[-1] if self._log else None

    def verify(self) -> ChainVerificationResult:
        return verify_checkpoint_log(checkpoint.to_dict() for checkpoint in self._log)

    async def record(
        self,
        action: CheckpointAction,
        snapshot: Mapping[Any, int],
        acting_user: str,
        gps: Optional[GpsFix] = None,
    ) -> Checkpoint:
        """Registra un checkpoint y lo envía al transporte.

        En FREEZE, si no se entrega ``gps``, se intenta obtener la ubicación
        con un tiempo máximo; si falla, el checkpoint se registra sin ella.

        English:
            Record a checkpoint. FREEZE tries a bounded geolocation fix;
            failure yields ``gps=None`` and never blocks the checkpoint.
        """
        action = CheckpointAction(action)
        if not acting_user:
            raise ValueError("acting_user is required for a checkpoint")
        if gps is None and action is CheckpointAction.FREEZE:
            gps = await acquire_fix(
                self._geolocation,
                timeout_seconds=self._geo_timeout,
                high_accuracy=self._high_accuracy,
            )

        unsigned = Checkpoint(
            checkpoint_id=uuid.uuid4().hex,
            index=len(self._log),
            session_id=self.session_id,
            action=action,
            votes_snapshot=freeze_counts(snapshot),
            timestamp=datetime.now(timezone.utc).isoformat(),
            acting_user=acting_user,
            gps=gps,
            device_id=self.device_id,
            previous_hash=self.last_hash,
        )
        checkpoint = replace(
            unsigned,
            hash=compute_hash(canonical_json(unsigned.content()), unsigned.previous_hash),
        )
        if self._journal is not None:
            self._journal.append(checkpoint)
        self._log.append(checkpoint)
        self.logger.info(
            "checkpoint_recorded",
            session_id=self.session_id,
            action=action.value,
            index=checkpoint.index,
            acting_user=acting_user,
            has_gps=gps is not None,
            hash=checkpoint.hash,
        )

        if not await self._submit(checkpoint):
            self._unsubmitted.append(checkpoint)
        return checkpoint

    async def retry_unsubmitted(self) -> int:
        """Reintenta enviar los checkpoints pendientes, en orden.

        Returns:
            Cantidad de checkpoints enviados con éxito.

        English: Resubmit pending checkpoints in log order.
        """
        delivered = 0
        remaining: List[Checkpoint] = []
        for checkpoint in self._unsubmitted:
            if remaining or not await self._submit(checkpoint):
                remaining.append(checkpoint)
                continue
            delivered += 1
        self._unsubmitted = remaining
        return delivered

    async def _submit(self, checkpoint: Checkpoint) -> bool:
        if self._transport is None:
            return True
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._submit_attempts),
                wait=wait_exponential(multiplier=self._submit_backoff, max=30),
                reraise=True,
            ):
                with attempt:
                    await self._transport.submit_checkpoint(self.session_id, checkpoint)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning(
                "checkpoint_submit_failed",
                session_id=self.session_id,
                index=checkpoint.index,
                attempts=self._submit_attempts,
                error=str(exc),
            )
            return False
        self.logger.info("checkpoint_submitted", session_id=self.session_id, index=checkpoint.index)
        return True

    def _load_journal(self, journal: CheckpointJournal) -> None:
        entries = journal.load()
        foreign = sorted({entry.session_id for entry in entries if entry.session_id != self.session_id})
        if foreign:
            self.logger.critical(
                "checkpoint_journal_foreign_session",
                session_id=self.session_id,
                foreign_sessions=foreign,
                path=str(journal.path),
            )
            raise PersistenceError(f"Checkpoint journal {journal.path} holds entries of other sessions: {foreign}")
        result = verify_checkpoint_log(entry.to_dict() for entry in entries)
        if not result.valid:
            self.logger.critical(
                "checkpoint_journal_chain_broken",
                session_id=self.session_id,
                broken_at=result.broken_at,
                errors=result.errors,
            )
            raise PersistenceError(f"Checkpoint journal {journal.path} failed verification: {result.errors}")
        self._log = entries
        if entries:
            self.logger.info("checkpoint_journal_loaded", session_id=self.session_id, entries=len(entries))
