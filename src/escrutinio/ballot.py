"""Papeleta en curso: buffer acotado de marcas y su máquina de estados.

English:
    In-progress ballot page: bounded, togglable mark buffer and its state machine.

Estados: ``OPEN`` -> ``CLOSED`` | ``ANULADA`` (terminales). Cada marca aceptada
se refleja en el ``VoteCountStore`` en la misma llamada síncrona; al quitarla
se revierte. Cerrar o anular abre de inmediato la siguiente papeleta.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog

from escrutinio.core.models import PapeletaStatus, SlotRange, VoteKey
from escrutinio.errors import InvalidBallotState, InvalidVoteTarget, SeatLimitReached
from escrutinio.vote_store import VoteCountStore

DEFAULT_ANNUL_REASON = "Anulada por usuario"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class Papeleta:
    """Papeleta que se está transcribiendo.

    English: The ballot page currently being transcribed.
    """

    sequence: int
    status: PapeletaStatus = PapeletaStatus.OPEN
    marks: Dict[VoteKey, int] = field(default_factory=dict)
    created_at: str = field(default_factory=_utc_now)

    @property
    def total_marks(self) -> int:
        return sum(self.marks.values())

    def is_marked(self, key: VoteKey) -> bool:
        return self.marks.get(key, 0) > 0


@dataclass(frozen=True)
class PapeletaRecord:
    """Resumen inmutable de una papeleta terminada.

    English: Immutable summary of a finished papeleta.
    """

    sequence: int
    status: PapeletaStatus
    marks: Mapping[str, int]
    total_marks: int
    complete: bool
    created_at: str
    closed_at: str
    annul_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "status": self.status.value,
            "marks": dict(self.marks),
            "total_marks": self.total_marks,
            "complete": self.complete,
            "created_at": self.created_at,
            "closed_at": self.closed_at,
            "annul_reason": self.annul_reason,
        }


class BallotBuffer:
    """Administra la papeleta abierta de un escrutinio legislativo.

    Args:
        store: Contadores del escrutinio; reciben cada marca aceptada.
        layout: Rango de casillas de cada partido.
        seat_count: Diputados del departamento; límite de marcas por papeleta.
        sequence: Número de la papeleta abierta inicial.
        completed_count: Papeletas completas ya contabilizadas.

    English:
        Owns the single OPEN papeleta of a session and mirrors accepted marks
        into the vote store.
    """

    def __init__(
        self,
        store: VoteCountStore,
        layout: Mapping[str, SlotRange],
        seat_count: int,
        *,
        sequence: int = 1,
        completed_count: int = 0,
        logger: Optional[Any] = None,
    ) -> None:
        if seat_count <= 0:
            raise ValueError("seat_count must be positive")
        for party_id, slot_range in layout.items():
            if len(slot_range) != seat_count:
                raise ValueError(f"Range for {party_id} is not {seat_count} slots wide")
        self._store = store
        self._layout = dict(layout)
        self.seat_count = seat_count
        self.completed_count = completed_count
        self.current = Papeleta(sequence=sequence)
        self.history: List[PapeletaRecord] = []
        self.logger = logger or structlog.get_logger(__name__)

    # ------------------------------------------------------------------
    # Lecturas / Reads
    # ------------------------------------------------------------------
    @property
    def sequence(self) -> int:
        return self.current.sequence

    @property
    def total_marks(self) -> int:
        return self.current.total_marks

    @property
    def remaining_capacity(self) -> int:
        return self.seat_count - self.current.total_marks

    @property
    def is_full(self) -> bool:
        return self.current.total_marks >= self.seat_count

    @property
    def closed_count(self) -> int:
        return sum(1 for record in self.history if record.status is PapeletaStatus.CLOSED)

    @property
    def annulled_count(self) -> int:
        return sum(1 for record in self.history if record.status is PapeletaStatus.ANULADA)

    def is_marked(self, party_id: str, slot: int) -> bool:
        return self.current.is_marked(VoteKey(party_id, slot))

    def marked_keys(self) -> List[VoteKey]:
        return sorted(key for key, count in self.current.marks.items() if count > 0)

    # ------------------------------------------------------------------
    # Operaciones / Operations
    # ------------------------------------------------------------------
    def toggle_mark(self, party_id: str, slot: int) -> bool:
        """Marca o desmarca una casilla de la papeleta abierta.

        Returns:
            ``True`` si la casilla quedó marcada, ``False`` si se desmarcó.

        Raises:
            InvalidBallotState: la papeleta no está abierta.
            InvalidVoteTarget: la casilla no pertenece al partido.
            SeatLimitReached: ya hay tantas marcas como diputados; se debe
                cerrar o anular la papeleta antes de continuar.

        English:
            Toggle a slot: a second toggle corrects a misclick without closing
            the ballot. The store mutation and buffer mutation happen together.
        """
        self._require_open("toggle_mark")
        key = self._vote_key(party_id, slot)
        if self.current.is_marked(key):
            self._store.decrement(key)
            del self.current.marks[key]
            self.logger.debug("papeleta_mark_removed", sequence=self.sequence, key=str(key))
            return False
        if self.is_full:
            self.logger.info(
                "papeleta_seat_limit_reached",
                sequence=self.sequence,
                seat_count=self.seat_count,
            )
            raise SeatLimitReached(self.seat_count, self.sequence)
        self._store.increment(key)
        self.current.marks[key] = 1
        self.logger.debug("papeleta_mark_added", sequence=self.sequence, key=str(key))
        return True

    def close(self) -> PapeletaRecord:
        """Cierra la papeleta abierta y abre la siguiente.

        La papeleta solo cuenta como completa si tiene exactamente
        ``seat_count`` marcas; una papeleta parcial se acepta igual.

        English:
            Commit the buffer, count it as complete only when full, and open
            the next papeleta with ``sequence + 1``.
        """
        self._require_open("close")
        papeleta = self.current
        complete = papeleta.total_marks == self.seat_count
        if complete:
            self.completed_count += 1
        record = self._finish(papeleta, PapeletaStatus.CLOSED, complete=complete)
        self.logger.info(
            "papeleta_closed",
            sequence=record.sequence,
            marks=record.total_marks,
            complete=complete,
            completed_count=self.completed_count,
        )
        return record

    def annul(self, reason: Optional[str] = None) -> PapeletaRecord:
        """Anula la papeleta abierta revirtiendo sus marcas del almacén.

        English:
            Void the open papeleta: every mark is reverted from the store and
            the next papeleta is opened.
        """
        self._require_open("annul")
        papeleta = self.current
        for key in list(papeleta.marks):
            self._store.decrement(key)
        record = self._finish(
            papeleta,
            PapeletaStatus.ANULADA,
            complete=False,
            annul_reason=reason or DEFAULT_ANNUL_REASON,
        )
        self.logger.info(
            "papeleta_annulled",
            sequence=record.sequence,
            marks_discarded=record.total_marks,
            reason=record.annul_reason,
        )
        return record

    def restore(self, sequence: int, marks: Iterable[VoteKey], completed_count: int) -> None:
        """Restaura una papeleta en curso tras recargar la página.

        Las marcas ya están reflejadas en el almacén, por lo que no se vuelven
        a contar.

        English:
            Restore an in-flight papeleta after a reload; marks are already in
            the store and are not counted again.
        """
        if sequence < 1 or completed_count < 0:
            raise ValueError("Invalid restored papeleta state")
        restored: Dict[VoteKey, int] = {}
        for key in marks:
            self._vote_key(key.party_id, key.slot)
            restored[key] = 1
        if len(restored) > self.seat_count:
            raise SeatLimitReached(self.seat_count, sequence)
        self.current = Papeleta(sequence=sequence, marks=restored)
        self.completed_count = completed_count
        self.logger.info(
            "papeleta_restored",
            sequence=sequence,
            marks=len(restored),
            completed_count=completed_count,
        )

    # ------------------------------------------------------------------
    # Internos / Internals
    # ------------------------------------------------------------------
    def _require_open(self, operation: str) -> None:
        if self.current.status is not PapeletaStatus.OPEN:
            self.logger.error(
                "papeleta_invalid_state",
                operation=operation,
                sequence=self.sequence,
                status=self.current.status.value,
            )
            raise InvalidBallotState(
                f"Cannot {operation} papeleta {self.sequence} in status {self.current.status.value}",
                status=self.current.status,
                sequence=self.sequence,
            )

    def _vote_key(self, party_id: str, slot: int) -> VoteKey:
        slot_range = self._layout.get(party_id)
        if slot_range is None:
            raise InvalidVoteTarget(f"Unknown party {party_id!r}")
        if slot not in slot_range:
            raise InvalidVoteTarget(
                f"Slot {slot} is outside {party_id} range {slot_range.start}-{slot_range.end}"
            )
        return VoteKey(party_id, slot)

    def _finish(
        self,
        papeleta: Papeleta,
        status: PapeletaStatus,
        *,
        complete: bool,
        annul_reason: Optional[str] = None,
    ) -> PapeletaRecord:
        papeleta.status = status
        record = PapeletaRecord(
            sequence=papeleta.sequence,
            status=status,
            marks=MappingProxyType({str(key): count for key, count in sorted(papeleta.marks.items())}),
            total_marks=papeleta.total_marks,
            complete=complete,
            created_at=papeleta.created_at,
            closed_at=_utc_now(),
            annul_reason=annul_reason,
        )
        self.history.append(record)
        self.current = Papeleta(sequence=papeleta.sequence + 1)
        return record
