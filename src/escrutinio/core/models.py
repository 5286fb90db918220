"""
======================== ÍNDICE / INDEX ========================
1. Descripción general / Overview
2. Componentes principales / Main components
3. Notas de mantenimiento / Maintenance notes

======================== ESPAÑOL ========================
Archivo: `src/escrutinio/core/models.py`.
Tipos de valor inmutables compartidos por el núcleo de escrutinio.

Componentes detectados:
  - VoteKey
  - SlotRange
  - GpsFix
  - Checkpoint
  - FinalTally
  - PapeletaStatus / SessionStatus / CheckpointAction

======================== ENGLISH ========================
File: `src/escrutinio/core/models.py`.
Immutable value types shared by the tally core.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

BLANK_PARTY = "BLANK"
NULL_PARTY = "NULL"
SPECIAL_SLOT = 0


class PapeletaStatus(str, Enum):
    """Estados de una papeleta.

    English: Papeleta lifecycle states.
    """

    OPEN = "OPEN"
    CLOSED = "CLOSED"
    ANULADA = "ANULADA"


class SessionStatus(str, Enum):
    """Estados del escrutinio.

    English: Tally session states.
    """

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    CLOSED = "CLOSED"
    COMPLETED = "COMPLETED"


class CheckpointAction(str, Enum):
    """Acciones auditables de congelamiento.

    English: Auditable freeze actions.
    """

    FREEZE = "FREEZE"
    UNFREEZE = "UNFREEZE"


@dataclass(frozen=True, order=True)
class VoteKey:
    """Objetivo de un voto: partido y casilla.

    Attributes:
        party_id (str): Identificador del partido (p. ej. ``"PDC"``).
        slot (int): Número de casilla dentro del rango del partido.

    English:
        Vote target: party and slot. Distinct pairs are independent counters.
    """

    party_id: str
    slot: int

    def __str__(self) -> str:
        return f"{self.party_id}_{self.slot}"

    @classmethod
    def parse(cls, raw: str) -> "VoteKey":
        """Reconstruye una llave desde ``"<partido>_<casilla>"``.

        English: Rebuild a key from ``"<party>_<slot>"``.
        """
        party_id, sep, slot = str(raw).rpartition("_")
        if not sep or not party_id:
            raise ValueError(f"Invalid vote key: {raw!r}")
        return cls(party_id=party_id, slot=int(slot))

    @property
    def is_special(self) -> bool:
        return self.party_id in {BLANK_PARTY, NULL_PARTY}


BLANK_KEY = VoteKey(BLANK_PARTY, SPECIAL_SLOT)
NULL_KEY = VoteKey(NULL_PARTY, SPECIAL_SLOT)


@dataclass(frozen=True)
class VoteDelta:
    """Mutación local pendiente de propagar al almacén remoto.

    English:
        Local mutation queued for remote propagation. ``client_batch_id``
        makes remote application idempotent.
    """

    key: VoteKey
    delta: int
    timestamp_ms: int
    client_batch_id: str

    def to_wire(self) -> Dict[str, Any]:
        return {
            "partyId": self.key.party_id,
            "casillaNumber": self.key.slot,
            "delta": self.delta,
            "timestamp": self.timestamp_ms,
            "clientBatchId": self.client_batch_id,
        }


@dataclass(frozen=True)
class SlotRange:
    """Rango contiguo de casillas de un partido.

    English: Contiguous slot range owned by one party.
    """

    start: int
    end: int
    slots: Tuple[int, ...]

    def __contains__(self, slot: object) -> bool:
        return isinstance(slot, int) and self.start <= slot <= self.end

    def __len__(self) -> int:
        return len(self.slots)

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end, "slots": list(self.slots)}


@dataclass(frozen=True)
class GpsFix:
    """Coordenadas del dispositivo al momento de una acción.

    English: Device coordinates at the moment of an action.
    """

    latitude: float
    longitude: float
    accuracy: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
        }


def freeze_counts(counts: Mapping[Any, int]) -> Mapping[str, int]:
    """Copia un mapa de conteos como vista inmutable con llaves de texto.

    English: Copy a counter map into a read-only view keyed by strings.
    """
    normalized = {str(key): int(value) for key, value in counts.items()}
    return MappingProxyType(dict(sorted(normalized.items())))


@dataclass(frozen=True)
class Checkpoint:
    """Registro de auditoría inmutable de un FREEZE/UNFREEZE.

    Attributes:
        checkpoint_id (str): Identificador único.
        index (int): Posición en la bitácora (0 = primero).
        session_id (str): Escrutinio al que pertenece.
        action (CheckpointAction): FREEZE o UNFREEZE.
        votes_snapshot (Mapping[str, int]): Conteos completos al instante de la acción.
        timestamp (str): Momento UTC en ISO-8601.
        acting_user (str): Usuario que ejecutó la acción.
        gps (Optional[GpsFix]): Ubicación, si se obtuvo.
        device_id (Optional[str]): Dispositivo reportado por el cliente.
        previous_hash (Optional[str]): Hash del checkpoint anterior.
        hash (str): Hash encadenado de este checkpoint.

    English:
        Immutable audit record for a FREEZE/UNFREEZE action. The snapshot is a
        read-only mapping, so later actions cannot alter it.
    """

    checkpoint_id: str
    index: int
    session_id: str
    action: CheckpointAction
    votes_snapshot: Mapping[str, int]
    timestamp: str
    acting_user: str
    gps: Optional[GpsFix] = None
    device_id: Optional[str] = None
    previous_hash: Optional[str] = None
    hash: str = ""

    def content(self) -> Dict[str, Any]:
        """Contenido que cubre el hash (todo salvo el propio hash).

        English: Hashed content (everything except the hash itself).
        """
        return {
            "checkpoint_id": self.checkpoint_id,
            "index": self.index,
            "session_id": self.session_id,
            "action": self.action.value,
            "votes_snapshot": dict(self.votes_snapshot),
            "timestamp": self.timestamp,
            "acting_user": self.acting_user,
            "gps": self.gps.to_dict() if self.gps else None,
            "device_id": self.device_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        payload = self.content()
        payload["previous_hash"] = self.previous_hash
        payload["hash"] = self.hash
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Checkpoint":
        gps = data.get("gps")
        return cls(
            checkpoint_id=str(data["checkpoint_id"]),
            index=int(data["index"]),
            session_id=str(data["session_id"]),
            action=CheckpointAction(data["action"]),
            votes_snapshot=freeze_counts(data.get("votes_snapshot") or {}),
            timestamp=str(data["timestamp"]),
            acting_user=str(data["acting_user"]),
            gps=GpsFix(**gps) if gps else None,
            device_id=data.get("device_id"),
            previous_hash=data.get("previous_hash"),
            hash=str(data.get("hash", "")),
        )


@dataclass(frozen=True)
class SessionStatusInfo:
    """Respuesta de la consulta de estado del escrutinio.

    English: Session status query result, consumed once at session start.
    """

    status: SessionStatus
    seat_count: int
    party_ids: Tuple[str, ...] = ()
    mesa_number: Optional[str] = None

    @property
    def party_count(self) -> int:
        return len(self.party_ids)


@dataclass(frozen=True)
class FinalTally:
    """Conteo final inmutable de la JRV entregado al colaborador de envío.

    English: Immutable final station tally handed to the submission collaborator.
    """

    session_id: str
    counts: Mapping[str, int]
    party_totals: Mapping[str, int]
    blank_count: int
    null_count: int
    completed_papeletas: int
    closed_papeletas: int
    annulled_papeletas: int
    finalized_by: str
    finalized_at: str
    evidence_url: Optional[str] = None
    evidence_hash: Optional[str] = None
    last_checkpoint_hash: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "counts": dict(self.counts),
            "party_totals": dict(self.party_totals),
            "blank_count": self.blank_count,
            "null_count": self.null_count,
            "completed_papeletas": self.completed_papeletas,
            "closed_papeletas": self.closed_papeletas,
            "annulled_papeletas": self.annulled_papeletas,
            "finalized_by": self.finalized_by,
            "finalized_at": self.finalized_at,
            "evidence_url": self.evidence_url,
            "evidence_hash": self.evidence_hash,
            "last_checkpoint_hash": self.last_checkpoint_hash,
            "metadata": dict(self.metadata),
        }
