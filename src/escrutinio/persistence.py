"""Persistencia local del trabajo en curso entre recargas.

English:
    Local save/restore of in-flight work across reloads.

Cada registro está versionado y lleva un checksum SHA-256 del JSON canónico
sin la llave ``checksum``. Un registro ilegible, de versión desconocida o con
checksum inválido se registra en el log y se trata como ausente.

Versiones:
  1  registro plano del navegador (papeleta en curso)
  2  papeleta en curso con checksum
  3  agrega contadores locales y deltas sin confirmar
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog

from escrutinio.core.models import VoteDelta, VoteKey
from escrutinio.errors import PersistenceError
from escrutinio.storage import write_atomic

SCHEMA_VERSION = 3


def _delta_to_dict(session_id: str, delta: VoteDelta) -> Dict[str, Any]:
    return {
        "session_id": session_id,
        "party_id": delta.key.party_id,
        "slot": delta.key.slot,
        "delta": delta.delta,
        "timestamp_ms": delta.timestamp_ms,
        "client_batch_id": delta.client_batch_id,
    }


def _delta_from_dict(item: Mapping[str, Any]) -> Tuple[str, VoteDelta]:
    session_id = str(item["session_id"])
    client_batch_id = str(item["client_batch_id"])
    if not session_id or not client_batch_id:
        raise ValueError("pending delta needs session_id and client_batch_id")
    delta = VoteDelta(
        key=VoteKey(str(item["party_id"]), int(item["slot"])),
        delta=int(item["delta"]),
        timestamp_ms=int(item["timestamp_ms"]),
        client_batch_id=client_batch_id,
    )
    return session_id, delta


@dataclass(frozen=True)
class PersistedState:
    """Estado mínimo para reanudar el escrutinio tras una recarga.

    Además de la papeleta en curso guarda los contadores locales y la cola
    de deltas sin confirmar, para que una marca no sincronizada sobreviva a
    la recarga.

    English:
        Minimal state needed to resume: the in-flight papeleta, local
        counters and the unconfirmed delta queue.
    """

    current_papeleta: int = 1
    expanded_party: Optional[str] = None
    buffer_marks: Tuple[VoteKey, ...] = ()
    completed_count: int = 0
    counts: Tuple[Tuple[VoteKey, int], ...] = ()
    pending_deltas: Tuple[Tuple[str, VoteDelta], ...] = ()

    def counts_map(self) -> Dict[VoteKey, int]:
        return dict(self.counts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_papeleta": self.current_papeleta,
            "expanded_party": self.expanded_party,
            "buffer_marks": [
                {"party_id": key.party_id, "slot": key.slot} for key in self.buffer_marks
            ],
            "completed_count": self.completed_count,
            "counts": {str(key): value for key, value in self.counts},
            "pending_deltas": [_delta_to_dict(session_id, delta) for session_id, delta in self.pending_deltas],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PersistedState":
        marks = tuple(
            VoteKey(str(item["party_id"]), int(item["slot"])) for item in data.get("buffer_marks") or []
        )
        current = int(data.get("current_papeleta", 1))
        completed = int(data.get("completed_count", 0))
        if current < 1 or completed < 0:
            raise ValueError("current_papeleta must be >= 1 and completed_count >= 0")
        counts = []
        for raw_key, raw_value in (data.get("counts") or {}).items():
            value = int(raw_value)
            if value < 0:
                raise ValueError(f"Negative count for {raw_key!r}")
            if value:
                counts.append((VoteKey.parse(raw_key), value))
        pending = tuple(_delta_from_dict(item) for item in data.get("pending_deltas") or [])
        return cls(
            current_papeleta=current,
            expanded_party=data.get("expanded_party"),
            buffer_marks=marks,
            completed_count=completed,
            counts=tuple(sorted(counts, key=lambda item: str(item[0]))),
            pending_deltas=pending,
        )


def _checksum_payload(payload: Mapping[str, Any]) -> str:
    payload_bytes = json.dumps(
        payload,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")
    return hashlib.sha256(payload_bytes).hexdigest()


def _migrate_v1(data: Mapping[str, Any], session_id: str) -> Dict[str, Any]:
    """Convierte el registro plano del navegador (v1) a la forma actual.

    English: Upgrade the flat browser record (v1) to the current shape.
    """
    marks = []
    for item in data.get("votesBuffer") or []:
        if isinstance(item, str):
            key = VoteKey.parse(item)
        else:
            key = VoteKey(str(item["partyId"]), int(item["casillaNumber"]))
        marks.append({"party_id": key.party_id, "slot": key.slot})
    return {
        "schema_version": SCHEMA_VERSION,
        "session_id": data.get("escrutinioId") or session_id,
        "saved_at": data.get("savedAt"),
        "state": {
            "current_papeleta": data.get("currentPapeleta", 1),
            "expanded_party": data.get("expandedParty"),
            "buffer_marks": marks,
            "completed_count": data.get("completedPapeletas", 0),
            "counts": {},
            "pending_deltas": [],
        },
    }


def _migrate_v2(data: Mapping[str, Any]) -> Dict[str, Any]:
    """v2 -> v3: sin contadores ni cola guardados. / No saved counters or queue."""
    migrated = {key: value for key, value in data.items() if key != "checksum"}
    state = dict(migrated.get("state") or {})
    state.setdefault("counts", {})
    state.setdefault("pending_deltas", [])
    migrated["state"] = state
    migrated["schema_version"] = SCHEMA_VERSION
    return migrated


class LocalStateStore:
    """Guarda el estado en curso bajo ``<base>/state/<sha256(id)[:16]>.json``.

    Solo se conserva un escrutinio por dispositivo: guardar uno elimina los
    registros de cualquier otro.

    English:
        Session-keyed local store. Saving one session removes the records of
        every other session.
    """

    def __init__(self, base_path: Path, *, logger: Optional[Any] = None) -> None:
        self.directory = Path(base_path) / "state"
        self.logger = logger or structlog.get_logger(__name__)

    def path_for(self, session_id: str) -> Path:
        digest = hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:16]
        return self.directory / f"{digest}.json"

    def save(self, session_id: str, state: PersistedState) -> Path:
        if not session_id:
            raise ValueError("session_id is required")
        record: Dict[str, Any] = {
            "schema_version": SCHEMA_VERSION,
            "session_id": session_id,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "state": state.to_dict(),
        }
        record["checksum"] = _checksum_payload(record)
        path = self.path_for(session_id)
        write_atomic(path, json.dumps(record, ensure_ascii=False, indent=2).encode("utf-8"))
        self._remove_others(path)
        self.logger.debug(
            "local_state_saved",
            session_id=session_id,
            papeleta=state.current_papeleta,
            marks=len(state.buffer_marks),
            pending=len(state.pending_deltas),
        )
        return path

    def restore(self, session_id: str) -> Optional[PersistedState]:
        """Recupera el estado de ``session_id`` o ``None`` si no hay uno válido.

        English: Restore the state for ``session_id``; invalid records are absent.
        """
        try:
            record = self.load_record(session_id)
        except PersistenceError as exc:
            self.logger.warning("local_state_discarded", session_id=session_id, error=str(exc))
            return None
        if record is None:
            return None
        try:
            state = PersistedState.from_dict(record["state"])
        except (KeyError, TypeError, ValueError) as exc:
            self.logger.warning("local_state_discarded", session_id=session_id, error=str(exc))
            return None
        self.logger.info(
            "local_state_restored",
            session_id=session_id,
            papeleta=state.current_papeleta,
            marks=len(state.buffer_marks),
            pending=len(state.pending_deltas),
            completed_count=state.completed_count,
        )
        return state

    def load_record(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Lee y valida el registro crudo (migrando v1 y v2 si hace falta).

        Raises:
            PersistenceError: JSON inválido, versión desconocida, checksum
                incorrecto o registro de otro escrutinio.
        """
        path = self.path_for(session_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Local state {path} is unreadable: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"Local state {path} must be a JSON object")

        version = data.get("schema_version", 1)
        if version == 1:
            self.logger.info("local_state_migrated", session_id=session_id, from_version=1)
            return _migrate_v1(data, session_id)
        if version not in (2, SCHEMA_VERSION):
            raise PersistenceError(f"Unknown local state schema_version {version!r}")

        checksum = data.get("checksum")
        payload = {key: value for key, value in data.items() if key != "checksum"}
        if not checksum or _checksum_payload(payload) != checksum:
            raise PersistenceError("Local state checksum mismatch")
        if data.get("session_id") != session_id:
            raise PersistenceError("Local state belongs to a different session")
        if version == 2:
            self.logger.info("local_state_migrated", session_id=session_id, from_version=2)
            return _migrate_v2(data)
        return data

    def clear(self, session_id: str) -> None:
        path = self.path_for(session_id)
        if path.exists():
            path.unlink()
            self.logger.info("local_state_cleared", session_id=session_id)

    def _remove_others(self, keep: Path) -> None:
        for candidate in self.directory.glob("*.json"):
            if candidate != keep:
                candidate.unlink()
                self.logger.info("local_state_stale_removed", path=str(candidate))
