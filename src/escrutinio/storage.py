# Storage Module
# AUTO-DOC-INDEX
#
# ES: Índice rápido
#   1) Propósito del módulo
#   2) Componentes principales
#   3) Puntos de extensión
#
# EN: Quick index
#   1) Module purpose
#   2) Main components
#   3) Extension points
#
# Secciones / Sections:
#   - Escritura atómica / Atomic writes
#   - Bitácora de checkpoints / Checkpoint journal

"""Escritura atómica y bitácora de checkpoints en disco.

Atomic writes and the on-disk checkpoint journal.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List

from escrutinio.core.models import Checkpoint

logger = logging.getLogger(__name__)


def write_atomic(path: Path, content: bytes) -> None:
    """Escritura atómica usando archivo temporal.

    English: Atomic write using a temporary file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(delete=False, dir=str(path.parent)) as tmp_file:
        tmp_file.write(content)
        temp_name = tmp_file.name
    shutil.move(temp_name, path)


def journal_filename(session_id: str) -> str:
    """Nombre de archivo de la bitácora: prefijo SHA-256 del id.

    Journal file name keyed by a SHA-256 prefix of the session id, so two
    distinct ids never share a file.
    """
    if not session_id:
        raise ValueError("session_id is required")
    digest = hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:16]
    return f"{digest}.json"


def load_journal_entries(path: Path) -> List[Dict[str, Any]]:
    """Lee una bitácora de checkpoints como lista de diccionarios.

    Read a checkpoint journal as a list of dicts.
    """
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        logger.error("checkpoint_journal_corrupt path=%s error=%s", path, exc)
        raise
    if not isinstance(data, list):
        logger.error("checkpoint_journal_invalid_shape path=%s", path)
        raise ValueError(f"Checkpoint journal {path} is not a list")
    return data


class CheckpointJournal:
    """Bitácora append-only de checkpoints de un escrutinio.

    Cada escritura reescribe el archivo completo de forma atómica; las
    entradas existentes nunca se modifican.

    Append-only checkpoint journal for one session.
    """

    def __init__(self, base_path: Path, session_id: str) -> None:
        self.session_id = session_id
        self.path = Path(base_path) / "checkpoints" / journal_filename(session_id)

    def load(self) -> List[Checkpoint]:
        return [Checkpoint.from_dict(entry) for entry in load_journal_entries(self.path)]

    def append(self, checkpoint: Checkpoint) -> None:
        entries = load_journal_entries(self.path)
        if checkpoint.index != len(entries):
            logger.error(
                "checkpoint_journal_out_of_sequence path=%s index=%s expected=%s",
                self.path,
                checkpoint.index,
                len(entries),
            )
            raise ValueError(
                f"Checkpoint index {checkpoint.index} does not follow journal length {len(entries)}"
            )
        entries.append(checkpoint.to_dict())
        write_atomic(
            self.path,
            json.dumps(entries, ensure_ascii=False, indent=2).encode("utf-8"),
        )
        logger.info(
            "checkpoint_journal_appended path=%s index=%s hash=%s",
            self.path,
            checkpoint.index,
            checkpoint.hash,
        )
