# Hashchain Module
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

"""Funciones para encadenar hashes de checkpoints.

English:
    Helpers to chain checkpoint hashes together and verify the chain.
"""

from __future__ import annotations

import hashlib
import json
import logging
import string
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

_DOMAIN_TAG = b"escrutinio-checkpoint-v1"


def canonical_json(payload: Mapping[str, Any]) -> str:
    """Serializa un payload de forma determinista.

    English: Deterministic serialization (sorted keys, compact separators).
    """
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def _is_valid_hex_hash(value: str) -> bool:
    if len(value) != 64:
        return False
    hex_chars = set(string.hexdigits.lower())
    return all(char in hex_chars for char in value)


def _build_hash_payload(canonical: str, previous_hash: Optional[str]) -> bytes:
    previous_hash_bytes = b""
    if previous_hash:
        normalized = previous_hash.strip().lower()
        previous_hash_bytes = normalized.encode("utf-8")
        if not _is_valid_hex_hash(normalized):
            logger.warning("hashchain_previous_hash_invalid value=%s", normalized)

    canonical_bytes = canonical.encode("utf-8")
    parts = [
        _DOMAIN_TAG,
        b"prev",
        str(len(previous_hash_bytes)).encode("utf-8"),
        previous_hash_bytes,
        b"payload",
        str(len(canonical_bytes)).encode("utf-8"),
        canonical_bytes,
    ]
    return b"|".join(parts)


def compute_hash(canonical: str, previous_hash: Optional[str] = None) -> str:
    """Calcula el hash SHA-256 de un contenido canónico encadenado.

    Args:
        canonical (str): Contenido en JSON canónico.
        previous_hash (Optional[str]): Hash anterior en la cadena.

    Returns:
        str: Hash SHA-256 en hexadecimal.

    English:
        Computes the SHA-256 hash of canonical content, length-prefixed and
        chained to the previous hash when one is given.
    """
    hasher = hashlib.sha256()
    hasher.update(_build_hash_payload(canonical, previous_hash))
    return hasher.hexdigest()


@dataclass(frozen=True)
class ChainVerificationResult:
    """Resultado de verificar una bitácora de checkpoints.

    English: Result of verifying a checkpoint log.
    """

    valid: bool
    total_links: int
    verified_links: int
    broken_at: Optional[int] = None
    errors: List[str] = field(default_factory=list)
    last_hash: Optional[str] = None


def verify_checkpoint_log(entries: Iterable[Mapping[str, Any]]) -> ChainVerificationResult:
    """Recorre la bitácora y confirma que cada hash encadena con el anterior.

    Cada entrada es el ``to_dict()`` de un checkpoint. Para el eslabón *n*
    se exige ``previous_hash[n] == hash[n-1]`` y que ``hash[n]`` coincida con
    el recalculado sobre su contenido.

    English:
        Walks the log and reports the first broken link, if any.
    """
    items = list(entries)
    previous: Optional[str] = None
    verified = 0
    for position, entry in enumerate(items):
        content = {key: value for key, value in entry.items() if key not in {"hash", "previous_hash"}}
        stored_previous = entry.get("previous_hash")
        if stored_previous != previous:
            message = f"link {position}: previous_hash does not match preceding hash"
            return ChainVerificationResult(False, len(items), verified, position, [message], previous)
        expected = compute_hash(canonical_json(content), previous)
        if entry.get("hash") != expected:
            message = f"link {position}: hash mismatch"
            return ChainVerificationResult(False, len(items), verified, position, [message], previous)
        if entry.get("index", position) != position:
            message = f"link {position}: index out of sequence"
            return ChainVerificationResult(False, len(items), verified, position, [message], previous)
        previous = expected
        verified += 1
    return ChainVerificationResult(True, len(items), verified, None, [], previous)
