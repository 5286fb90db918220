"""Partición de diputados en rangos de casillas por partido.

English:
    Partition of deputy seats into per-party slot ranges.

El partido *i* (base 0) posee ``[i*S + 1, (i + 1)*S]`` donde S es la cantidad
de diputados del departamento.
"""

from __future__ import annotations

from typing import Dict, List, Sequence

from escrutinio.core.models import SlotRange
from escrutinio.errors import InvalidAllocationInput


def _require_positive_int(value: object, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidAllocationInput(f"{name} must be a positive integer, got {value!r}")
    return value


def allocate(seat_count: int, party_count: int) -> List[SlotRange]:
    """Calcula los rangos contiguos de casillas de cada partido.

    Args:
        seat_count: Diputados asignados al departamento (S > 0).
        party_count: Partidos en contienda (P > 0).

    Returns:
        Lista de P rangos, cada uno de ancho S, cubriendo ``[1, S*P]``.

    Raises:
        InvalidAllocationInput: si S o P no son enteros positivos.

    English:
        Pure and deterministic; callers may cache the result per station.
    """
    seats = _require_positive_int(seat_count, "seat_count")
    parties = _require_positive_int(party_count, "party_count")
    ranges = []
    for index in range(parties):
        start = index * seats + 1
        end = (index + 1) * seats
        ranges.append(SlotRange(start=start, end=end, slots=tuple(range(start, end + 1))))
    return ranges


def party_layout(seat_count: int, party_ids: Sequence[str]) -> Dict[str, SlotRange]:
    """Asocia cada partido, en orden de papeleta, con su rango.

    English: Map each party, in ballot order, to its slot range.
    """
    if len(set(party_ids)) != len(party_ids):
        raise InvalidAllocationInput(f"Duplicate party ids: {list(party_ids)}")
    ranges = allocate(seat_count, len(party_ids))
    return dict(zip(party_ids, ranges))
