# Schemas Module
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

"""Esquemas Pydantic para validar los payloads que cruzan la red.

Pydantic schemas to validate payloads crossing the network.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from escrutinio.core.models import CheckpointAction, SessionStatus

logger = logging.getLogger(__name__)


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class GpsSchema(_WireModel):
    """Coordenadas GPS opcionales.

    English: Optional GPS coordinates.
    """

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)


class VoteDeltaSchema(_WireModel):
    """Delta de voto legislativo (+1/-1) con id de lote del cliente.

    English: Legislative vote delta with the client batch id.
    """

    party_id: str = Field(alias="partyId", min_length=1)
    slot: int = Field(alias="casillaNumber", ge=0, le=1000)
    delta: int = Field(ge=-1000, le=1000)
    timestamp: int = Field(ge=0)
    client_batch_id: str = Field(alias="clientBatchId", min_length=1)

    @field_validator("delta")
    @classmethod
    def delta_not_zero(cls, value: int) -> int:
        """Un delta nulo no representa ninguna mutación.

        English: A zero delta represents no mutation.
        """
        if value == 0:
            raise ValueError("delta cannot be zero")
        return value


class VoteSyncPayload(_WireModel):
    """Lote de deltas enviado al almacén remoto.

    English: Batch of deltas sent to the remote tally store.
    """

    escrutinio_id: str = Field(alias="escrutinioId", min_length=1)
    votes: List[VoteDeltaSchema]
    gps: Optional[GpsSchema] = None
    device_id: Optional[str] = Field(default=None, alias="deviceId")


class CheckpointPayload(_WireModel):
    """Cuerpo de la petición de checkpoint.

    English: Checkpoint request body.
    """

    action: CheckpointAction
    votes_snapshot: Dict[str, int] = Field(alias="votesSnapshot")
    timestamp: str
    hash: str = Field(min_length=64, max_length=64)
    previous_hash: Optional[str] = Field(default=None, alias="previousHash")
    acting_user: str = Field(alias="actingUser", min_length=1)
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    gps: Optional[GpsSchema] = None

    @field_validator("votes_snapshot")
    @classmethod
    def counts_not_negative(cls, value: Dict[str, int]) -> Dict[str, int]:
        """Ningún contador puede ser negativo.

        English: No counter may be negative.
        """
        negative = sorted(key for key, count in value.items() if count < 0)
        if negative:
            raise ValueError(f"negative counts for {negative}")
        return value


class StatusResponse(_WireModel):
    """Estado del escrutinio y parámetros de asignación de casillas.

    English: Session status and slot-allocation parameters.
    """

    status: SessionStatus
    seat_count: int = Field(alias="diputados", gt=0)
    parties: List[str] = Field(default_factory=list)
    mesa_number: Optional[str] = Field(default=None, alias="mesaNumber")

    @field_validator("mesa_number", mode="before")
    @classmethod
    def mesa_as_text(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)


def parse_status(data: Dict[str, Any]) -> StatusResponse:
    """Valida la respuesta de estado, fallando con detalle.

    English: Validate the status response, failing with details.
    """
    try:
        return StatusResponse.model_validate(data)
    except ValidationError as exc:
        logger.error("status_response_invalid errors=%s", exc.errors())
        raise ValueError(f"Invalid status response: {exc}") from exc
