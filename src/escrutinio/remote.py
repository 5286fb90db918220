"""Interfaces con colaboradores externos y cliente HTTP de la API de escrutinio.

English:
    External collaborator interfaces and the HTTP client for the tally API.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence
from urllib.parse import quote

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from escrutinio.core.models import (
    BLANK_KEY,
    NULL_KEY,
    Checkpoint,
    FinalTally,
    SessionStatusInfo,
    VoteDelta,
    VoteKey,
)
from escrutinio.schemas import CheckpointPayload, VoteSyncPayload, parse_status

logger = logging.getLogger(__name__)


class RemoteTallyStore(Protocol):
    """Almacén remoto de conteos por escrutinio.

    English: Remote tally store keyed by session id.
    """

    async def load_counts(self, session_id: str) -> Dict[VoteKey, int]: ...

    async def apply_delta(self, session_id: str, delta: VoteDelta) -> None: ...


class CheckpointTransport(Protocol):
    async def submit_checkpoint(self, session_id: str, checkpoint: Checkpoint) -> Any: ...


class SessionStatusSource(Protocol):
    async def get_status(self, session_id: str) -> SessionStatusInfo: ...


class TallySubmitter(Protocol):
    async def submit_final_tally(self, tally: FinalTally) -> Any: ...


class EvidenceRegistry(Protocol):
    async def attach_evidence(self, session_id: str, url: str, sha256: Optional[str]) -> Any: ...


class RemoteRequestError(Exception):
    """Respuesta reintentable (429/5xx) de la API.

    English: Retryable (429/5xx) API response.
    """


_RETRYABLE = (httpx.TransportError, RemoteRequestError)


def counts_from_votes_response(rows: Sequence[Mapping[str, Any]]) -> Dict[VoteKey, int]:
    """Convierte la lista de votos del servidor en un mapa de contadores.

    Solo se consideran candidatos legislativos; los partidos especiales
    ``BLANK``/``NULL`` se asignan a sus llaves fijas.

    English:
        Turn the server vote rows into a counter map (legislative only).
    """
    counts: Dict[VoteKey, int] = {}
    for row in rows:
        candidate = row.get("candidate") or {}
        if candidate.get("electionLevel") not in (None, "LEGISLATIVE"):
            continue
        party = candidate.get("party")
        if not party:
            continue
        count = int(row.get("count") or 0)
        if party == BLANK_KEY.party_id:
            counts[BLANK_KEY] = count
        elif party == NULL_KEY.party_id:
            counts[NULL_KEY] = count
        else:
            counts[VoteKey(str(party), int(candidate.get("number") or 0))] = count
    return counts


class HttpTallyApi:
    """Cliente HTTP de la API de escrutinio (rutas ``/api/escrutinio/{id}``).

    Implementa el almacén remoto, el transporte de checkpoints, la consulta de
    estado y el envío del conteo final. Los errores de transporte y las
    respuestas 429/5xx se reintentan con backoff exponencial.

    English:
        HTTP client for the tally API implementing every remote collaborator.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout_seconds: float = 15.0,
        max_attempts: int = 3,
        default_parties: Sequence[str] = (),
        device_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"User-Agent": "EscrutinioCore/0.3.0"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )
        self._max_attempts = max_attempts
        self._default_parties = tuple(default_parties)
        self._device_id = device_id

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpTallyApi":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(_RETRYABLE),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            reraise=True,
        ):
            with attempt:
                response = await self._client.request(method, path, **kwargs)
                if response.status_code == 429 or response.status_code >= 500:
                    logger.warning(
                        "tally_api_retryable_status method=%s path=%s status=%s",
                        method,
                        path,
                        response.status_code,
                    )
                    raise RemoteRequestError(f"Retryable status {response.status_code} for {path}")
                response.raise_for_status()
                body = response.json() if response.content else {}
                if isinstance(body, dict) and body.get("success") is False:
                    raise httpx.HTTPStatusError(
                        str(body.get("error") or "request rejected"),
                        request=response.request,
                        response=response,
                    )
                return body
        raise AssertionError("unreachable")  # pragma: no cover

    @staticmethod
    def _session_path(session_id: str, suffix: str) -> str:
        return f"/api/escrutinio/{quote(session_id, safe='')}/{suffix}"

    async def load_counts(self, session_id: str) -> Dict[VoteKey, int]:
        body = await self._request("GET", self._session_path(session_id, "votes"))
        return counts_from_votes_response(body.get("data") or [])

    async def apply_delta(self, session_id: str, delta: VoteDelta) -> None:
        payload = VoteSyncPayload.model_validate(
            {
                "escrutinioId": session_id,
                "votes": [delta.to_wire()],
                "deviceId": self._device_id,
            }
        )
        await self._request(
            "POST",
            self._session_path(session_id, "legislative-votes"),
            json=payload.model_dump(by_alias=True, mode="json", exclude_none=True),
        )

    async def submit_checkpoint(self, session_id: str, checkpoint: Checkpoint) -> Dict[str, Any]:
        payload = CheckpointPayload.model_validate(
            {
                "action": checkpoint.action,
                "votesSnapshot": dict(checkpoint.votes_snapshot),
                "timestamp": checkpoint.timestamp,
                "hash": checkpoint.hash,
                "previousHash": checkpoint.previous_hash,
                "actingUser": checkpoint.acting_user,
                "deviceId": checkpoint.device_id,
                "gps": checkpoint.gps.to_dict() if checkpoint.gps else None,
            }
        )
        body = await self._request(
            "POST",
            self._session_path(session_id, "checkpoint"),
            json=payload.model_dump(by_alias=True, mode="json", exclude_none=True),
        )
        return body.get("data") or {}

    async def get_status(self, session_id: str) -> SessionStatusInfo:
        body = await self._request("GET", self._session_path(session_id, "status"))
        status = parse_status(body.get("data") or {})
        return SessionStatusInfo(
            status=status.status,
            seat_count=status.seat_count,
            party_ids=tuple(status.parties) or self._default_parties,
            mesa_number=status.mesa_number,
        )

    async def attach_evidence(self, session_id: str, url: str, sha256: Optional[str]) -> None:
        await self._request(
            "POST",
            self._session_path(session_id, "evidence"),
            json={"publicUrl": url, "hash": sha256},
        )

    async def submit_final_tally(self, tally: FinalTally) -> Dict[str, Any]:
        return await self._request(
            "POST",
            self._session_path(tally.session_id, "complete"),
            json={"originalData": tally.to_dict()},
        )
