"""Evidencia fotográfica del acta: interfaz y almacenamiento S3.

English:
    Acta photo evidence: collaborator interface and S3-compatible storage.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from typing import Any, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, EndpointConnectionError

from escrutinio.errors import EvidenceUploadFailure

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


class EvidenceStore(Protocol):
    """Colaborador que guarda un blob y devuelve una referencia durable.

    English: Stores an opaque blob and returns a durable reference URL.
    """

    async def upload(self, session_id: str, blob: bytes, content_type: str) -> str: ...


def evidence_sha256(blob: bytes) -> str:
    return hashlib.sha256(blob).hexdigest()


class S3EvidenceStore:
    """Guarda fotos de actas en un bucket S3 compatible.

    Las llaves siguen ``<prefix>/<session_id>/<sha256>.<ext>``; el mismo blob
    siempre produce la misma llave, por lo que reintentar es idempotente.

    English:
        Stores acta photos in an S3-compatible bucket under a content-addressed key.
    """

    def __init__(
        self,
        bucket_name: str,
        *,
        prefix: str = "escrutinio/evidence",
        endpoint_url: Optional[str] = None,
        region_name: Optional[str] = None,
        timeout_seconds: float = 15.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        public_base_url: Optional[str] = None,
        s3_client: Optional[Any] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not bucket_name:
            raise ValueError("bucket_name is required")
        self.bucket_name = bucket_name
        self.prefix = prefix.strip("/")
        self._endpoint_url = endpoint_url
        self._region_name = region_name
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.logger = logger or logging.getLogger(__name__)
        self._s3_client = s3_client or self._build_s3_client()

    def object_key(self, session_id: str, blob: bytes, content_type: str) -> str:
        extension = _EXTENSIONS.get(content_type.lower(), "jpg")
        return f"{self.prefix}/{session_id}/{evidence_sha256(blob)}.{extension}"

    def object_url(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        return f"s3://{self.bucket_name}/{key}"

    async def upload(self, session_id: str, blob: bytes, content_type: str) -> str:
        """Sube el blob con reintentos y devuelve su URL.

        Raises:
            EvidenceUploadFailure: blob vacío o fallo tras agotar reintentos.
        """
        if not blob:
            raise EvidenceUploadFailure("Evidence blob is empty")
        key = self.object_key(session_id, blob, content_type)
        for attempt in range(1, self._max_attempts + 1):
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(self._put_object, key, blob, content_type),
                    timeout=self._timeout_seconds,
                )
                break
            except (ClientError, EndpointConnectionError, asyncio.TimeoutError) as exc:
                self.logger.warning(
                    "evidence_upload_retry",
                    extra={"evidence_key": key, "attempt": attempt, "error": str(exc)},
                )
                if attempt == self._max_attempts:
                    self.logger.error(
                        "evidence_upload_failed",
                        extra={"evidence_key": key, "error": str(exc)},
                    )
                    raise EvidenceUploadFailure(f"Upload of {key} failed: {exc}") from exc
                await asyncio.sleep(self._backoff_seconds * 2 ** (attempt - 1))
        url = self.object_url(key)
        self.logger.info("evidence_uploaded", extra={"evidence_key": key, "size": len(blob)})
        return url

    def _put_object(self, key: str, data: bytes, content_type: str) -> None:
        self._s3_client.put_object(
            Bucket=self.bucket_name,
            Key=key,
            Body=data,
            ContentType=content_type,
        )

    def _build_s3_client(self) -> Any:
        endpoint = self._endpoint_url or os.environ.get("S3_ENDPOINT_URL")
        region = self._region_name or os.environ.get("AWS_REGION")
        config = Config(connect_timeout=self._timeout_seconds, read_timeout=self._timeout_seconds)
        return boto3.client(
            "s3",
            endpoint_url=endpoint,
            region_name=region,
            config=config,
        )
