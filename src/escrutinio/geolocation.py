"""Obtención de ubicación del dispositivo, acotada en tiempo y de mejor esfuerzo.

English:
    Bounded, best-effort device location acquisition.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

from escrutinio.core.models import GpsFix
from escrutinio.errors import GeolocationUnavailable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class GeolocationProvider(Protocol):
    """Fuente de coordenadas del dispositivo.

    English: Device coordinate source.
    """

    async def current_position(self, *, high_accuracy: bool) -> GpsFix: ...


class ReportedLocationProvider:
    """Devuelve la última ubicación reportada por el cliente.

    El navegador o la app móvil reporta sus coordenadas; este proveedor las
    entrega al recorder. Sin reporte previo falla con
    ``GeolocationUnavailable``.

    English:
        Serves the last coordinates reported by the client device.
    """

    def __init__(self, fix: Optional[GpsFix] = None) -> None:
        self._fix = fix

    def report(self, latitude: float, longitude: float, accuracy: Optional[float] = None) -> GpsFix:
        self._fix = GpsFix(latitude=latitude, longitude=longitude, accuracy=accuracy)
        return self._fix

    def clear(self) -> None:
        self._fix = None

    async def current_position(self, *, high_accuracy: bool) -> GpsFix:
        if self._fix is None:
            raise GeolocationUnavailable("No location has been reported by the device")
        return self._fix


class CallbackLocationProvider:
    """Adapta una corrutina ``(high_accuracy) -> GpsFix`` al protocolo.

    English: Adapts a ``(high_accuracy) -> GpsFix`` coroutine to the protocol.
    """

    def __init__(self, callback: Callable[[bool], Awaitable[GpsFix]]) -> None:
        self._callback = callback

    async def current_position(self, *, high_accuracy: bool) -> GpsFix:
        return await self._callback(high_accuracy)


async def acquire_fix(
    provider: Optional[GeolocationProvider],
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    high_accuracy: bool = True,
) -> Optional[GpsFix]:
    """Intenta obtener la ubicación sin superar ``timeout_seconds``.

    Un timeout, un ``GeolocationUnavailable`` o cualquier otro error del
    proveedor (permiso denegado, sensor caído) devuelven ``None``; la
    ubicación nunca es precondición para registrar un checkpoint.

    English:
        Try to get the location within ``timeout_seconds``; failures yield
        ``None`` so the caller proceeds without coordinates.
    """
    if provider is None:
        logger.info("geolocation_provider_missing")
        return None
    try:
        return await asyncio.wait_for(
            provider.current_position(high_accuracy=high_accuracy),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning("geolocation_timeout timeout_seconds=%s", timeout_seconds)
    except GeolocationUnavailable as exc:
        logger.warning("geolocation_unavailable error=%s", exc)
    except Exception as exc:  # noqa: BLE001
        logger.warning("geolocation_failed error_type=%s error=%s", type(exc).__name__, exc)
    return None
