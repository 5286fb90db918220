"""Taxonomía de errores del núcleo de escrutinio.

English:
    Error taxonomy for the tally core.

Las violaciones de asignación y de guardas de estado son errores de
programación; límites, sincronización, geolocalización y evidencia son
eventos esperados con una ruta de recuperación definida.
"""

from __future__ import annotations

from typing import Any, Optional


class TallyError(Exception):
    """Error base del núcleo.

    English: Base error for the tally core.
    """


class InvalidAllocationInput(TallyError, ValueError):
    """Cantidad de diputados o partidos no positiva.

    English: Non-positive seat or party count.
    """


class InvalidBallotState(TallyError):
    """Operación sobre una papeleta que no está abierta.

    English: Operation attempted on a papeleta that is not OPEN.
    """

    def __init__(self, message: str, *, status: Any = None, sequence: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
        self.sequence = sequence


class SeatLimitReached(TallyError):
    """La papeleta ya tiene tantas marcas como diputados.

    English: The papeleta already carries as many marks as seats.
    """

    def __init__(self, seat_count: int, sequence: int) -> None:
        super().__init__(
            f"Papeleta {sequence} reached the limit of {seat_count} marks; close or void it."
        )
        self.seat_count = seat_count
        self.sequence = sequence


class InvalidVoteTarget(TallyError, ValueError):
    """Casilla fuera del rango del partido o partido desconocido.

    English: Slot outside the party range, or unknown party.
    """


class InvalidSessionTransition(TallyError):
    """Transición de estado del escrutinio no permitida.

    English: Session status transition not allowed.
    """

    def __init__(self, current: Any, target: Any, message: Optional[str] = None) -> None:
        super().__init__(message or f"Transition {current} -> {target} is not allowed.")
        self.current = current
        self.target = target


class SessionNotEditable(InvalidSessionTransition):
    """El escrutinio no admite cambios de marcas en su estado actual.

    English: The session does not accept mark mutations in its current status.
    """

    def __init__(self, current: Any, operation: str) -> None:
        super().__init__(
            current,
            None,
            f"Operation '{operation}' rejected while session is {current}.",
        )
        self.operation = operation


class SyncFailure(TallyError):
    """Fallo transitorio al propagar un delta al almacén remoto.

    English: Transient failure propagating a delta to the remote store.
    """

    def __init__(self, message: str, *, client_batch_id: Optional[str] = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.client_batch_id = client_batch_id
        self.attempts = attempts


class GeolocationUnavailable(TallyError):
    """No se obtuvo ubicación del dispositivo.

    English: Device location could not be acquired.
    """


class EvidenceUploadFailure(TallyError):
    """Falló la carga de la foto del acta.

    English: Acta photo upload failed.
    """


class EvidenceRequired(TallyError):
    """Finalizar requiere evidencia o una anulación explícita del usuario.

    English: Finalizing requires evidence or an explicit user override.
    """


class PersistenceError(TallyError):
    """Registro local ilegible, corrupto o de versión desconocida.

    English: Local record unreadable, corrupt, or of an unknown version.
    """
