"""Contadores de votos por casilla con actualización optimista y sincronización en segundo plano.

English:
    Per-slot vote counters with optimistic local updates and background sync.

Cada mutación local se aplica de inmediato en memoria y se encola como un
delta con ``client_batch_id``. Un único worker consume la cola en orden FIFO,
de modo que para una misma llave los deltas llegan al almacén remoto en el
orden en que fueron emitidos. ``pause_sync``/``resume_sync`` solo controlan si
el worker drena la cola; la cola sigue aceptando deltas.

Example:
    >>> store = VoteCountStore(remote, sync_interval_seconds=3.0)
    >>> store.init_session("escr-001")
    >>> async with store:
    ...     await store.load_from_remote("escr-001")
    ...     store.increment(VoteKey("PDC", 1))
    ...     store.pause_sync()
    ...     await store.settle()
    ...     snapshot = store.snapshot()
    ...     store.resume_sync()
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from contextlib import suppress
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

from escrutinio.core.models import (
    BLANK_KEY,
    NULL_KEY,
    VoteDelta,
    VoteKey,
    freeze_counts,
)
from escrutinio.errors import SyncFailure
from escrutinio.remote import RemoteTallyStore

_PendingItem = Tuple[str, VoteDelta]


class VoteCountStore:
    """Almacén de conteos de un escrutinio, propiedad exclusiva de la sesión.

    English:
        Session-scoped counter store. Lifecycle is ``init_session`` ->
        mutations -> ``aclose``. Counters never go below zero.
    """

    def __init__(
        self,
        remote: RemoteTallyStore,
        *,
        sync_interval_seconds: float = 3.0,
        debounce_seconds: float = 0.5,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        close_timeout_seconds: float = 5.0,
        logger: Optional[Any] = None,
    ) -> None:
        self._remote = remote
        self._sync_interval = sync_interval_seconds
        self._debounce = debounce_seconds
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay_seconds
        self._max_backoff = max_backoff_seconds
        self._close_timeout = close_timeout_seconds
        self.logger = logger or structlog.get_logger(__name__)
        self._sync_listeners: List[Callable[[], None]] = []

        self._session_id: Optional[str] = None
        self._counts: Dict[VoteKey, int] = {}
        self._pending: Deque[_PendingItem] = deque()
        self._paused = False
        self._closing = False
        self._in_flight: Optional[_PendingItem] = None
        self._worker: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._idle: Optional[asyncio.Event] = None
        self._drained: Optional[asyncio.Event] = None
        self.last_sync_at: Optional[float] = None
        self.last_error: Optional[SyncFailure] = None

    # ------------------------------------------------------------------
    # Ciclo de vida / Lifecycle
    # ------------------------------------------------------------------
    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def init_session(self, session_id: str) -> bool:
        """Asocia el almacén a un escrutinio.

        Un ``session_id`` distinto al último visto limpia los contadores en
        memoria; el mismo id (recarga) los conserva. Los deltas pendientes de
        la sesión anterior se siguen propagando a su propio escrutinio.

        Returns:
            ``True`` si se limpiaron los contadores.

        English:
            Bind the store to a session; a new session id clears counters.
        """
        if not session_id:
            raise ValueError("session_id is required")
        if session_id == self._session_id:
            return False
        previous = self._session_id
        self._counts.clear()
        self._session_id = session_id
        self.logger.info(
            "vote_store_session_changed",
            previous_session=previous,
            session_id=session_id,
            pending_from_previous=len(self._pending),
        )
        return True

    def start(self) -> None:
        """Arranca el worker de sincronización en el loop actual.

        English: Start the sync worker on the running event loop.
        """
        if self._worker is not None and not self._worker.done():
            return
        self._closing = False
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._drained = asyncio.Event()
        if not self._pending:
            self._drained.set()
        self._worker = asyncio.get_running_loop().create_task(self._run(), name="vote-sync-worker")
        if self._pending:
            self._wakeup.set()

    async def aclose(self, timeout: Optional[float] = None) -> None:
        """Drena la cola (salvo pausa) y detiene el worker.

        La espera está acotada por ``timeout`` o, si no se indica, por
        ``close_timeout_seconds``; lo que no se entregó queda en la cola.

        English:
            Flush the queue (unless paused) within a bounded wait and stop the
            worker. Undelivered deltas stay queued in memory.
        """
        if self._worker is None:
            return
        if timeout is None:
            timeout = self._close_timeout
        if not self._paused:
            await self.flush(timeout=timeout)
        if self._pending:
            self.logger.warning(
                "vote_store_closed_with_pending",
                session_id=self._session_id,
                pending=len(self._pending),
            )
        self._closing = True
        self._worker.cancel()
        with suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None

    async def __aenter__(self) -> "VoteCountStore":
        self.start()
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Mutaciones / Mutations
    # ------------------------------------------------------------------
    def increment(self, key: VoteKey) -> int:
        """Suma una marca a la llave y encola el delta +1.

        English: Add one mark to the key and queue the +1 delta.
        """
        self._check_key(key)
        value = self._counts.get(key, 0) + 1
        self._counts[key] = value
        self._enqueue(key, +1)
        return value

    def decrement(self, key: VoteKey) -> int:
        """Resta una marca; en cero no hace nada ni encola delta.

        English: Remove one mark; at zero it is a silent no-op.
        """
        self._check_key(key)
        current = self._counts.get(key, 0)
        if current <= 0:
            self.logger.debug("vote_store_decrement_floor", key=str(key))
            return 0
        value = current - 1
        if value:
            self._counts[key] = value
        else:
            self._counts.pop(key, None)
        self._enqueue(key, -1)
        return value

    def increment_blank(self) -> int:
        return self.increment(BLANK_KEY)

    def decrement_blank(self) -> int:
        return self.decrement(BLANK_KEY)

    def increment_null(self) -> int:
        return self.increment(NULL_KEY)

    def decrement_null(self) -> int:
        return self.decrement(NULL_KEY)

    # ------------------------------------------------------------------
    # Lecturas / Reads
    # ------------------------------------------------------------------
    def get_count(self, key: VoteKey) -> int:
        return self._counts.get(key, 0)

    def get_party_total(self, party_id: str) -> int:
        return sum(count for key, count in self._counts.items() if key.party_id == party_id)

    def get_party_totals(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for key, count in self._counts.items():
            if key.is_special:
                continue
            totals[key.party_id] = totals.get(key.party_id, 0) + count
        return totals

    @property
    def blank_count(self) -> int:
        return self.get_count(BLANK_KEY)

    @property
    def null_count(self) -> int:
        return self.get_count(NULL_KEY)

    def get_counts(self) -> Dict[VoteKey, int]:
        return dict(self._counts)

    def snapshot(self) -> Mapping[str, int]:
        """Copia inmutable del mapa completo con llaves ``"<partido>_<casilla>"``.

        English: Read-only copy of the full counter map.
        """
        return freeze_counts(self._counts)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def has_in_flight(self) -> bool:
        return self._in_flight is not None

    def pending_deltas(self) -> Tuple[_PendingItem, ...]:
        """Deltas aún no confirmados, en orden, con su ``session_id``.

        English: Unconfirmed deltas in issue order, tagged with their session.
        """
        return tuple(self._pending)

    def restore_local(
        self,
        session_id: str,
        counts: Mapping[VoteKey, int],
        pending: Iterable[_PendingItem] = (),
    ) -> int:
        """Rehidrata contadores y cola guardados antes de una recarga.

        Los deltas cuyo ``client_batch_id`` ya está en cola se ignoran.

        Returns:
            Cantidad de deltas reencolados.

        English:
            Rehydrate counters and the pending queue saved before a reload.
        """
        self.init_session(session_id)
        self._counts = {key: int(value) for key, value in counts.items() if int(value) > 0}
        known = {delta.client_batch_id for _, delta in self._pending}
        restored = 0
        for pending_session, delta in pending:
            if delta.client_batch_id in known:
                continue
            self._pending.append((pending_session, delta))
            known.add(delta.client_batch_id)
            restored += 1
        if restored:
            if self._drained is not None:
                self._drained.clear()
            if not self._paused:
                self._notify()
        self.logger.info(
            "vote_store_restored_local",
            session_id=session_id,
            keys=len(self._counts),
            pending_restored=restored,
        )
        return restored

    def add_sync_listener(self, callback: Callable[[], None]) -> None:
        """Registra un callback invocado tras cada ronda con entregas.

        English: Register a callback run after each round that delivered deltas.
        """
        self._sync_listeners.append(callback)

    # ------------------------------------------------------------------
    # Sincronización / Sync
    # ------------------------------------------------------------------
    def pause_sync(self) -> None:
        self._paused = True
        self.logger.info("vote_sync_paused", session_id=self._session_id, pending=len(self._pending))

    def resume_sync(self) -> None:
        self._paused = False
        self.logger.info("vote_sync_resumed", session_id=self._session_id, pending=len(self._pending))
        if self._pending:
            self._notify()

    @property
    def is_sync_paused(self) -> bool:
        return self._paused

    async def settle(self) -> None:
        """Espera a que termine el delta en vuelo, si lo hay.

        English: Wait for the in-flight delta, if any, to settle.
        """
        if self._idle is not None:
            await self._idle.wait()

    async def flush(self, timeout: Optional[float] = None) -> bool:
        """Espera a que la cola quede vacía.

        Returns:
            ``False`` si la sincronización está pausada o se agotó el tiempo.

        English: Wait until the queue is empty.
        """
        if not self._pending and self._in_flight is None:
            return True
        if self._paused:
            self.logger.warning("vote_flush_while_paused", pending=len(self._pending))
            return False
        self.start()
        self._notify()
        assert self._drained is not None
        try:
            await asyncio.wait_for(self._drained.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning("vote_flush_timeout", pending=len(self._pending), timeout=timeout)
            return False
        return True

    async def load_from_remote(self, session_id: str) -> bool:
        """Reemplaza los contadores locales con los del almacén remoto.

        Los deltas aún pendientes de esta sesión se vuelven a aplicar sobre
        el mapa remoto, así una marca no sincronizada nunca se pierde. La
        sincronización queda pausada mientras se lee el mapa remoto para que
        ningún delta se confirme entre la lectura y la reaplicación.

        Returns:
            ``False`` si la carga falló; el estado local se conserva.

        English:
            Overwrite local counters with the remote map, re-applying deltas
            still pending locally. On failure local state stays authoritative.
        """
        self.init_session(session_id)
        was_paused = self._paused
        if not was_paused:
            self.pause_sync()
        try:
            await self.settle()
            return await self._replace_with_remote(session_id)
        finally:
            if not was_paused:
                self.resume_sync()

    async def _replace_with_remote(self, session_id: str) -> bool:
        try:
            remote_counts = await self._remote.load_counts(session_id)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("vote_store_remote_load_failed", session_id=session_id, error=str(exc))
            return False
        if session_id != self._session_id:
            self.logger.warning("vote_store_remote_load_stale", session_id=session_id)
            return False

        counts = {key: int(value) for key, value in remote_counts.items() if int(value) > 0}
        reapplied = 0
        for pending_session, delta in self._pending:
            if pending_session != session_id:
                continue
            value = max(0, counts.get(delta.key, 0) + delta.delta)
            if value:
                counts[delta.key] = value
            else:
                counts.pop(delta.key, None)
            reapplied += 1
        self._counts = counts
        self.logger.info(
            "vote_store_loaded",
            session_id=session_id,
            keys=len(counts),
            reapplied_pending=reapplied,
        )
        return True

    # ------------------------------------------------------------------
    # Internos / Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _check_key(key: VoteKey) -> None:
        if not isinstance(key, VoteKey) or not key.party_id or key.slot < 0:
            raise ValueError(f"Invalid vote key: {key!r}")

    def _enqueue(self, key: VoteKey, delta: int) -> None:
        if self._session_id is None:
            raise RuntimeError("VoteCountStore.init_session() must be called before mutating counts")
        item = VoteDelta(
            key=key,
            delta=delta,
            timestamp_ms=int(time.time() * 1000),
            client_batch_id=uuid.uuid4().hex,
        )
        self._pending.append((self._session_id, item))
        if self._drained is not None:
            self._drained.clear()
        if not self._paused:
            self._notify()

    def _notify(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    async def _run(self) -> None:
        assert self._wakeup is not None
        while not self._closing:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._sync_interval)
                await asyncio.sleep(self._debounce)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            if self._paused or not self._pending:
                continue
            await self._drain_pending()

    async def _drain_pending(self) -> None:
        assert self._idle is not None and self._drained is not None
        confirmed = 0
        try:
            while self._pending and not self._paused:
                item = self._pending[0]
                self._in_flight = item
                self._idle.clear()
                try:
                    delivered = await self._propagate(*item)
                finally:
                    self._in_flight = None
                    self._idle.set()
                if not delivered:
                    return
                self._pending.popleft()
                confirmed += 1
            if not self._pending:
                self._drained.set()
        finally:
            if confirmed:
                self._notify_listeners()

    def _notify_listeners(self) -> None:
        for callback in list(self._sync_listeners):
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                self.logger.warning("vote_sync_listener_failed", session_id=self._session_id, error=str(exc))

    async def _propagate(self, session_id: str, delta: VoteDelta) -> bool:
        for attempt in range(1, self._max_retries + 1):
            try:
                await self._remote.apply_delta(session_id, delta)
            except Exception as exc:  # noqa: BLE001
                self.logger.warning(
                    "vote_sync_retry",
                    session_id=session_id,
                    client_batch_id=delta.client_batch_id,
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt == self._max_retries:
                    self.last_error = SyncFailure(
                        f"Delta {delta.client_batch_id} not delivered: {exc}",
                        client_batch_id=delta.client_batch_id,
                        attempts=attempt,
                    )
                    self.logger.error(
                        "vote_sync_failed",
                        session_id=session_id,
                        client_batch_id=delta.client_batch_id,
                        pending=len(self._pending),
                    )
                    return False
                await asyncio.sleep(min(self._retry_delay * attempt, self._max_backoff))
                if self._paused:
                    return False
                continue
            self.last_sync_at = time.time()
            self.last_error = None
            self.logger.debug(
                "vote_sync_delivered",
                session_id=session_id,
                key=str(delta.key),
                delta=delta.delta,
                client_batch_id=delta.client_batch_id,
            )
            return True
        return False
