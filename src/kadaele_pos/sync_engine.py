"""Outbox-style synchronization of local writes to a remote service.

Every committed record store write leaves one :class:`SyncQueueEntry` in the
durable queue. The engine delivers the whole queue as a single batch whenever
the device is online and no other flush is running. Delivery failures are
logged and reported through :class:`SyncResult`; they never propagate into the
ledger operation whose write triggered the flush.

The queue is not compacted: a long offline period produces one entry per
write, not one per logical record, and the remote side must tolerate
receiving an entry more than once (last write per key wins).
"""

from __future__ import annotations

import threading
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Sequence

import requests

from . import log
from .data_manager import DEFAULT_TIMEOUT_SECONDS, SyncQueueEntry, to_iso
from .errors import SyncError
from .network import NetworkStatus
from .record_store import RecordStore


class Clock(Protocol):
    def now(self) -> datetime: ...


class SyncTransport(Protocol):
    """Remote batch delivery contract.

    ``deliver`` returns ``True`` when the remote accepted the whole batch and
    ``False`` (or raises :class:`SyncError`) otherwise. Partial acknowledgement
    is not modelled.
    """

    def deliver(self, entries: Sequence[SyncQueueEntry]) -> bool: ...


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one :meth:`SyncEngine.flush` call."""

    success: bool
    synced: int = 0
    error: Optional[str] = None


class HttpSyncTransport:
    """Deliver queue batches as ``{"items": [...]}`` JSON over HTTP POST."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self._session = session

    def deliver(self, entries: Sequence[SyncQueueEntry]) -> bool:
        poster = self._session.post if self._session is not None else requests.post
        try:
            response = poster(
                self.endpoint,
                json={"items": [entry.to_payload() for entry in entries]},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise SyncError(f"Delivery to '{self.endpoint}' failed: {exc}") from exc
        return True


class SyncEngine:
    """Owns the ``syncing`` flag and drives queue delivery.

    The engine subscribes to the record store (new entries) and to the network
    status (online transitions). With an ``executor`` the flushes they trigger
    run in the background; without one they run inline, before the triggering
    call returns.
    """

    def __init__(
        self,
        store: RecordStore,
        network: NetworkStatus,
        clock: Clock,
        transport: Optional[SyncTransport] = None,
        *,
        executor: Optional[Executor] = None,
    ) -> None:
        self.store = store
        self.network = network
        self.clock = clock
        self.transport = transport
        self._executor = executor
        self._syncing = False
        self._state_lock = threading.Lock()
        store.subscribe(self._on_entries_persisted)
        network.subscribe(self._on_connectivity_change)

    @property
    def online(self) -> bool:
        return self.network.online

    @property
    def syncing(self) -> bool:
        return self._syncing

    @property
    def queue(self) -> List[SyncQueueEntry]:
        return self.store.queue_entries()

    @property
    def last_sync(self) -> Optional[str]:
        return self.store.get("lastSync")

    def enqueue(self, entry: SyncQueueEntry) -> bool:
        """Durably append ``entry`` and flush when online and idle.

        Returns:
            bool: ``False`` if the entry could not be persisted.
        """

        if not self.store.append_queue([entry]):
            return False
        self._trigger_flush()
        return True

    def set_online(self, online: bool) -> None:
        """Convenience proxy for :meth:`NetworkStatus.set_online`."""

        self.network.set_online(online)

    def flush(self) -> SyncResult:
        """Deliver the current queue snapshot as one batch.

        A no-op while another flush runs or while offline. On success exactly
        the delivered snapshot is removed and ``lastSync`` is recorded; entries
        queued during delivery stay for the next flush. On failure the queue
        is left untouched.
        """

        with self._state_lock:
            if self._syncing:
                return SyncResult(success=False, error="sync already in progress")
            if not self.network.online:
                return SyncResult(success=False, error="offline")
            self._syncing = True

        try:
            return self._deliver_snapshot()
        finally:
            with self._state_lock:
                self._syncing = False

    def close(self) -> None:
        """Wait for background flushes to finish."""

        if self._executor is not None:
            self._executor.shutdown(wait=True)

    def _deliver_snapshot(self) -> SyncResult:
        snapshot = self.store.queue_entries()
        if not snapshot:
            return SyncResult(success=True, synced=0)
        if self.transport is None:
            log.warning("No remote endpoint configured; %d entries stay queued", len(snapshot))
            return SyncResult(success=False, error="no remote endpoint configured")

        log.info("Syncing %d queued entries", len(snapshot))
        try:
            accepted = self.transport.deliver(snapshot)
        except SyncError as exc:
            log.warning("Sync failed, keeping %d entries queued: %s", len(snapshot), exc)
            return SyncResult(success=False, error=str(exc))
        if not accepted:
            log.warning("Remote rejected the batch, keeping %d entries queued", len(snapshot))
            return SyncResult(success=False, error="remote rejected the batch")

        last_sync = to_iso(self.clock.now())
        if not self.store.complete_flush(len(snapshot), last_sync):
            return SyncResult(success=False, error="delivered but the local queue could not be cleared")
        log.info("Synced %d entries at %s", len(snapshot), last_sync)
        return SyncResult(success=True, synced=len(snapshot))

    def _trigger_flush(self) -> None:
        if not self.network.online or self._syncing:
            return
        if self._executor is not None:
            self._executor.submit(self._flush_quietly)
        else:
            self._flush_quietly()

    def _flush_quietly(self) -> None:
        # Writes must succeed regardless of what the transport does.
        try:
            self.flush()
        except Exception:
            log.exception("Unexpected error while flushing the sync queue")

    def _on_entries_persisted(self, entries: List[SyncQueueEntry]) -> None:
        self._trigger_flush()

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self._trigger_flush()
