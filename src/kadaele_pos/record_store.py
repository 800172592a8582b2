"""Durable key/value record store backed by the store workbook.

Every public write replaces whole collections and appends one sync queue entry
per key within the same atomic workbook save. Failures never raise; they are
logged and reported as ``False`` after the in-memory workbook has been rolled
back, so the previous values stay visible to subsequent reads.
"""

from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from openpyxl.utils.exceptions import IllegalCharacterError
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import CollectionKey, SheetName
from .data_manager import SyncQueueEntry


KeyLike = Union[str, CollectionKey]
WriteListener = Callable[[List[SyncQueueEntry]], None]

_PERSISTENCE_ERRORS = (OSError, ValueError, IllegalCharacterError)


class StoreLock:
    """Re-entrant lock that runs deferred callbacks once fully released.

    Ledger operations nest store writes inside their own ``with store.lock``
    block. Work registered through :meth:`after_release` while the calling
    thread holds the lock waits until the outermost block exits, so commit
    listeners such as the sync engine never run with the lock held.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._local = threading.local()

    def acquire(self, blocking: bool = True, timeout: float = -1) -> bool:
        acquired = self._lock.acquire(blocking, timeout)
        if acquired:
            self._local.depth = self._depth() + 1
        return acquired

    def release(self) -> None:
        depth = self._depth() - 1
        self._local.depth = depth
        pending: List[Callable[[], None]] = []
        if depth == 0:
            pending = self._pending()
            self._local.pending = []
        self._lock.release()
        for callback in pending:
            callback()

    def after_release(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` now, or when this thread leaves its outermost block."""

        if self._depth() == 0:
            callback()
        else:
            self._pending().append(callback)

    def __enter__(self) -> "StoreLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    def _pending(self) -> List[Callable[[], None]]:
        if not hasattr(self._local, "pending"):
            self._local.pending = []
        return self._local.pending


class RecordStore:
    """Generic persistence for the ledger collections and the sync queue.

    Attributes:
        workbook (Workbook): Live workbook holding every collection.
        data_file (Path): Destination the workbook is saved to after each write.
        lock (StoreLock): Serializes read-modify-write sequences. Ledger
            operations hold it across their read and their write.
    """

    def __init__(
        self,
        workbook: Workbook,
        data_file: Path,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.workbook = workbook
        self.data_file = Path(data_file)
        self.lock = StoreLock()
        self._clock = clock or data_manager.utc_now
        self._listeners: List[WriteListener] = []

    @classmethod
    def open(cls, data_file: Path, *, clock: Optional[Callable[[], datetime]] = None) -> "RecordStore":
        """Open the workbook stored at ``data_file``.

        Raises:
            FileNotFoundError: If the workbook does not exist.
        """

        return cls(data_manager.open_workbook(data_file), data_file, clock=clock)

    def subscribe(self, listener: WriteListener) -> None:
        """Register ``listener`` to receive the queue entries of each committed write."""

        self._listeners.append(listener)

    def refresh(self) -> None:
        """Reload the workbook from disk, discarding the in-memory copy."""

        with self.lock:
            self.workbook = data_manager.open_workbook(self.data_file)
        log.info("Reloaded store workbook '%s'", self.data_file)

    # ------------------------------------------------------------------
    # Key/value contract
    # ------------------------------------------------------------------

    def get(self, key: KeyLike) -> Any:
        """Return the value stored under ``key`` or the registry default.

        Collections come back as fresh lists of typed rows, so callers may
        mutate the result freely.
        """

        key = data_manager.as_key(key)
        with self.lock:
            if key is CollectionKey.SYNC_QUEUE:
                return data_manager.read_queue(self.workbook)
            if key is CollectionKey.LAST_SYNC:
                return data_manager.read_meta(self.workbook, data_manager.META_LAST_SYNC)
            return data_manager.read_collection(self.workbook, key)

    def set(self, key: KeyLike, value: Any) -> bool:
        """Durably replace the value under ``key`` and queue it for sync."""

        return self.set_many({key: value})

    def set_many(self, values: Mapping[KeyLike, Any]) -> bool:
        """Replace several keys in one atomic save.

        One :class:`SyncQueueEntry` per key is appended in the same save, in
        the iteration order of ``values``. Listeners are notified only after
        the save succeeded and the calling thread has released
        :attr:`lock`.

        Args:
            values (Mapping): New values keyed by collection key.

        Returns:
            bool: ``True`` when every value and queue entry reached disk,
                ``False`` when nothing was written.

        Raises:
            ValueError: If ``values`` targets the sync queue, which only the
                sync engine may modify.
        """

        normalized: Dict[CollectionKey, Any] = {data_manager.as_key(key): value for key, value in values.items()}
        if CollectionKey.SYNC_QUEUE in normalized:
            raise ValueError("The sync queue cannot be written through set()")
        if not normalized:
            return True

        timestamp = data_manager.to_iso(self._clock())
        with self.lock:
            entries = [
                SyncQueueEntry(key=key.value, value=self._payload(key, value), timestamp=timestamp)
                for key, value in normalized.items()
            ]

            def apply() -> None:
                for key, value in normalized.items():
                    self._write(key, value)
                data_manager.append_queue(self.workbook, entries)

            sheets = [_sheet_for(key) for key in normalized] + [SheetName.SYNC_QUEUE.value]
            description = ", ".join(key.value for key in normalized)
            if not self._commit(sheets, apply, description):
                return False

        log.debug("Persisted %s and queued %d sync entries", description, len(entries))
        self.lock.after_release(lambda: self._notify(entries))
        return True

    # ------------------------------------------------------------------
    # Queue primitives used by the sync engine
    # ------------------------------------------------------------------

    def queue_entries(self) -> List[SyncQueueEntry]:
        """Return a snapshot of the pending queue in insertion order."""

        with self.lock:
            return data_manager.read_queue(self.workbook)

    def append_queue(self, entries: Sequence[SyncQueueEntry]) -> bool:
        """Durably append ``entries`` to the queue without mirroring them."""

        with self.lock:
            return self._commit(
                [SheetName.SYNC_QUEUE.value],
                lambda: data_manager.append_queue(self.workbook, entries),
                "sync queue",
            )

    def complete_flush(self, delivered: int, last_sync: str) -> bool:
        """Remove the first ``delivered`` entries and record ``last_sync``.

        Entries appended after the flush snapshot was taken stay queued.
        """

        def apply() -> None:
            data_manager.drop_queue_head(self.workbook, delivered)
            data_manager.write_meta(self.workbook, data_manager.META_LAST_SYNC, last_sync)

        with self.lock:
            return self._commit(
                [SheetName.SYNC_QUEUE.value, SheetName.META.value],
                apply,
                "sync completion",
            )

    def schema_version(self) -> Optional[str]:
        """Return the schema version recorded inside the workbook, if any."""

        with self.lock:
            return data_manager.read_meta(self.workbook, data_manager.META_SCHEMA_VERSION)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _notify(self, entries: List[SyncQueueEntry]) -> None:
        for listener in list(self._listeners):
            listener(entries)

    def _payload(self, key: CollectionKey, value: Any) -> Any:
        if key is CollectionKey.LAST_SYNC:
            return value
        return data_manager.collection_payload(key, value)

    def _write(self, key: CollectionKey, value: Any) -> None:
        if key is CollectionKey.LAST_SYNC:
            data_manager.write_meta(self.workbook, data_manager.META_LAST_SYNC, value)
        else:
            data_manager.write_collection(self.workbook, key, value)

    def _commit(self, sheet_names: Iterable[str], apply: Callable[[], None], description: str) -> bool:
        snapshots = {name: data_manager.snapshot_sheet(self.workbook, name) for name in dict.fromkeys(sheet_names)}
        try:
            apply()
            data_manager.save_workbook(self.workbook, self.data_file)
        except _PERSISTENCE_ERRORS as exc:
            for name, snapshot in snapshots.items():
                data_manager.restore_sheet(self.workbook, name, snapshot)
            log.error("Failed to persist %s to '%s': %s", description, self.data_file, exc)
            return False
        return True


def _sheet_for(key: CollectionKey) -> str:
    if key is CollectionKey.LAST_SYNC:
        return SheetName.META.value
    return data_manager.COLLECTIONS[key].sheet_name
