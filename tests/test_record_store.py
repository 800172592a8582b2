"""Tests for the workbook-backed record store."""

from __future__ import annotations

import threading
from decimal import Decimal
from unittest.mock import Mock

import pytest

from kadaele_pos import data_manager
from kadaele_pos.constants import CollectionKey
from kadaele_pos.record_store import RecordStore, StoreLock


def _good(good_id: str, name: str = "Bread", price: str = "30") -> data_manager.GoodRow:
    return data_manager.GoodRow(good_id, name, Decimal(price), created_at="2024-03-01T09:00:00+00:00")


def test_get_returns_registry_defaults(store):
    """Keys never written come back with their registry default."""

    assert store.get(CollectionKey.GOODS) == []
    assert store.get("debtors") == []
    assert store.get(CollectionKey.LAST_SYNC) is None
    assert store.get(CollectionKey.SYNC_QUEUE) == []


def test_get_rejects_unknown_keys(store):
    """Unregistered keys are a programming error."""

    with pytest.raises(KeyError):
        store.get("customers")


def test_set_persists_and_queues_one_entry(store, store_workbook_path):
    """A write reaches disk and leaves exactly one queue entry with its payload."""

    assert store.set(CollectionKey.GOODS, [_good("G1")]) is True

    reopened = RecordStore.open(store_workbook_path)
    assert [good.good_id for good in reopened.get(CollectionKey.GOODS)] == ["G1"]
    queue = reopened.queue_entries()
    assert [entry.key for entry in queue] == ["goods"]
    assert queue[0].value[0]["id"] == "G1"


def test_set_many_writes_all_keys_in_one_save(store, monkeypatch):
    """Several keys are committed by a single workbook save, queued in order."""

    save = Mock(wraps=data_manager.save_workbook)
    monkeypatch.setattr(data_manager, "save_workbook", save)

    assert store.set_many({CollectionKey.GOODS: [_good("G1")], CollectionKey.INVENTORY: []}) is True

    save.assert_called_once()
    assert [entry.key for entry in store.queue_entries()] == ["goods", "inventory"]


def test_set_many_refuses_sync_queue(store):
    """Only the sync engine manipulates the queue."""

    with pytest.raises(ValueError):
        store.set(CollectionKey.SYNC_QUEUE, [])


def test_failed_save_returns_false_and_keeps_prior_value(store, monkeypatch):
    """An I/O failure is reported as False and rolled back in memory."""

    store.set(CollectionKey.GOODS, [_good("G1")])
    monkeypatch.setattr(data_manager, "save_workbook", Mock(side_effect=OSError("read-only")))

    assert store.set_many({CollectionKey.GOODS: [_good("G1"), _good("G2")], CollectionKey.DEBTORS: []}) is False

    assert [good.good_id for good in store.get(CollectionKey.GOODS)] == ["G1"]
    assert len(store.queue_entries()) == 1


def test_failed_save_does_not_notify_listeners(store, monkeypatch):
    """Listeners only hear about writes that reached disk."""

    listener = Mock()
    store.subscribe(listener)
    monkeypatch.setattr(data_manager, "save_workbook", Mock(side_effect=OSError("read-only")))

    store.set(CollectionKey.GOODS, [_good("G1")])

    listener.assert_not_called()


def test_listeners_receive_committed_entries(store):
    """Subscribers get the queue entries produced by each write."""

    listener = Mock()
    store.subscribe(listener)

    store.set(CollectionKey.INVENTORY, [data_manager.InventoryRow("G1", 4)])

    (entries,), _ = listener.call_args
    assert [entry.key for entry in entries] == ["inventory"]
    assert entries[0].value == [{"itemId": "G1", "stockLevel": 4, "lastUpdated": None}]


def test_oversized_value_is_rejected_without_partial_write(store):
    """Values a cell cannot hold fail cleanly instead of being truncated."""

    items = tuple(
        data_manager.PurchaseItem(f"G{index}", "x" * 200, Decimal("1"), 1, Decimal("1")) for index in range(200)
    )
    purchase = data_manager.PurchaseRow(
        purchase_id="P1",
        date="2024-03-01T09:00:00+00:00",
        items=items,
        total=Decimal("200"),
        payment_type=data_manager.PaymentType.CASH,
        customer_name="",
        customer_phone="",
        status=data_manager.PurchaseStatus.ACTIVE,
        created_at="2024-03-01T09:00:00+00:00",
    )

    assert store.set(CollectionKey.PURCHASES, [purchase]) is False
    assert store.get(CollectionKey.PURCHASES) == []
    assert store.queue_entries() == []


def test_complete_flush_removes_prefix_and_records_last_sync(store):
    """Delivered entries go away, later ones stay, and lastSync is recorded."""

    store.set(CollectionKey.GOODS, [_good("G1")])
    store.set(CollectionKey.INVENTORY, [])
    store.set(CollectionKey.DEBTORS, [])

    assert store.complete_flush(2, "2024-03-01T10:00:00+00:00") is True

    assert [entry.key for entry in store.queue_entries()] == ["debtors"]
    assert store.get(CollectionKey.LAST_SYNC) == "2024-03-01T10:00:00+00:00"


def test_append_queue_does_not_notify_listeners(store):
    """Queue primitives are not mirrored into the queue or to listeners."""

    listener = Mock()
    store.subscribe(listener)
    entry = data_manager.SyncQueueEntry("goods", [], "2024-03-01T09:00:00+00:00")

    assert store.append_queue([entry]) is True

    assert store.queue_entries() == [entry]
    listener.assert_not_called()


def test_refresh_reloads_from_disk(store, store_workbook_path):
    """refresh discards in-memory state in favour of the saved file."""

    other = RecordStore.open(store_workbook_path)
    other.set(CollectionKey.GOODS, [_good("G7")])

    store.refresh()

    assert [good.good_id for good in store.get(CollectionKey.GOODS)] == ["G7"]


def test_schema_version_reads_meta(store):
    """The workbook remembers the schema version it was created with."""

    assert store.schema_version() == "1.0.0"


def test_listeners_wait_for_outermost_lock_release(store):
    """Writes nested in a held lock notify listeners only once it is released."""

    calls = []

    def from_other_thread(entries) -> None:
        def attempt() -> None:
            got = store.lock.acquire(blocking=False)
            calls.append(got)
            if got:
                store.lock.release()

        worker = threading.Thread(target=attempt)
        worker.start()
        worker.join()

    store.subscribe(from_other_thread)

    with store.lock:
        with store.lock:
            store.set(CollectionKey.GOODS, [_good("G1")])
        assert calls == []

    assert calls == [True]


def test_store_lock_runs_callbacks_immediately_when_free():
    """after_release runs right away outside any held block."""

    lock = StoreLock()
    ran = []

    lock.after_release(lambda: ran.append("now"))
    with lock:
        lock.after_release(lambda: ran.append("later"))
        assert ran == ["now"]

    assert ran == ["now", "later"]
