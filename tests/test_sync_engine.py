"""Tests for the outbox sync engine and the HTTP transport."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest.mock import Mock

import pytest
import requests

from conftest import FakeTransport, FixedClock
from kadaele_pos import data_manager
from kadaele_pos.constants import CollectionKey
from kadaele_pos.errors import SyncError
from kadaele_pos.network import NetworkStatus
from kadaele_pos.sync_engine import HttpSyncTransport, SyncEngine

ENDPOINT = "https://sync.example/batch"


def _good(good_id: str) -> data_manager.GoodRow:
    return data_manager.GoodRow(good_id, f"Good {good_id}", Decimal("10"))


@pytest.fixture
def engine(store, network, clock, transport) -> SyncEngine:
    return SyncEngine(store, network, clock, transport)


# ---------------------------------------------------------------------------
# Queueing while offline
# ---------------------------------------------------------------------------


def test_offline_writes_accumulate_in_queue(engine, store, transport):
    """Every write while offline leaves one entry and nothing is delivered."""

    for index in range(3):
        store.set(CollectionKey.GOODS, [_good(f"G{index}")])

    assert len(engine.queue) == 3
    assert transport.batches == []
    assert engine.last_sync is None


def test_flush_while_offline_is_a_noop(engine, store):
    """flush reports failure and leaves the queue untouched while offline."""

    store.set(CollectionKey.GOODS, [_good("G1")])

    result = engine.flush()

    assert result.success is False
    assert result.error == "offline"
    assert len(engine.queue) == 1


def test_enqueue_persists_entry(engine, transport):
    """enqueue appends durably and does not deliver while offline."""

    entry = data_manager.SyncQueueEntry("goods", [], "2024-03-01T09:00:00+00:00")

    assert engine.enqueue(entry) is True
    assert engine.queue == [entry]
    assert transport.batches == []


# ---------------------------------------------------------------------------
# Flushing
# ---------------------------------------------------------------------------


def test_going_online_flushes_everything(engine, store, transport, clock):
    """Five offline writes are delivered in one batch once the device is online."""

    for index in range(5):
        store.set(CollectionKey.GOODS, [_good(f"G{index}")])

    engine.set_online(True)

    assert len(transport.batches) == 1
    assert len(transport.batches[0]) == 5
    assert engine.queue == []
    assert engine.last_sync == data_manager.to_iso(clock.now())
    assert engine.syncing is False


def test_writes_while_online_flush_immediately(engine, store, transport, network):
    """Online writes are delivered right after they are committed."""

    network.set_online(True)

    store.set(CollectionKey.GOODS, [_good("G1")])

    assert transport.delivered_keys == ["goods"]
    assert engine.queue == []


def test_failed_delivery_keeps_queue(engine, store, transport):
    """A transport error leaves every entry queued and lastSync unchanged."""

    store.set(CollectionKey.GOODS, [_good("G1")])
    transport.fail = True

    engine.set_online(True)
    result = engine.flush()

    assert result.success is False
    assert result.error == "remote unreachable"
    assert len(engine.queue) == 1
    assert engine.last_sync is None
    assert engine.syncing is False


def test_rejected_batch_keeps_queue(engine, store, transport, network):
    """A transport returning False is treated like a failure."""

    store.set(CollectionKey.GOODS, [_good("G1")])
    transport.reject = True
    network.set_online(True)

    result = engine.flush()

    assert result.success is False
    assert len(engine.queue) == 1


def test_entries_enqueued_during_flush_survive(engine, store, transport, network):
    """Only the snapshot taken at flush start is removed afterwards."""

    store.set(CollectionKey.GOODS, [_good("G1")])
    store.set(CollectionKey.GOODS, [_good("G2")])
    late = data_manager.SyncQueueEntry("inventory", [], "2024-03-01T09:05:00+00:00")
    transport.on_deliver = lambda entries: store.append_queue([late])

    network.set_online(True)

    assert len(transport.batches[0]) == 2
    assert engine.queue == [late]


def test_flush_is_noop_while_syncing(engine, store, transport, network):
    """A flush requested during another flush does not deliver again."""

    nested = []
    transport.on_deliver = lambda entries: nested.append(engine.flush())
    store.set(CollectionKey.GOODS, [_good("G1")])

    network.set_online(True)

    assert nested[0].success is False
    assert nested[0].error == "sync already in progress"
    assert len(transport.batches) == 1


def test_flush_with_empty_queue_succeeds(engine, network):
    """Nothing to send is a successful flush of zero entries."""

    network.set_online(True)

    result = engine.flush()

    assert result.success is True
    assert result.synced == 0


def test_flush_without_transport_keeps_queue(store, network, clock):
    """Without a remote endpoint entries stay queued."""

    engine = SyncEngine(store, network, clock, transport=None)
    store.set(CollectionKey.GOODS, [_good("G1")])
    network.set_online(True)

    result = engine.flush()

    assert result.success is False
    assert result.error == "no remote endpoint configured"
    assert len(engine.queue) == 1


def test_going_offline_only_updates_state(engine, store, transport, network):
    """Losing connectivity stops delivery but keeps queued entries."""

    network.set_online(True)
    network.set_online(False)

    store.set(CollectionKey.GOODS, [_good("G1")])

    assert engine.online is False
    assert transport.batches == []
    assert len(engine.queue) == 1


def test_unexpected_transport_error_does_not_fail_the_write(engine, store, network):
    """Even a misbehaving transport cannot break a committed write."""

    engine.transport = Mock(deliver=Mock(side_effect=RuntimeError("bug")))
    network.set_online(True)

    assert store.set(CollectionKey.GOODS, [_good("G1")]) is True
    assert len(engine.queue) == 1


def test_background_executor_delivers_after_close(store, clock):
    """In background mode flushes run on the executor; close waits for them."""

    network = NetworkStatus(online=True)
    transport = FakeTransport()
    engine = SyncEngine(store, network, clock, transport, executor=ThreadPoolExecutor(max_workers=1))

    store.set(CollectionKey.GOODS, [_good("G1")])
    engine.close()

    assert transport.delivered_keys == ["goods"]
    assert engine.queue == []


def test_last_sync_uses_clock_at_completion(store, network, transport):
    """lastSync records the time the flush completed."""

    clock = FixedClock()
    engine = SyncEngine(store, network, clock, transport)
    store.set(CollectionKey.GOODS, [_good("G1")])
    clock.advance(hours=2)

    network.set_online(True)

    assert engine.last_sync == data_manager.to_iso(clock.now())


# ---------------------------------------------------------------------------
# HTTP transport
# ---------------------------------------------------------------------------


def test_http_transport_posts_items_batch():
    """Batches are POSTed as {'items': [...]} with the configured timeout."""

    session = Mock(name="session")
    transport = HttpSyncTransport(ENDPOINT, timeout=4, session=session)
    entry = data_manager.SyncQueueEntry("goods", [{"id": "G1"}], "2024-03-01T09:00:00+00:00")

    assert transport.deliver([entry]) is True

    session.post.assert_called_once_with(
        ENDPOINT,
        json={"items": [{"key": "goods", "value": [{"id": "G1"}], "timestamp": "2024-03-01T09:00:00+00:00"}]},
        timeout=4,
    )


def test_http_transport_wraps_request_errors():
    """Connection and HTTP errors surface as SyncError."""

    session = Mock(name="session")
    session.post.return_value.raise_for_status.side_effect = requests.HTTPError("500 Server Error")
    transport = HttpSyncTransport(ENDPOINT, session=session)

    with pytest.raises(SyncError):
        transport.deliver([])

    session.post.side_effect = requests.ConnectionError("down")
    with pytest.raises(SyncError):
        transport.deliver([])
