"""
Tests for chabs/storage/sync.py: the hybrid provider's state machine,
mirroring, the durable replay queue and remote-to-local watching.

The remote is the in-process Flask backend; `transport.down` cuts the
network. The periodic health check is driven by calling
check_connectivity() directly (it is the timer's callback), except in
TestTimer where a short interval lets the real timer fire.
"""
import os
import threading
import time
import pytest

from chabs.core.errors import DuplicateSkuError, NotFoundError, StorageWriteError
from chabs.core.scheduler import ConnectivityMonitor
from chabs.storage.local import LocalProvider
from chabs.storage.remote import RemoteProvider
from chabs.storage.record_store import RecordStore
from chabs.storage.sync import (
    SyncCoordinator, LOCAL_ONLY, ONLINE_SYNCED, ONLINE_SYNCING, OFFLINE_QUEUED, QUEUE_KEY,
)


@pytest.fixture
def monitor():
    return ConnectivityMonitor()


@pytest.fixture
def hybrid(local, remote, monitor):
    coordinator = SyncCoordinator(local, remote, monitor=monitor, interval=3600).start()
    yield coordinator
    coordinator.close()


@pytest.fixture
def transitions(hybrid):
    seen = []
    hybrid.on_state_change(lambda old, new: seen.append(new))
    return seen


def _remote_skus(remote):
    return sorted(p["sku"] for p in remote.list("products"))


class TestStartup:

    def test_reachable_starts_synced(self, hybrid):
        assert hybrid.state == ONLINE_SYNCED

    def test_unreachable_starts_queued(self, local, remote, transport):
        transport.down = True
        coordinator = SyncCoordinator(local, remote, interval=3600).start()
        assert coordinator.state == OFFLINE_QUEUED
        coordinator.close()

    def test_local_only_never_touches_remote(self, local, remote, transport, widget):
        coordinator = SyncCoordinator(local, remote, local_only=True).start()
        coordinator.create("products", widget)
        assert coordinator.state == LOCAL_ONLY
        assert transport.calls == []
        coordinator.close()

    def test_persisted_queue_replayed_at_start(self, local, remote, transport, widget):
        transport.down = True
        first = SyncCoordinator(local, remote, interval=3600).start()
        first.create("products", widget)
        first.close()
        assert local.store.read_collection(QUEUE_KEY)

        transport.down = False
        second = SyncCoordinator(local, remote, interval=3600).start()
        assert second.state == ONLINE_SYNCED
        assert second.queue_length() == 0
        assert _remote_skus(remote) == ["W1"]
        second.close()


class TestOnlineMirroring:

    def test_create_mirrored_with_same_id(self, hybrid, remote, widget):
        rec = hybrid.create("products", widget)
        assert remote.get("products", rec["id"])["sku"] == "W1"
        assert hybrid.queue_length() == 0

    def test_update_and_delete_mirrored(self, hybrid, remote, widget):
        rec = hybrid.create("products", widget)
        hybrid.update("products", rec["id"], {"stock": 3})
        assert remote.get("products", rec["id"])["stock"] == 3
        hybrid.delete("products", rec["id"])
        with pytest.raises(NotFoundError):
            remote.get("products", rec["id"])

    def test_noop_update_sends_nothing(self, hybrid, transport, widget):
        rec = hybrid.create("products", widget)
        before = len(transport.calls)
        hybrid.update("products", rec["id"], {})
        assert len(transport.calls) == before

    def test_local_business_errors_propagate(self, hybrid, widget):
        hybrid.create("products", widget)
        with pytest.raises(DuplicateSkuError):
            hybrid.create("products", widget)
        with pytest.raises(NotFoundError):
            hybrid.update("products", "prod_missing", {"stock": 1})

    def test_remote_rejection_is_logged_not_raised(self, hybrid, remote, widget, caplog):
        remote.put("products", dict(widget, id="prod_remote_only"))
        with caplog.at_level("ERROR", logger="chabs.sync"):
            rec = hybrid.create("products", widget)
        assert hybrid.get("products", rec["id"])["sku"] == "W1"
        assert hybrid.state == ONLINE_SYNCED
        assert hybrid.queue_length() == 0
        assert "Remote rejected" in caplog.text

    def test_reads_come_from_local(self, hybrid, remote, widget):
        remote.create("products", widget)
        assert hybrid.list("products") == []


class TestOfflineQueue:

    def test_create_while_unreachable(self, hybrid, transport, widget):
        transport.down = True
        rec = hybrid.create("products", dict(widget, sku="W1"))
        assert hybrid.state == OFFLINE_QUEUED
        assert rec["id"] in [p["id"] for p in hybrid.list("products")]
        assert hybrid.queue_length() == 1

    def test_reconnect_via_periodic_check(self, hybrid, remote, transport, transitions, widget):
        transport.down = True
        hybrid.create("products", widget)
        assert hybrid.state == OFFLINE_QUEUED

        transport.down = False
        hybrid.check_connectivity()
        assert transitions[-2:] == [ONLINE_SYNCING, ONLINE_SYNCED]
        assert hybrid.state == ONLINE_SYNCED
        assert _remote_skus(remote) == ["W1"]
        assert hybrid.status()["last_sync"]

    def test_check_while_still_down_stays_queued(self, hybrid, transport, widget):
        transport.down = True
        hybrid.create("products", widget)
        assert hybrid.check_connectivity()["reachable"] is False
        assert hybrid.state == OFFLINE_QUEUED
        assert hybrid.queue_length() == 1

    def test_replay_keeps_issue_order(self, hybrid, remote, transport, widget):
        transport.down = True
        rec = hybrid.create("products", widget)
        hybrid.update("products", rec["id"], {"stock": 7})
        hybrid.update("products", rec["id"], {"name": "Renamed"})
        other = hybrid.create("products", dict(widget, sku="W2"))
        hybrid.delete("products", other["id"])
        assert [e["op"] for e in hybrid.pending()] == ["put", "put", "put", "put", "delete"]

        transport.down = False
        assert hybrid.sync_now() == 5
        final = remote.get("products", rec["id"])
        assert final["stock"] == 7
        assert final["name"] == "Renamed"
        assert _remote_skus(remote) == ["W1"]

    def test_replay_is_idempotent(self, hybrid, remote, transport, backend, widget):
        transport.down = True
        hybrid.create("products", widget)
        transport.down = False
        assert hybrid.sync_now() == 1
        seq_after_first = backend.stats()["change_seq"]

        assert hybrid.sync_now() == 0
        assert backend.stats()["change_seq"] == seq_after_first
        assert len(remote.list("products")) == 1

    def test_delete_of_record_missing_remotely_counts_as_applied(self, hybrid, transport,
                                                                 widget):
        transport.down = True
        rec = hybrid.create("products", widget)
        hybrid.delete("products", rec["id"])
        transport.down = False
        # put then delete: the delete finds the record; a second delete would 404
        hybrid._enqueue({"op": "delete", "collection": "products",
                         "record_id": rec["id"], "record": None})
        assert hybrid.sync_now() == 3
        assert hybrid.queue_length() == 0

    def test_connection_lost_mid_replay(self, hybrid, remote, transport, widget):
        transport.down = True
        for sku in ("A", "B", "C"):
            hybrid.create("products", dict(widget, sku=sku))
        transport.down = False

        original_put = remote.put
        calls = []

        def flaky_put(collection, record):
            calls.append(record["sku"])
            if len(calls) == 2:
                transport.down = True
            return original_put(collection, record)

        remote.put = flaky_put
        applied = hybrid._replay()
        assert applied == 1
        assert hybrid.state == OFFLINE_QUEUED
        assert [e["record"]["sku"] for e in hybrid.pending()] == ["B", "C"]

        remote.put = original_put
        transport.down = False
        hybrid.check_connectivity()
        assert hybrid.state == ONLINE_SYNCED
        assert _remote_skus(remote) == ["A", "B", "C"]

    def test_rejected_entry_dropped_rest_continue(self, hybrid, remote, transport, widget):
        transport.down = True
        hybrid.create("products", widget)
        hybrid.create("products", dict(widget, sku="W2"))
        transport.down = False
        remote.put("products", dict(widget, id="prod_other_client"))

        assert hybrid.sync_now() == 1
        assert hybrid.queue_length() == 0
        assert _remote_skus(remote) == ["W1", "W2"]

    def test_mutations_never_fail_when_offline(self, hybrid, transport, widget, customer,
                                               order_items):
        transport.down = True
        prod = hybrid.create("products", widget)
        hybrid.adjust_stock(prod["id"], -2, "sale")
        quote = hybrid.create("quotations", {"customer_id": customer["id"],
                                             "items": order_items, "status": "sent"})
        order = hybrid.convert_quotation_to_order(quote["id"])
        assert order["quotation_id"] == quote["id"]
        ops = [(e["collection"], e["op"]) for e in hybrid.pending()]
        assert ("stock_movements", "put") in ops
        assert ("orders", "put") in ops


class TestConnectivityEvents:

    def test_network_down_event(self, hybrid, monitor):
        monitor.network_down()
        assert hybrid.state == OFFLINE_QUEUED

    def test_network_up_event_replays(self, hybrid, monitor, transport, remote, widget):
        monitor.network_down()
        hybrid.create("products", widget)
        assert hybrid.queue_length() == 1
        monitor.network_up()
        assert hybrid.state == ONLINE_SYNCED
        assert _remote_skus(remote) == ["W1"]

    def test_up_event_while_still_unreachable(self, hybrid, monitor, transport, widget):
        monitor.network_down()
        transport.down = True
        hybrid.create("products", widget)
        monitor.network_up()
        assert hybrid.state == OFFLINE_QUEUED
        assert hybrid.queue_length() == 1


class TestWatchRemote:

    def test_remote_changes_applied_locally(self, hybrid, transport, widget):
        other = RemoteProvider("http://cloud.test", api_key=hybrid.remote.api_key,
                               session=transport)
        subs = hybrid.watch_remote(["products"], interval=3600)
        rec = other.create("products", widget)
        subs[0].poll()
        assert hybrid.get("products", rec["id"])["sku"] == "W1"

        other.delete("products", rec["id"])
        subs[0].poll()
        with pytest.raises(NotFoundError):
            hybrid.get("products", rec["id"])

    def test_pending_local_change_wins(self, hybrid, transport, widget):
        other = RemoteProvider("http://cloud.test", api_key=hybrid.remote.api_key,
                               session=transport)
        rec = hybrid.create("products", widget)
        subs = hybrid.watch_remote(["products"], interval=3600)

        transport.down = True
        hybrid.update("products", rec["id"], {"stock": 1})
        transport.down = False
        other.update("products", rec["id"], {"stock": 500})
        subs[0].poll()
        assert hybrid.get("products", rec["id"])["stock"] == 1

        hybrid.sync_now()
        assert other.get("products", rec["id"])["stock"] == 1

    def test_local_only_has_nothing_to_watch(self, local):
        coordinator = SyncCoordinator(local, local_only=True)
        assert coordinator.watch_remote() == []


class TestDelegation:

    def test_backup_export_stats(self, hybrid, widget):
        hybrid.create("products", widget)
        handle = hybrid.create_backup()
        assert hybrid.list_backups()[0]["id"] == handle["id"]
        blob = hybrid.export_all()
        hybrid.clear_all()
        hybrid.import_all(blob)
        stats = hybrid.stats()
        assert stats["collections"]["products"] == 1
        assert stats["sync"]["state"] == ONLINE_SYNCED

    def test_status(self, hybrid):
        status = hybrid.status()
        assert status["mode"] == "hybrid"
        assert status["queue_length"] == 0

    def test_collection_view(self, hybrid, remote, widget):
        rec = hybrid.products.create(widget)
        assert remote.get("products", rec["id"])["id"] == rec["id"]


class TestTimer:

    def test_periodic_check_reconnects(self, temp_data_dir, remote, transport, widget):
        local = LocalProvider(RecordStore(os.path.join(temp_data_dir, "timer.db")))
        transport.down = True
        coordinator = SyncCoordinator(local, remote, interval=0.05).start()
        try:
            coordinator.create("products", widget)
            transport.down = False
            deadline = time.time() + 5
            while coordinator.state != ONLINE_SYNCED and time.time() < deadline:
                time.sleep(0.02)
            assert coordinator.state == ONLINE_SYNCED
            assert _remote_skus(remote) == ["W1"]
        finally:
            coordinator.close()

    def test_close_stops_timer(self, local, remote):
        coordinator = SyncCoordinator(local, remote, interval=0.05).start()
        timer = coordinator._timer
        coordinator.close()
        assert timer.cancelled
        assert not timer.running


class TestQueueAtomicity:

    def test_full_store_rejects_write_and_queue_together(self, temp_data_dir, remote,
                                                         transport, widget):
        store = RecordStore(os.path.join(temp_data_dir, "small.db"), quota_bytes=2000)
        local = LocalProvider(store)
        transport.down = True
        coordinator = SyncCoordinator(local, remote, interval=3600).start()
        try:
            created = []
            with pytest.raises(StorageWriteError):
                for n in range(50):
                    created.append(coordinator.create("products",
                                                      dict(widget, sku=f"S{n}"))["id"])
            local_ids = [p["id"] for p in local.list("products")]
            queued_ids = [e["record_id"] for e in coordinator.pending()]
            assert local_ids == created
            assert queued_ids == created
        finally:
            coordinator.close()

    def test_remote_changes_are_not_queued_back(self, hybrid, transport, widget):
        other = RemoteProvider("http://cloud.test", api_key=hybrid.remote.api_key,
                               session=transport)
        subs = hybrid.watch_remote(["products"], interval=3600)
        other.create("products", widget)
        subs[0].poll()
        assert hybrid.queue_length() == 0


class TestReplayConcurrency:

    def test_write_during_replay_does_not_wait_for_remote(self, hybrid, remote, transport,
                                                          widget):
        transport.down = True
        hybrid.create("products", widget)
        transport.down = False

        sending = threading.Event()
        release = threading.Event()
        original_put = remote.put

        def slow_put(collection, record):
            sending.set()
            release.wait(5)
            return original_put(collection, record)

        remote.put = slow_put
        worker = threading.Thread(target=hybrid.sync_now)
        worker.start()
        try:
            assert sending.wait(5)
            started = time.time()
            hybrid.create("customers", {"name": "Walk-in"})
            elapsed = time.time() - started
        finally:
            release.set()
            worker.join(5)
            remote.put = original_put

        assert elapsed < 0.5
        assert hybrid.state == ONLINE_SYNCED
        assert hybrid.queue_length() == 0
        assert [c["name"] for c in remote.list("customers")] == ["Walk-in"]
