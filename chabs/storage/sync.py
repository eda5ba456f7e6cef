"""
chabs/storage/sync.py — Sync Coordinator (hybrid provider)

Wraps a LocalProvider and a RemoteProvider behind the provider contract.
Local is written first and is what the caller gets back; Remote is then
mirrored right away or, when it cannot be reached, the mutation goes to a
durable replay queue kept in the record store under "_sync_queue".

States:
  LOCAL_ONLY      remote never touched
  ONLINE_SYNCED   mutations mirrored as they happen
  ONLINE_SYNCING  replaying the queue; new mutations are queued behind it
  OFFLINE_QUEUED  remote unreachable; mutations queued

Every local mutation is committed together with its queue entry in one
store transaction (the Local provider's journal hook), so a write that
fails leaves neither behind. Online, the queue is drained right after the
write; offline it simply grows.

Replay sends full snapshots with put() and deletes with delete(), oldest
first. Each applied entry leaves the queue immediately, so a connection
lost mid-replay keeps only the entries that were not applied. The lock is
never held across a remote call: one drain runs at a time, and mutations
made meanwhile are appended behind it.

Local is authoritative: a concurrent remote edit is overwritten on replay
unless the remote change feed already brought it into Local.
"""

import logging
import threading

from chabs.core.errors import ChabsError, NotFoundError, RemoteUnavailableError
from chabs.core.models import COLLECTIONS, now_iso
from chabs.core.scheduler import RepeatingTask, ConnectivityMonitor
from chabs.storage.base import ProviderBase

log = logging.getLogger("chabs.sync")

LOCAL_ONLY = "LOCAL_ONLY"
ONLINE_SYNCED = "ONLINE_SYNCED"
ONLINE_SYNCING = "ONLINE_SYNCING"
OFFLINE_QUEUED = "OFFLINE_QUEUED"
STATES = (LOCAL_ONLY, ONLINE_SYNCED, ONLINE_SYNCING, OFFLINE_QUEUED)

QUEUE_KEY = "_sync_queue"
DEFAULT_INTERVAL = 30.0


class SyncCoordinator(ProviderBase):
    """Local-first provider that keeps a remote copy in step."""

    kind = "hybrid"

    def __init__(self, local, remote=None, monitor: ConnectivityMonitor = None,
                 interval: float = DEFAULT_INTERVAL, local_only: bool = False):
        self.local = local
        self.remote = remote
        self.monitor = monitor or ConnectivityMonitor()
        self.interval = interval
        self.last_sync = None
        self.last_error = None
        self._lock = threading.RLock()
        self._state = LOCAL_ONLY if (local_only or remote is None) else OFFLINE_QUEUED
        self._replaying = False
        self._listeners = []
        self._timer = None
        self._unsubscribe = None
        self._watches = []
        queue = self._read_queue()
        self._seq = max((e.get("seq", 0) for e in queue), default=0)
        if self._state != LOCAL_ONLY:
            # stays attached after close() so mutations made while stopped
            # are replayed at the next start()
            local.journal = self._journal

    # ── Lifecycle ─────────────────────────────────────────────────────────────
    def start(self):
        """Probe the remote once, replay any persisted queue, start the timer."""
        if self._state == LOCAL_ONLY:
            log.info("Sync coordinator in local-only mode", extra={"state": LOCAL_ONLY})
            return self
        health = self.remote.health_check()
        if health["reachable"]:
            self._set_state(ONLINE_SYNCED)
            if self._read_queue():
                self._replay()
        else:
            self._set_state(OFFLINE_QUEUED)
            log.info("Remote unreachable at start, queueing mutations",
                     extra={"state": OFFLINE_QUEUED, "queue_len": self.queue_length()})
        self._unsubscribe = self.monitor.subscribe(self._on_connectivity)
        self._timer = RepeatingTask(self.interval, self.check_connectivity,
                                    name="chabs-sync-health").start()
        return self

    def close(self):
        if self._timer:
            self._timer.cancel()
            self._timer = None
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        for sub in self._watches:
            sub.cancel()
        self._watches = []
        if self.remote is not None:
            self.remote.close()
        self.local.close()
        log.info("Sync coordinator closed", extra={"state": self._state})

    # ── State machine ─────────────────────────────────────────────────────────
    @property
    def state(self) -> str:
        return self._state

    def on_state_change(self, listener):
        """Register listener(old, new). Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _set_state(self, new: str):
        with self._lock:
            old = self._state
            if old == new:
                return
            self._state = new
        log.info("Sync state %s -> %s", old, new,
                 extra={"state": new, "queue_len": self.queue_length()})
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception as e:
                log.error("State listener failed: %s", e, exc_info=True)

    def check_connectivity(self) -> dict:
        """Periodic health check. Demotes when unreachable, replays when back."""
        if self._state == LOCAL_ONLY:
            return {"reachable": False, "latency_ms": 0.0}
        health = self.remote.health_check()
        if not health["reachable"]:
            if self._state != OFFLINE_QUEUED:
                self._set_state(OFFLINE_QUEUED)
            return health
        if self._state == OFFLINE_QUEUED or self._read_queue():
            self._replay()
        return health

    def _on_connectivity(self, online: bool):
        if self._state == LOCAL_ONLY:
            return
        if not online:
            self._set_state(OFFLINE_QUEUED)
        elif self._state == OFFLINE_QUEUED:
            self._replay()

    def sync_now(self) -> int:
        """Replay the queue now if the remote answers. Returns entries applied."""
        if self._state == LOCAL_ONLY:
            return 0
        if not self.remote.health_check()["reachable"]:
            self._set_state(OFFLINE_QUEUED)
            return 0
        return self._replay()

    def status(self) -> dict:
        return {
            "mode": self.kind,
            "state": self._state,
            "queue_length": self.queue_length(),
            "last_sync": self.last_sync,
            "last_error": self.last_error,
        }

    # ── Replay queue ──────────────────────────────────────────────────────────
    def _read_queue(self) -> list:
        return self.local.store.read_collection(QUEUE_KEY)

    def queue_length(self) -> int:
        return len(self._read_queue())

    def pending(self) -> list:
        return self._read_queue()

    def _journal(self, writes: dict, changes: list):
        """Commit Local's `writes` and the queue entries for `changes` together."""
        with self._lock:
            queue = self._read_queue()
            added = []
            for op, collection, record_id, record in changes:
                self._seq += 1
                added.append({"op": op, "collection": collection, "record_id": record_id,
                              "record": record, "seq": self._seq, "queued_at": now_iso()})
            queue.extend(added)
            batch = dict(writes)
            batch[QUEUE_KEY] = queue
            self.local.store.write_many(batch)
        for entry in added:
            log.info("Queued %s %s %s", entry["op"], entry["collection"], entry["record_id"],
                     extra={"collection": entry["collection"], "record_id": entry["record_id"],
                            "op": entry["op"], "queue_len": len(queue)})

    def _enqueue(self, entry: dict):
        self._journal({}, [(entry["op"], entry["collection"], entry["record_id"],
                            entry.get("record"))])

    def _dequeue(self, entry: dict):
        with self._lock:
            queue = [e for e in self._read_queue() if e.get("seq") != entry.get("seq")]
            self.local.store.write_collection(QUEUE_KEY, queue)

    def _replay(self, announce: bool = True) -> int:
        """Drain the queue oldest first. Returns how many entries were applied.

        With announce=False (mirroring right after a write while online) the
        state is left alone unless the remote turns out to be unreachable.
        """
        with self._lock:
            if self._replaying:
                return 0
            self._replaying = True
        applied = 0
        released = False
        try:
            if announce:
                self._set_state(ONLINE_SYNCING)
            while True:
                with self._lock:
                    queue = self._read_queue()
                    if not queue:
                        # finish under the lock so a write landing now is
                        # either seen here or mirrored by its caller
                        self._replaying = False
                        released = True
                        self.last_sync = now_iso()
                        if announce:
                            self._set_state(ONLINE_SYNCED)
                        break
                entry = queue[0]
                try:
                    self._send(entry)
                    applied += 1
                except RemoteUnavailableError as e:
                    self.last_error = str(e)
                    log.warning("Replay stopped after %d entries: %s", applied, e,
                                extra={"queue_len": len(queue)})
                    self._set_state(OFFLINE_QUEUED)
                    return applied
                except ChabsError as e:
                    self.last_error = str(e)
                    log.error("Remote rejected queued %s %s %s, dropping it: %s",
                              entry["op"], entry["collection"], entry["record_id"], e,
                              extra={"collection": entry["collection"],
                                     "record_id": entry["record_id"]})
                self._dequeue(entry)
        finally:
            if not released:
                with self._lock:
                    self._replaying = False
        if applied and announce:
            log.info("Replayed %d queued mutations", applied, extra={"queue_len": 0})
        return applied

    def _send(self, entry: dict):
        if entry["op"] == "delete":
            try:
                self.remote.delete(entry["collection"], entry["record_id"])
            except NotFoundError:
                pass  # already gone
        else:
            self.remote.put(entry["collection"], entry["record"])

    def _mirror(self):
        """Push what the last write queued, if the remote is believed up."""
        if self._state == ONLINE_SYNCED:
            self._replay(announce=False)

    # ── CRUD: reads from Local, writes Local first ───────────────────────────
    def list(self, collection: str) -> list:
        return self.local.list(collection)

    def get(self, collection: str, record_id: str) -> dict:
        return self.local.get(collection, record_id)

    def create(self, collection: str, draft: dict) -> dict:
        record = self.local.create(collection, draft)
        self._mirror()
        return record

    def update(self, collection: str, record_id: str, partial: dict) -> dict:
        record = self.local.update(collection, record_id, partial)
        self._mirror()
        return record

    def delete(self, collection: str, record_id: str) -> None:
        self.local.delete(collection, record_id)
        self._mirror()

    def put(self, collection: str, record: dict) -> dict:
        stored = self.local.put(collection, record)
        self._mirror()
        return stored

    # ── Remote → Local ────────────────────────────────────────────────────────
    def watch_remote(self, collections=None, interval: float = None) -> list:
        """Apply remote changes to Local for the given collections (default all)."""
        if self._state == LOCAL_ONLY:
            return []
        subs = []
        for name in collections or COLLECTIONS:
            handler = self._remote_change_handler(name)
            subs.append(self.remote.subscribe(name, handler, interval=interval))
        self._watches.extend(subs)
        return subs

    def _remote_change_handler(self, collection: str):
        def apply(record: dict, kind: str):
            record_id = record.get("id")
            with self._lock:
                pending = any(e["collection"] == collection and e["record_id"] == record_id
                              for e in self._read_queue())
            if pending:
                log.info("Remote %s of %s %s ignored, local change pending",
                         kind, collection, record_id,
                         extra={"collection": collection, "record_id": record_id})
                return
            try:
                if kind == "deleted":
                    self.local.delete(collection, record_id, journal=False)
                else:
                    self.local.put(collection, record, journal=False)
            except NotFoundError:
                pass
            except ChabsError as e:
                log.warning("Remote %s of %s %s not applied locally: %s",
                            kind, collection, record_id, e,
                            extra={"collection": collection, "record_id": record_id})
        return apply

    # ── Composite operations ──────────────────────────────────────────────────
    def adjust_stock(self, product_id: str, delta, reason: str = "") -> dict:
        movement = self.local.adjust_stock(product_id, delta, reason)
        self._mirror()
        return movement

    def convert_quotation_to_order(self, quotation_id: str) -> dict:
        order = self.local.convert_quotation_to_order(quotation_id)
        self._mirror()
        return order

    def low_stock_products(self) -> list:
        return self.local.low_stock_products()

    def resolve_customer(self, customer_id: str) -> dict:
        return self.local.resolve_customer(customer_id)

    # ── Delegated to Local ────────────────────────────────────────────────────
    def create_backup(self) -> dict:
        return self.local.create_backup()

    def list_backups(self) -> list:
        return self.local.list_backups()

    def restore_backup(self, handle) -> dict:
        return self.local.restore_backup(handle)

    def export_all(self) -> str:
        return self.local.export_all()

    def import_all(self, blob: str) -> dict:
        return self.local.import_all(blob)

    def stats(self) -> dict:
        out = self.local.stats()
        out["sync"] = self.status()
        return out

    def clear_all(self):
        self.local.clear_all()
