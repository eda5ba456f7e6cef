"""
Cloud backend state: a LocalProvider plus a sequence-numbered change log.

Every successful mutation appends {seq, collection, kind, id, record, at}
to the log. Clients read it through changes(collection, since) to learn
about edits made by anyone, themselves included. The log is kept in the
record store under "_changes" and trimmed to the newest MAX_CHANGES.
"""

import logging
import threading

from chabs.core.errors import NotFoundError
from chabs.core.models import now_iso

log = logging.getLogger("chabs.api.backend")

CHANGES_KEY = "_changes"
MAX_CHANGES = 5000


class CloudBackend:

    def __init__(self, provider, max_changes: int = MAX_CHANGES):
        self.provider = provider
        self.store = provider.store
        self.max_changes = max_changes
        self._lock = threading.RLock()
        changes = self.store.read_collection(CHANGES_KEY)
        self._seq = changes[-1]["seq"] if changes else 0

    # Reads
    def list(self, collection):
        return self.provider.list(collection)

    def get(self, collection, record_id):
        return self.provider.get(collection, record_id)

    # Mutations
    def create(self, collection, draft):
        with self._lock:
            record = self.provider.create(collection, draft)
            self._record(collection, "created", record["id"], record)
        return record

    def update(self, collection, record_id, partial):
        with self._lock:
            before = self.provider.get(collection, record_id)
            record = self.provider.update(collection, record_id, partial)
            if record != before:
                self._record(collection, "updated", record_id, record)
        return record

    def put(self, collection, record):
        """Upsert. Returns (record, created)."""
        with self._lock:
            try:
                self.provider.get(collection, record.get("id"))
                created = False
            except NotFoundError:
                created = True
            stored = self.provider.put(collection, record)
            self._record(collection, "created" if created else "updated", stored["id"], stored)
        return stored, created

    def delete(self, collection, record_id):
        with self._lock:
            self.provider.delete(collection, record_id)
            self._record(collection, "deleted", record_id, {"id": record_id})

    # Change feed
    def _record(self, collection, kind, record_id, record):
        self._seq += 1
        changes = self.store.read_collection(CHANGES_KEY)
        changes.append({"seq": self._seq, "collection": collection, "kind": kind,
                        "id": record_id, "record": record, "at": now_iso()})
        self.store.write_collection(CHANGES_KEY, changes[-self.max_changes:])
        log.debug("change #%d %s %s %s", self._seq, kind, collection, record_id)

    def changes(self, collection, since=None):
        """(changes after `since` for `collection`, latest seq)."""
        with self._lock:
            latest = self._seq
            if since is None:
                return [], latest
            out = [c for c in self.store.read_collection(CHANGES_KEY)
                   if c["collection"] == collection and c["seq"] > since]
        return out, latest

    def stats(self):
        out = self.provider.stats()
        out["change_seq"] = self._seq
        return out
