"""
chabs/storage/record_store.py — Keyed-collection persistence primitive

One SQLite file holds a single key/value table. Each key is a collection
name and each value is that collection encoded as one JSON array, the same
shape the browser key-value store held in the web client:

  records(name TEXT PRIMARY KEY, value TEXT, size INTEGER, updated_at TEXT)

Contract:
  read_collection   never raises; absent or undecodable -> [] + warning
  write_collection  StorageWriteError when the medium refuses (SQLite error,
                    or the byte quota would be exceeded)
  write_many        several collections in one transaction, all or nothing

The medium is probed once at construction; an unusable file raises
StorageUnavailableError there instead of on every call.
No business validation happens here.
"""

import os
import json
import sqlite3
import logging
import threading
from datetime import datetime
from contextlib import contextmanager

from chabs.core.errors import StorageWriteError, StorageUnavailableError

log = logging.getLogger("chabs.store")

DEFAULT_QUOTA = 5 * 1024 * 1024

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    name        TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    size        INTEGER NOT NULL DEFAULT 0,
    updated_at  TEXT NOT NULL
);
"""

_PROBE_KEY = "__probe__"


class RecordStore:
    """Named JSON-array collections inside one SQLite file."""

    def __init__(self, db_path: str, quota_bytes: int = DEFAULT_QUOTA):
        self.db_path = db_path
        self.quota_bytes = quota_bytes
        self._lock = threading.RLock()
        self._check_capability()

    # ── Connection factory ────────────────────────────────────────────────────
    @contextmanager
    def _connect(self):
        """Serialized SQLite connection, committed on success."""
        with self._lock:
            conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _check_capability(self):
        try:
            parent = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(parent, exist_ok=True)
            with self._connect() as conn:
                conn.executescript(SCHEMA)
                conn.execute(
                    "INSERT OR REPLACE INTO records (name, value, size, updated_at) "
                    "VALUES (?, '[]', 2, ?)", (_PROBE_KEY, datetime.now().isoformat()))
                conn.execute("DELETE FROM records WHERE name=?", (_PROBE_KEY,))
        except (sqlite3.Error, OSError) as e:
            log.error("Record store unavailable at %s: %s", self.db_path, e)
            raise StorageUnavailableError(
                f"record store at {self.db_path} is not usable: {e}") from e
        log.info("Record store ready at %s (quota=%d bytes)", self.db_path, self.quota_bytes)

    # ── Reads ─────────────────────────────────────────────────────────────────
    def read_collection(self, name: str) -> list:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM records WHERE name=?",
                                   (name,)).fetchone()
        except sqlite3.Error as e:
            log.warning("read_collection %s failed, treating as empty: %s", name, e)
            return []
        if row is None:
            return []
        try:
            data = json.loads(row[0])
        except ValueError as e:
            log.warning("Collection %s is malformed, treating as empty: %s", name, e)
            return []
        if not isinstance(data, list):
            log.warning("Collection %s is not an array (%s), treating as empty",
                        name, type(data).__name__)
            return []
        return data

    def exists(self, name: str) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT 1 FROM records WHERE name=?", (name,)).fetchone()
        except sqlite3.Error as e:
            log.warning("exists %s failed: %s", name, e)
            return False
        return row is not None

    def names(self) -> list:
        with self._connect() as conn:
            rows = conn.execute("SELECT name FROM records ORDER BY name").fetchall()
        return [r[0] for r in rows]

    def size_of(self, name: str) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT size FROM records WHERE name=?", (name,)).fetchone()
        return row[0] if row else 0

    def total_bytes(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COALESCE(SUM(size), 0) FROM records").fetchone()
        return row[0]

    # ── Writes ────────────────────────────────────────────────────────────────
    def write_collection(self, name: str, records) -> None:
        self.write_many({name: records})

    def write_many(self, collections: dict) -> None:
        """Replace several collections atomically."""
        encoded = {}
        for name, records in collections.items():
            try:
                encoded[name] = json.dumps(list(records), separators=(",", ":"))
            except (TypeError, ValueError) as e:
                raise StorageWriteError(f"{name}: records are not JSON-serializable: {e}") from e
        self._write_encoded(encoded)

    def write_raw(self, name: str, value: str) -> None:
        """Store an already-encoded value verbatim (imports, repair tools)."""
        self._write_encoded({name: value})

    def remove(self, name: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute("DELETE FROM records WHERE name=?", (name,))
                return cur.rowcount > 0
        except sqlite3.Error as e:
            raise StorageWriteError(f"remove {name} failed: {e}") from e

    def _write_encoded(self, encoded: dict) -> None:
        now = datetime.now().isoformat()
        sizes = {name: len(value.encode("utf-8")) for name, value in encoded.items()}
        try:
            with self._connect() as conn:
                if self.quota_bytes:
                    placeholders = ",".join("?" for _ in encoded)
                    others = conn.execute(
                        f"SELECT COALESCE(SUM(size), 0) FROM records "
                        f"WHERE name NOT IN ({placeholders})",
                        tuple(encoded)).fetchone()[0]
                    projected = others + sum(sizes.values())
                    if projected > self.quota_bytes:
                        raise StorageWriteError(
                            f"quota exceeded writing {', '.join(encoded)}: "
                            f"{projected} > {self.quota_bytes} bytes")
                conn.executemany(
                    "INSERT INTO records (name, value, size, updated_at) VALUES (?,?,?,?) "
                    "ON CONFLICT(name) DO UPDATE SET value=excluded.value, "
                    "size=excluded.size, updated_at=excluded.updated_at",
                    [(name, value, sizes[name], now) for name, value in encoded.items()])
        except StorageWriteError as e:
            log.warning("Write rejected: %s", e)
            raise
        except sqlite3.Error as e:
            log.warning("Write failed for %s: %s", ", ".join(encoded), e)
            raise StorageWriteError(f"write failed for {', '.join(encoded)}: {e}") from e
