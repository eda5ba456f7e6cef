"""
chabs/storage/local.py — Local Provider

CRUD, backups, export/import and inventory helpers for every CHABS
collection, persisted through a RecordStore. All calls are synchronous and
every mutation is a read-modify-write under one provider lock.

Reserved store keys (never exported):
  _backups     point-in-time snapshots, newest last, at most max_backups
  _counters    per-period document number counters

With start_auto_backup(interval) a background task snapshots every
collection on that period, inside the same max_backups window.
"""

import json
import logging
import threading
from datetime import datetime

from chabs.core.errors import (
    ValidationError, DuplicateSkuError, DuplicateEmailError,
    NotFoundError, InvalidBackupError,
)
from chabs.core.models import (
    SCHEMA_VERSION, COLLECTIONS, NUMBERED,
    new_id, now_iso, normalize, apply_defaults, validate,
    check_status_transition, compute_totals, strip_derived,
    customer_placeholder,
)
from chabs.core.scheduler import RepeatingTask
from chabs.storage.base import ProviderBase

log = logging.getLogger("chabs.local")

BACKUPS_KEY = "_backups"
COUNTERS_KEY = "_counters"
DEFAULT_MAX_BACKUPS = 5

# Statuses a quotation may be converted to an order from
CONVERTIBLE_QUOTES = ("sent", "accepted")


class LocalProvider(ProviderBase):
    """Provider over a RecordStore on this machine."""

    kind = "local"

    def __init__(self, store, max_backups: int = DEFAULT_MAX_BACKUPS):
        self.store = store
        self.max_backups = max(1, int(max_backups))
        self._lock = threading.RLock()
        # journal(writes, changes) commits `writes` together with its own
        # record of `changes`; set by the sync coordinator
        self.journal = None
        self._auto_backup = None

    def _commit(self, writes: dict, changes: list, journal: bool = True):
        """Persist `writes` in one transaction.

        `changes` lists (op, collection, record_id, record) tuples for
        whoever journals mutations; restores and imports do not pass here.
        """
        if journal and self.journal is not None:
            self.journal(writes, changes)
        else:
            self.store.write_many(writes)

    def close(self):
        self.stop_auto_backup()

    # ── CRUD ──────────────────────────────────────────────────────────────────
    def list(self, collection: str) -> list:
        self._check_collection(collection)
        return self.store.read_collection(collection)

    def get(self, collection: str, record_id: str) -> dict:
        self._check_collection(collection)
        for rec in self.store.read_collection(collection):
            if rec.get("id") == record_id:
                return rec
        raise NotFoundError(collection, record_id)

    def create(self, collection: str, draft: dict) -> dict:
        self._check_collection(collection)
        if not isinstance(draft, dict):
            raise ValidationError(["record must be an object"], collection)
        draft = strip_derived(collection, normalize(collection, draft))
        with self._lock:
            records = self.store.read_collection(collection)
            record = apply_defaults(collection, draft)
            record["id"] = draft.get("id") or new_id(collection)
            if any(r.get("id") == record["id"] for r in records):
                raise ValidationError([f"id '{record['id']}' already exists"], collection)
            record["created_at"] = draft.get("created_at") or now_iso()
            record.pop("updated_at", None)

            writes = {}
            if collection in NUMBERED:
                writes[COUNTERS_KEY] = self._assign_number(collection, record, records)
                record = compute_totals(collection, record)
            self._validate(collection, record, records)

            records.append(record)
            writes[collection] = records
            self._commit(writes, [("put", collection, record["id"], record)])
        log.info("create %s %s", collection, record["id"],
                 extra={"collection": collection, "record_id": record["id"], "op": "create"})
        return dict(record)

    def update(self, collection: str, record_id: str, partial: dict) -> dict:
        self._check_collection(collection)
        if not isinstance(partial, dict):
            raise ValidationError(["update must be an object"], collection)
        partial = strip_derived(collection, normalize(collection, partial))
        for key in ("id", "created_at", "updated_at"):
            partial.pop(key, None)
        with self._lock:
            records = self.store.read_collection(collection)
            idx = self._index_of(records, record_id)
            if idx is None:
                raise NotFoundError(collection, record_id)
            old = records[idx]
            merged = dict(old)
            merged.update(partial)
            if collection in NUMBERED:
                merged = compute_totals(collection, merged)
            if merged == old:
                return dict(old)

            transition = check_status_transition(collection, old.get("status"),
                                                 merged.get("status"))
            if not transition["ok"]:
                raise ValidationError(transition["errors"], collection)
            self._validate(collection, merged, records, skip=record_id)

            merged["updated_at"] = now_iso()
            records[idx] = merged
            self._commit({collection: records}, [("put", collection, record_id, merged)])
        log.info("update %s %s (%s)", collection, record_id, ", ".join(sorted(partial)),
                 extra={"collection": collection, "record_id": record_id, "op": "update"})
        return dict(merged)

    def delete(self, collection: str, record_id: str, journal: bool = True) -> None:
        self._check_collection(collection)
        with self._lock:
            records = self.store.read_collection(collection)
            idx = self._index_of(records, record_id)
            if idx is None:
                raise NotFoundError(collection, record_id)
            del records[idx]
            self._commit({collection: records}, [("delete", collection, record_id, None)],
                         journal=journal)
        log.info("delete %s %s", collection, record_id,
                 extra={"collection": collection, "record_id": record_id, "op": "delete"})

    def put(self, collection: str, record: dict, journal: bool = True) -> dict:
        """Insert or replace a complete record, keeping its id.

        journal=False applies a change that came from the remote, so it is
        not queued to go back there.
        """
        self._check_collection(collection)
        if not isinstance(record, dict) or not record.get("id"):
            raise ValidationError(["put needs a record with an id"], collection)
        record = apply_defaults(collection, normalize(collection, record))
        with self._lock:
            records = self.store.read_collection(collection)
            idx = self._index_of(records, record["id"])
            if not record.get("created_at"):
                previous = records[idx].get("created_at") if idx is not None else None
                record["created_at"] = previous or now_iso()

            writes = {}
            if collection in NUMBERED:
                field, _ = NUMBERED[collection]
                if not record.get(field):
                    writes[COUNTERS_KEY] = self._assign_number(collection, record, records)
                record = compute_totals(collection, record)
            self._validate(collection, record, records, skip=record["id"])

            if idx is None:
                records.append(record)
            else:
                records[idx] = record
            writes[collection] = records
            self._commit(writes, [("put", collection, record["id"], record)], journal=journal)
        log.info("put %s %s", collection, record["id"],
                 extra={"collection": collection, "record_id": record["id"], "op": "put"})
        return dict(record)

    # ── Validation helpers ────────────────────────────────────────────────────
    def _validate(self, collection, record, records, skip=None):
        result = validate(collection, record)
        if not result["ok"]:
            raise ValidationError(result["errors"], collection)
        others = [r for r in records if r.get("id") != skip]
        if collection == "products":
            sku = record.get("sku")
            if any(r.get("sku") == sku for r in others):
                raise DuplicateSkuError(sku)
        elif collection == "users":
            email = (record.get("email") or "").strip().lower()
            if any((r.get("email") or "").strip().lower() == email for r in others):
                raise DuplicateEmailError(record.get("email"))
        elif collection == "quotations":
            number = record.get("quote_number")
            if number and any(r.get("quote_number") == number for r in others):
                raise ValidationError([f"quote_number '{number}' already exists"], collection)

    @staticmethod
    def _index_of(records, record_id):
        for i, rec in enumerate(records):
            if rec.get("id") == record_id:
                return i
        return None

    def _assign_number(self, collection, record, records) -> list:
        """Give `record` the next document number. Returns the new counters list.

        Orders and purchase orders number per day (ORD-20260301-0001),
        quotations per calendar year (QT-2026-0001). The next value is one
        past both the stored counter and the highest number already in use,
        so imported records never collide with fresh ones.
        """
        field, prefix = NUMBERED[collection]
        now = datetime.now()
        period = now.strftime("%Y") if collection == "quotations" else now.strftime("%Y%m%d")
        stem = f"{prefix}-{period}-"

        highest = 0
        for rec in records:
            number = str(rec.get(field) or "")
            tail = number[len(stem):]
            if number.startswith(stem) and tail.isdigit():
                highest = max(highest, int(tail))

        counters = self.store.read_collection(COUNTERS_KEY)
        row = next((c for c in counters if c.get("key") == stem), None)
        if row is None:
            row = {"key": stem, "value": 0}
            counters.append(row)
        row["value"] = max(int(row.get("value") or 0), highest) + 1
        record[field] = f"{stem}{row['value']:04d}"
        return counters

    # ── Backups ───────────────────────────────────────────────────────────────
    def _snapshot(self) -> dict:
        return {name: self.store.read_collection(name) for name in COLLECTIONS}

    def create_backup(self) -> dict:
        """Snapshot every collection. Returns the handle {id, created_at, schema_version}."""
        with self._lock:
            handle = {
                "id": new_id("_backups", prefix="backup"),
                "created_at": now_iso(),
                "schema_version": SCHEMA_VERSION,
            }
            backups = self.store.read_collection(BACKUPS_KEY)
            backups.append(dict(handle, data=self._snapshot()))
            evicted = backups[:-self.max_backups]
            backups = backups[-self.max_backups:]
            self.store.write_collection(BACKUPS_KEY, backups)
        for old in evicted:
            log.info("Backup %s evicted (keeping %d)", old.get("id"), self.max_backups)
        log.info("Backup %s created", handle["id"], extra={"op": "backup"})
        return handle

    def start_auto_backup(self, interval: float):
        """Create a backup every `interval` seconds until stop_auto_backup()."""
        self.stop_auto_backup()
        self._auto_backup = RepeatingTask(interval, self.create_backup,
                                          name="chabs-auto-backup").start()
        log.info("Auto backup every %.0fs", interval, extra={"op": "backup"})
        return self._auto_backup

    def stop_auto_backup(self):
        if self._auto_backup is not None:
            self._auto_backup.cancel()
            self._auto_backup = None

    def list_backups(self) -> list:
        return [{"id": b.get("id"), "created_at": b.get("created_at"),
                 "schema_version": b.get("schema_version")}
                for b in self.store.read_collection(BACKUPS_KEY)]

    def restore_backup(self, handle) -> dict:
        """Replace all collections with a backup. Nothing changes on failure."""
        backup_id = handle.get("id") if isinstance(handle, dict) else handle
        backup = next((b for b in self.store.read_collection(BACKUPS_KEY)
                       if b.get("id") == backup_id), None)
        if backup is None:
            raise InvalidBackupError(f"no backup with id '{backup_id}'")
        data = self._check_snapshot(backup.get("schema_version"), backup.get("data"))
        with self._lock:
            self.store.write_many(data)
        counts = {name: len(rows) for name, rows in data.items()}
        log.info("Restored backup %s (%d records)", backup_id, sum(counts.values()),
                 extra={"op": "restore"})
        return counts

    @staticmethod
    def _check_snapshot(version, data) -> dict:
        if version != SCHEMA_VERSION:
            raise InvalidBackupError(
                f"unsupported schema version {version!r} (expected {SCHEMA_VERSION})")
        if not isinstance(data, dict):
            raise InvalidBackupError("snapshot is not an object")
        out = {}
        for name in COLLECTIONS:
            rows = data.get(name, [])
            if not isinstance(rows, list):
                raise InvalidBackupError(f"{name} is not an array")
            for i, row in enumerate(rows):
                if not isinstance(row, dict) or not row.get("id"):
                    raise InvalidBackupError(f"{name}[{i}] is not a record with an id")
            out[name] = rows
        return out

    # ── Export / import ───────────────────────────────────────────────────────
    def export_all(self) -> str:
        doc = {"schema_version": SCHEMA_VERSION, "exported_at": now_iso()}
        doc.update(self._snapshot())
        return json.dumps(doc, indent=2, default=str)

    def import_all(self, blob: str) -> dict:
        """Replace every collection with the contents of an export blob."""
        try:
            doc = json.loads(blob)
        except (TypeError, ValueError) as e:
            raise InvalidBackupError(f"export is not valid JSON: {e}") from e
        if not isinstance(doc, dict):
            raise InvalidBackupError("export must be a JSON object")
        data = self._check_snapshot(doc.get("schema_version"),
                                    {k: v for k, v in doc.items() if k in COLLECTIONS})
        with self._lock:
            self.store.write_many(data)
        counts = {name: len(rows) for name, rows in data.items()}
        log.info("Imported %d records", sum(counts.values()), extra={"op": "import"})
        return counts

    def stats(self) -> dict:
        counts = {name: len(self.store.read_collection(name)) for name in COLLECTIONS}
        return {
            "schema_version": SCHEMA_VERSION,
            "collections": counts,
            "total_records": sum(counts.values()),
            "approx_bytes": self.store.total_bytes(),
            "backups": len(self.store.read_collection(BACKUPS_KEY)),
        }

    def clear_all(self):
        with self._lock:
            empty = {name: [] for name in COLLECTIONS}
            empty[COUNTERS_KEY] = []
            self.store.write_many(empty)
        log.warning("All collections cleared", extra={"op": "clear"})

    # ── Inventory helpers ─────────────────────────────────────────────────────
    def adjust_stock(self, product_id: str, delta, reason: str = "") -> dict:
        """Apply a signed stock change and record it. Returns the movement."""
        if not isinstance(delta, int) or isinstance(delta, bool):
            raise ValidationError(["stock delta must be a whole number"], "stock_movements")
        with self._lock:
            products = self.store.read_collection("products")
            idx = self._index_of(products, product_id)
            if idx is None:
                raise NotFoundError("products", product_id)
            product = dict(products[idx])
            new_stock = int(product.get("stock") or 0) + delta
            if new_stock < 0:
                raise ValidationError(
                    [f"stock for {product.get('sku')} cannot go below zero "
                     f"(have {product.get('stock')}, change {delta})"], "products")
            product["stock"] = new_stock
            product["updated_at"] = now_iso()
            products[idx] = product

            movement = {
                "id": new_id("stock_movements"),
                "product_id": product_id,
                "quantity": delta,
                "reason": reason,
                "stock_after": new_stock,
                "created_at": now_iso(),
            }
            movements = self.store.read_collection("stock_movements")
            movements.append(movement)
            self._commit({"products": products, "stock_movements": movements},
                         [("put", "products", product_id, product),
                          ("put", "stock_movements", movement["id"], movement)])
        log.info("Stock %s %+d -> %d (%s)", product.get("sku"), delta, new_stock,
                 reason or "no reason",
                 extra={"collection": "products", "record_id": product_id, "op": "adjust_stock"})
        return movement

    def low_stock_products(self) -> list:
        """Products at or below minimum stock, with a suggested reorder quantity."""
        out = []
        for p in self.store.read_collection("products"):
            stock = p.get("stock") or 0
            minimum = p.get("minimum_stock") or 0
            if stock <= minimum:
                maximum = p.get("maximum_stock") or 0
                out.append(dict(p, reorder_quantity=max(maximum - stock, minimum * 2)))
        return out

    def resolve_customer(self, customer_id: str) -> dict:
        try:
            return self.get("customers", customer_id)
        except NotFoundError:
            log.warning("Customer %s not found, using placeholder", customer_id,
                        extra={"collection": "customers", "record_id": customer_id})
            return customer_placeholder(customer_id)

    def convert_quotation_to_order(self, quotation_id: str) -> dict:
        """Create an order from a sent or accepted quotation and mark it accepted.

        A quotation-level discount is folded into each line so the order
        total matches the quoted total.
        """
        with self._lock:
            quote = self.get("quotations", quotation_id)
            if quote.get("order_id"):
                raise ValidationError(
                    [f"quotation {quote.get('quote_number')} already converted"], "quotations")
            if quote.get("status") not in CONVERTIBLE_QUOTES:
                raise ValidationError(
                    [f"only {' or '.join(CONVERTIBLE_QUOTES)} quotations can become orders"],
                    "quotations")
            header = quote.get("discount") or 0
            items = []
            for it in quote.get("items") or []:
                line = {k: v for k, v in it.items() if k != "total"}
                if header:
                    line_disc = line.get("discount") or 0
                    combined = 100 - (100 - line_disc) * (100 - header) / 100.0
                    line["discount"] = round(combined, 4)
                items.append(line)
            order = self.create("orders", {
                "customer_id": quote["customer_id"],
                "items": items,
                "tax_rate": quote.get("tax_rate", 0),
                "quotation_id": quotation_id,
                "notes": quote.get("notes", ""),
            })
            self.update("quotations", quotation_id,
                        {"status": "accepted", "order_id": order["id"]})
        log.info("Quotation %s converted to order %s", quote.get("quote_number"),
                 order["order_number"], extra={"op": "convert", "record_id": order["id"]})
        return order
