"""
chabs/core/models.py — Entity schemas, defaults, validation, derived totals

Entities are plain dicts with snake_case keys. Each collection has one
entry in SCHEMAS describing:

  prefix    id prefix ("prod" -> prod_1718000000000_a1b2c3d4)
  required  fields that must be present and non-empty at create
  defaults  values filled in when a draft omits them
  numbers   fields that must be numbers >= 0 (strings like "12.5" are coerced)
  integers  fields that must be whole numbers >= 0
  enums     field -> allowed values
  derived   fields recomputed on every save (caller values ignored)

validate() never raises; it returns {"ok": bool, "errors": [str]} and the
provider decides what to do with it.
"""

import os
import re
import time
from datetime import datetime

SCHEMA_VERSION = "2.0.0"

ORDER_STATUSES = ("pending", "confirmed", "preparing", "ready", "shipped", "delivered")
ORDER_CANCELLED = "cancelled"
QUOTE_STATUSES = ("draft", "sent", "accepted", "rejected", "expired")
PO_STATUSES = ("draft", "sent", "confirmed", "partial", "received", "cancelled")
USER_ROLES = ("admin", "warehouse", "sales")
RULE_TRIGGERS = ("reorder_point", "low_stock", "supplier_price", "demand_forecast")

_LINE_TOTALS = ("subtotal", "tax_amount", "total")

SCHEMAS = {
    "products": {
        "prefix": "prod",
        "required": ("name", "sku"),
        "defaults": {
            "category": "General", "unit": "piece", "cost_price": 0.0,
            "selling_price": 0.0, "stock": 0, "minimum_stock": 5,
            "maximum_stock": 100, "location": "", "description": "",
        },
        "numbers": ("cost_price", "selling_price"),
        "integers": ("stock", "minimum_stock", "maximum_stock"),
        "enums": {},
        "derived": (),
    },
    "customers": {
        "prefix": "cust",
        "required": ("name",),
        "defaults": {"email": "", "phone": "", "company": "", "address": ""},
        "numbers": (),
        "integers": (),
        "enums": {},
        "derived": (),
    },
    "suppliers": {
        "prefix": "supp",
        "required": ("name",),
        "defaults": {"email": "", "phone": "", "address": "",
                     "contact_person": "", "payment_terms": "", "product_ids": []},
        "numbers": (),
        "integers": (),
        "enums": {},
        "derived": (),
    },
    "orders": {
        "prefix": "order",
        "required": ("customer_id", "items"),
        "defaults": {"status": "pending", "tax_rate": 0.0, "notes": ""},
        "numbers": ("tax_rate",),
        "integers": (),
        "enums": {"status": ORDER_STATUSES + (ORDER_CANCELLED,)},
        "derived": _LINE_TOTALS,
    },
    "quotations": {
        "prefix": "quote",
        "required": ("customer_id", "items"),
        "defaults": {"status": "draft", "tax_rate": 0.0, "discount": 0.0, "notes": ""},
        "numbers": ("tax_rate", "discount"),
        "integers": (),
        "enums": {"status": QUOTE_STATUSES},
        "derived": _LINE_TOTALS + ("discount_amount",),
    },
    "purchase_orders": {
        "prefix": "po",
        "required": ("supplier_id", "items"),
        "defaults": {"status": "draft", "tax_rate": 0.0, "notes": ""},
        "numbers": ("tax_rate",),
        "integers": (),
        "enums": {"status": PO_STATUSES},
        "derived": _LINE_TOTALS,
    },
    "users": {
        "prefix": "user",
        "required": ("email", "role"),
        "defaults": {"first_name": "", "last_name": "", "credential_ref": ""},
        "numbers": (),
        "integers": (),
        "enums": {"role": USER_ROLES},
        "derived": (),
    },
    "automation_rules": {
        "prefix": "rule",
        "required": ("name", "trigger", "action"),
        "defaults": {"enabled": True, "trigger_count": 0},
        "numbers": (),
        "integers": ("trigger_count",),
        "enums": {},
        "derived": (),
    },
    "stock_movements": {
        "prefix": "move",
        "required": ("product_id", "quantity"),
        "defaults": {"reason": ""},
        "numbers": (),
        "integers": (),
        "enums": {},
        "derived": (),
    },
}

COLLECTIONS = tuple(SCHEMAS)

# Document number prefixes (order_number, quote_number, po_number)
NUMBERED = {
    "orders": ("order_number", "ORD"),
    "quotations": ("quote_number", "QT"),
    "purchase_orders": ("po_number", "PO"),
}

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def now_iso() -> str:
    return datetime.now().isoformat()


def new_id(collection: str, prefix: str = None) -> str:
    prefix = prefix or SCHEMAS.get(collection, {}).get("prefix", "rec")
    return f"{prefix}_{int(time.time() * 1000)}_{os.urandom(4).hex()}"


def _coerce_number(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return value
    return value


def normalize(collection: str, record: dict) -> dict:
    """Coerce numeric strings on known number fields. Returns a new dict."""
    schema = SCHEMAS[collection]
    out = dict(record)
    for field in schema["numbers"]:
        if field in out:
            out[field] = _coerce_number(out[field])
    for field in schema["integers"]:
        if field in out:
            val = _coerce_number(out[field])
            if isinstance(val, float) and val.is_integer():
                val = int(val)
            out[field] = val
    if "items" in out and isinstance(out["items"], list):
        items = []
        for it in out["items"]:
            if isinstance(it, dict):
                it = dict(it)
                for f in ("quantity", "unit_price", "discount"):
                    if f in it:
                        it[f] = _coerce_number(it[f])
            items.append(it)
        out["items"] = items
    return out


def apply_defaults(collection: str, draft: dict) -> dict:
    schema = SCHEMAS[collection]
    record = {}
    for key, value in schema["defaults"].items():
        record[key] = list(value) if isinstance(value, list) else value
    record.update(draft)
    return record


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_items(items, errors: list):
    if not isinstance(items, list) or not items:
        errors.append("items must be a non-empty list")
        return
    for i, it in enumerate(items, 1):
        if not isinstance(it, dict):
            errors.append(f"item {i} must be an object")
            continue
        if not it.get("product_id"):
            errors.append(f"item {i}: product_id is required")
        qty = it.get("quantity")
        if not _is_number(qty) or qty <= 0:
            errors.append(f"item {i}: quantity must be a number > 0")
        price = it.get("unit_price", 0)
        if not _is_number(price) or price < 0:
            errors.append(f"item {i}: unit_price must be a number >= 0")
        disc = it.get("discount", 0)
        if not _is_number(disc) or not 0 <= disc <= 100:
            errors.append(f"item {i}: discount must be between 0 and 100")


def validate(collection: str, record: dict) -> dict:
    """Check a complete (defaults applied) record against its schema."""
    if collection not in SCHEMAS:
        return {"ok": False, "errors": [f"unknown collection '{collection}'"]}
    schema = SCHEMAS[collection]
    errors = []

    for field in schema["required"]:
        value = record.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append(f"{field} is required")

    for field in schema["numbers"]:
        value = record.get(field)
        if value is not None and (not _is_number(value) or value < 0):
            errors.append(f"{field} must be a number >= 0")

    for field in schema["integers"]:
        value = record.get(field)
        if value is None:
            continue
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{field} must be a whole number")
        elif value < 0:
            errors.append(f"{field} must not be negative")

    for field, allowed in schema["enums"].items():
        value = record.get(field)
        if value is not None and value not in allowed:
            errors.append(f"{field} must be one of: {', '.join(allowed)}")

    if "items" in schema["required"]:
        _validate_items(record.get("items"), errors)

    if collection in ("customers", "suppliers", "users"):
        email = record.get("email") or ""
        if email and not _EMAIL_RE.match(email.strip()):
            errors.append("email is not a valid address")

    if collection == "automation_rules":
        trigger = record.get("trigger")
        if not isinstance(trigger, dict) or trigger.get("type") not in RULE_TRIGGERS:
            errors.append(f"trigger.type must be one of: {', '.join(RULE_TRIGGERS)}")
        if not isinstance(record.get("action"), dict):
            errors.append("action must be an object")
        if not isinstance(record.get("enabled", True), bool):
            errors.append("enabled must be true or false")

    if collection == "users" and "password" in record:
        errors.append("users carry a credential_ref, never a password")

    if collection == "suppliers" and not isinstance(record.get("product_ids", []), list):
        errors.append("product_ids must be a list of product ids")

    return {"ok": not errors, "errors": errors}


def check_status_transition(collection: str, old: str, new: str) -> dict:
    """Orders only move forward through the pipeline, or to cancelled
    from anything short of delivered."""
    if collection != "orders" or old == new or old is None:
        return {"ok": True, "errors": []}
    if old == ORDER_CANCELLED:
        return {"ok": False, "errors": ["a cancelled order cannot change status"]}
    if new == ORDER_CANCELLED:
        if old == "delivered":
            return {"ok": False, "errors": ["a delivered order cannot be cancelled"]}
        return {"ok": True, "errors": []}
    if old in ORDER_STATUSES and new in ORDER_STATUSES:
        if ORDER_STATUSES.index(new) < ORDER_STATUSES.index(old):
            return {"ok": False, "errors": [f"order status cannot go back from {old} to {new}"]}
    return {"ok": True, "errors": []}


def _money(value: float) -> float:
    return round(value + 0.0, 2)


def compute_totals(collection: str, record: dict) -> dict:
    """Recompute line totals and document totals from items.

    line total   = quantity * unit_price * (1 - discount/100)
    subtotal     = sum(line totals)
    quotations   : discount_amount = subtotal * discount/100
    tax_amount   = (subtotal - discount_amount) * tax_rate/100
    total        = subtotal - discount_amount + tax_amount
    """
    if collection not in NUMBERED:
        return record
    out = dict(record)
    items = []
    subtotal = 0.0
    for it in out.get("items") or []:
        if not isinstance(it, dict):
            items.append(it)
            continue
        it = dict(it)
        qty = it.get("quantity", 0) if _is_number(it.get("quantity")) else 0
        price = it.get("unit_price", 0) if _is_number(it.get("unit_price")) else 0
        disc = it.get("discount", 0) if _is_number(it.get("discount")) else 0
        it.setdefault("unit_price", price)
        it.setdefault("discount", disc)
        it["total"] = _money(qty * price * (1 - disc / 100.0))
        subtotal += it["total"]
        items.append(it)
    out["items"] = items
    out["subtotal"] = _money(subtotal)

    discount_amount = 0.0
    if collection == "quotations":
        pct = out.get("discount", 0) if _is_number(out.get("discount")) else 0
        discount_amount = _money(subtotal * pct / 100.0)
        out["discount_amount"] = discount_amount

    rate = out.get("tax_rate", 0) if _is_number(out.get("tax_rate")) else 0
    taxable = subtotal - discount_amount
    out["tax_amount"] = _money(taxable * rate / 100.0)
    out["total"] = _money(taxable + out["tax_amount"])
    return out


def strip_derived(collection: str, partial: dict) -> dict:
    """Drop caller-supplied values for derived fields."""
    derived = SCHEMAS.get(collection, {}).get("derived", ())
    return {k: v for k, v in partial.items() if k not in derived}


def customer_placeholder(customer_id: str) -> dict:
    """Stand-in for an orphaned customer reference."""
    return {
        "id": customer_id,
        "name": "Customer not found",
        "email": "",
        "phone": "",
        "company": "",
        "address": "",
        "missing": True,
    }
