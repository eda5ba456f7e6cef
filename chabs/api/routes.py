"""
chabs/api/routes.py — Cloud backend REST API

Blueprint `bp`, mounted at /api/v1. Serves the provider contract for every
collection on top of the CloudBackend stored in
app.extensions["chabs_backend"]. Every route except /health needs
`Authorization: Bearer <CHABS_SERVER_API_KEY>` when a key is configured.

Errors come back as {"ok": false, "error": <code>, "detail": <text>}.
"""

import time
import hmac
import logging
import functools

from flask import Blueprint, current_app, jsonify, request, Response

from chabs.core.errors import (
    ChabsError, ValidationError, DuplicateSkuError, DuplicateEmailError,
    NotFoundError, StorageWriteError, InvalidBackupError,
)
from chabs.core.models import COLLECTIONS, SCHEMA_VERSION, now_iso
from chabs.documents.pdf import render_record, TITLES

log = logging.getLogger("chabs.api")

bp = Blueprint("chabs_api", __name__, url_prefix="/api/v1")

_STATUS = (
    (DuplicateSkuError, 409),
    (DuplicateEmailError, 409),
    (ValidationError, 422),
    (NotFoundError, 404),
    (InvalidBackupError, 400),
    (StorageWriteError, 507),
)


def _backend():
    return current_app.extensions["chabs_backend"]


def _error(code: str, detail: str, status: int, **extra):
    body = {"ok": False, "error": code, "detail": detail}
    body.update(extra)
    return jsonify(body), status


# ═══════════════════════════════════════════════════════════════════════
# Auth + request logging
# ═══════════════════════════════════════════════════════════════════════

def check_api_key(header: str) -> bool:
    expected = current_app.config.get("CHABS_SERVER_API_KEY", "")
    if not expected:
        return True
    if not header or not header.startswith("Bearer "):
        return False
    return hmac.compare_digest(header[len("Bearer "):].strip(), expected)


def api_key_required(f):
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if not check_api_key(request.headers.get("Authorization", "")):
            log.warning("Rejected %s %s: bad or missing API key", request.method, request.path,
                        extra={"route": request.path, "method": request.method})
            return _error("unauthorized", "valid Bearer API key required", 401)
        return f(*args, **kwargs)
    return decorated


def known_collection(f):
    @functools.wraps(f)
    def decorated(collection, *args, **kwargs):
        if collection not in COLLECTIONS:
            return _error("unknown_collection", f"no collection named '{collection}'", 404)
        return f(collection, *args, **kwargs)
    return decorated


@bp.before_request
def _log_request_start():
    request._start_time = time.time()


@bp.after_request
def _log_request_end(response):
    if hasattr(request, "_start_time"):
        duration_ms = round((time.time() - request._start_time) * 1000, 1)
        if not request.path.endswith("/health") and not request.path.endswith("/changes"):
            log.info("%s %s → %d (%.0fms)",
                     request.method, request.path, response.status_code, duration_ms,
                     extra={"route": request.path, "method": request.method,
                            "duration_ms": duration_ms})
    return response


@bp.errorhandler(ChabsError)
def _handle_chabs_error(e):
    for exc_type, status in _STATUS:
        if isinstance(e, exc_type):
            break
    else:
        status = 500
    extra = {}
    if isinstance(e, ValidationError):
        extra["errors"] = e.errors
    if isinstance(e, DuplicateSkuError):
        extra["sku"] = e.sku
    if isinstance(e, DuplicateEmailError):
        extra["email"] = e.email
    if status >= 500:
        log.error("%s %s failed: %s", request.method, request.path, e)
    return _error(e.code, str(e), status, **extra)


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError(["request body must be a JSON object"])
    return data


# ═══════════════════════════════════════════════════════════════════════
# Health + stats
# ═══════════════════════════════════════════════════════════════════════

@bp.route("/health")
def api_health():
    """Reachability check. No auth, no storage access."""
    return jsonify({"ok": True, "status": "healthy", "schema_version": SCHEMA_VERSION,
                    "time": now_iso()})


@bp.route("/stats")
@api_key_required
def api_stats():
    return jsonify({"ok": True, "stats": _backend().stats()})


# ═══════════════════════════════════════════════════════════════════════
# Collections
# ═══════════════════════════════════════════════════════════════════════

@bp.route("/<collection>", methods=["GET"])
@api_key_required
@known_collection
def api_list(collection):
    records = _backend().list(collection)
    return jsonify({"ok": True, "records": records, "count": len(records)})


@bp.route("/<collection>", methods=["POST"])
@api_key_required
@known_collection
def api_create(collection):
    record = _backend().create(collection, _json_body())
    return jsonify({"ok": True, "record": record}), 201


@bp.route("/<collection>/changes")
@api_key_required
@known_collection
def api_changes(collection):
    """Change feed. GET ?since=<seq>; without since, only the latest seq."""
    since = request.args.get("since")
    if since is not None:
        try:
            since = int(since)
        except ValueError:
            raise ValidationError(["since must be an integer"])
    changes, latest = _backend().changes(collection, since)
    return jsonify({"ok": True, "changes": changes, "latest": latest})


@bp.route("/<collection>/<record_id>", methods=["GET"])
@api_key_required
@known_collection
def api_get(collection, record_id):
    return jsonify({"ok": True, "record": _backend().get(collection, record_id)})


@bp.route("/<collection>/<record_id>", methods=["PUT"])
@api_key_required
@known_collection
def api_put(collection, record_id):
    data = _json_body()
    if data.get("id") not in (None, "", record_id):
        raise ValidationError([f"body id '{data['id']}' does not match URL id '{record_id}'"])
    data["id"] = record_id
    record, created = _backend().put(collection, data)
    return jsonify({"ok": True, "record": record}), 201 if created else 200


@bp.route("/<collection>/<record_id>", methods=["PATCH"])
@api_key_required
@known_collection
def api_update(collection, record_id):
    return jsonify({"ok": True,
                    "record": _backend().update(collection, record_id, _json_body())})


@bp.route("/<collection>/<record_id>", methods=["DELETE"])
@api_key_required
@known_collection
def api_delete(collection, record_id):
    _backend().delete(collection, record_id)
    return jsonify({"ok": True, "deleted": record_id})


@bp.route("/<collection>/<record_id>/pdf")
@api_key_required
@known_collection
def api_pdf(collection, record_id):
    """Quotation or order as a PDF download."""
    if collection not in TITLES:
        return _error("no_document", f"{collection} have no printable document", 404)
    record = _backend().get(collection, record_id)
    data = render_record(_backend().provider, collection, record_id)
    number = record.get("quote_number") or record.get("order_number") or record_id
    return Response(data, mimetype="application/pdf",
                    headers={"Content-Disposition": f'inline; filename="{number}.pdf"'})
