"""
chabs/storage/remote.py — Remote Provider (cloud backend over HTTP)

Same CRUD contract as the local provider, spoken as REST:

  GET    {base}/api/v1/<collection>                    list
  POST   {base}/api/v1/<collection>                    create
  GET    {base}/api/v1/<collection>/<id>               get
  PUT    {base}/api/v1/<collection>/<id>               upsert full record
  PATCH  {base}/api/v1/<collection>/<id>               partial update
  DELETE {base}/api/v1/<collection>/<id>               delete
  GET    {base}/api/v1/<collection>/changes?since=N    change feed
  GET    {base}/api/v1/health                          reachability

Status mapping:
  400/422                     -> ValidationError
  404                         -> NotFoundError
  409 duplicate_sku/_email    -> DuplicateSkuError / DuplicateEmailError
  401/403, 5xx, no answer     -> RemoteUnavailableError

The HTTP session is injectable (anything with requests.Session.request),
which is how tests route calls into the Flask backend without a socket.
"""

import time
import logging
import threading

import requests

from chabs.core.errors import (
    ValidationError, DuplicateSkuError, DuplicateEmailError,
    NotFoundError, RemoteUnavailableError,
)
from chabs.core.scheduler import RepeatingTask
from chabs.storage.base import ProviderBase

log = logging.getLogger("chabs.remote")

API_PREFIX = "/api/v1"
DEFAULT_TIMEOUT = 10.0
DEFAULT_POLL_INTERVAL = 5.0

CHANGE_KINDS = ("created", "updated", "deleted")


class RemoteProvider(ProviderBase):
    """Provider backed by the CHABS cloud backend."""

    kind = "remote"

    def __init__(self, base_url: str, api_key: str = "", timeout: float = DEFAULT_TIMEOUT,
                 session=None, poll_interval: float = DEFAULT_POLL_INTERVAL):
        if not base_url:
            raise ValueError("remote provider needs a base URL (CHABS_REMOTE_URL)")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.session = session or requests.Session()
        self._subscriptions = []

    def _url(self, *parts) -> str:
        return self.base_url + API_PREFIX + "".join(f"/{p}" for p in parts)

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    # ── Transport ─────────────────────────────────────────────────────────────
    def _request(self, method: str, *parts, json=None, params=None,
                 collection: str = "", record_id: str = ""):
        url = self._url(*parts)
        try:
            resp = self.session.request(method, url, json=json, params=params,
                                        headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            log.warning("%s %s timed out after %.1fs", method, url, self.timeout)
            raise RemoteUnavailableError(f"{method} {url} timed out") from e
        except requests.exceptions.RequestException as e:
            log.warning("%s %s failed: %s", method, url, e)
            raise RemoteUnavailableError(f"{method} {url}: {e}") from e

        if resp.status_code >= 400:
            self._raise_for(resp, method, url, collection, record_id)
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteUnavailableError(f"{method} {url}: reply is not JSON") from e

    @staticmethod
    def _raise_for(resp, method, url, collection, record_id):
        try:
            body = resp.json() or {}
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        status = resp.status_code
        code = body.get("error", "")
        detail = body.get("detail") or resp.reason or ""

        if status in (400, 422):
            raise ValidationError(body.get("errors") or [detail or "rejected by remote"],
                                  collection)
        if status == 404:
            raise NotFoundError(collection, record_id)
        if status == 409:
            if code == "duplicate_sku":
                raise DuplicateSkuError(body.get("sku", ""))
            if code == "duplicate_email":
                raise DuplicateEmailError(body.get("email", ""))
            raise ValidationError(body.get("errors") or [detail or "conflict"], collection)
        log.warning("%s %s -> %d %s", method, url, status, code or detail)
        raise RemoteUnavailableError(f"{method} {url} -> HTTP {status} {code}".strip())

    # ── CRUD ──────────────────────────────────────────────────────────────────
    def list(self, collection: str) -> list:
        self._check_collection(collection)
        body = self._request("GET", collection, collection=collection)
        return body.get("records", [])

    def get(self, collection: str, record_id: str) -> dict:
        self._check_collection(collection)
        body = self._request("GET", collection, record_id,
                             collection=collection, record_id=record_id)
        return body.get("record", {})

    def create(self, collection: str, draft: dict) -> dict:
        self._check_collection(collection)
        body = self._request("POST", collection, json=draft, collection=collection)
        record = body.get("record", {})
        log.info("remote create %s %s", collection, record.get("id"),
                 extra={"collection": collection, "record_id": record.get("id"), "op": "create"})
        return record

    def update(self, collection: str, record_id: str, partial: dict) -> dict:
        self._check_collection(collection)
        body = self._request("PATCH", collection, record_id, json=partial,
                             collection=collection, record_id=record_id)
        return body.get("record", {})

    def delete(self, collection: str, record_id: str) -> None:
        self._check_collection(collection)
        self._request("DELETE", collection, record_id,
                      collection=collection, record_id=record_id)

    def put(self, collection: str, record: dict) -> dict:
        self._check_collection(collection)
        if not isinstance(record, dict) or not record.get("id"):
            raise ValidationError(["put needs a record with an id"], collection)
        body = self._request("PUT", collection, record["id"], json=record,
                             collection=collection, record_id=record["id"])
        return body.get("record", {})

    # ── Health ────────────────────────────────────────────────────────────────
    def health_check(self) -> dict:
        """One GET against the health endpoint. Never raises."""
        start = time.monotonic()
        reachable = False
        try:
            resp = self.session.request("GET", self._url("health"), headers=self._headers(),
                                        timeout=self.timeout)
            reachable = resp.status_code == 200
        except Exception as e:
            log.debug("Health check failed: %s", e)
        latency_ms = round((time.monotonic() - start) * 1000, 1)
        return {"reachable": reachable, "latency_ms": latency_ms}

    # ── Change feed ───────────────────────────────────────────────────────────
    def changes(self, collection: str, since=None) -> dict:
        """Changes after sequence `since`. Without `since`, only the latest seq."""
        self._check_collection(collection)
        params = {} if since is None else {"since": since}
        body = self._request("GET", collection, "changes", params=params,
                             collection=collection)
        return {"changes": body.get("changes", []), "latest": body.get("latest", 0)}

    def subscribe(self, collection: str, on_change, interval: float = None):
        """Deliver on_change(record, kind) for every remote change to `collection`."""
        self._check_collection(collection)
        sub = Subscription(self, collection, on_change,
                           interval if interval is not None else self.poll_interval)
        self._subscriptions.append(sub)
        return sub.start()

    def close(self):
        for sub in list(self._subscriptions):
            sub.cancel()
        self._subscriptions.clear()


class Subscription:
    """Polls one collection's change feed until cancelled.

    Delivery and cancel() share a lock, so once cancel() returns no
    callback is running and none will start.
    """

    def __init__(self, provider: RemoteProvider, collection: str, on_change, interval: float):
        self.provider = provider
        self.collection = collection
        self.on_change = on_change
        self.since = 0
        self._positioned = False
        self._cancelled = threading.Event()
        self._lock = threading.RLock()
        self._task = RepeatingTask(interval, self.poll, name=f"chabs-sub-{collection}")

    def start(self):
        try:
            self._position()
        except RemoteUnavailableError as e:
            log.info("Subscription to %s will start at the first reachable poll: %s",
                     self.collection, e)
        self._task.start()
        log.info("Subscribed to %s changes after seq %s", self.collection, self.since,
                 extra={"collection": self.collection})
        return self

    def _position(self):
        """Skip history: only changes after the current latest seq are delivered."""
        self.since = self.provider.changes(self.collection)["latest"]
        self._positioned = True

    @property
    def active(self) -> bool:
        return not self._cancelled.is_set()

    def poll(self) -> int:
        """Fetch and deliver pending changes. Returns how many were delivered."""
        if self._cancelled.is_set():
            return 0
        try:
            if not self._positioned:
                self._position()
                return 0
            feed = self.provider.changes(self.collection, since=self.since)
        except RemoteUnavailableError as e:
            log.debug("Poll of %s skipped: %s", self.collection, e)
            return 0
        delivered = 0
        with self._lock:
            for change in feed["changes"]:
                if self._cancelled.is_set():
                    break
                kind = change.get("kind")
                if kind not in CHANGE_KINDS:
                    log.warning("Ignoring change of unknown kind %r", kind)
                else:
                    record = change.get("record") or {"id": change.get("id")}
                    try:
                        self.on_change(record, kind)
                        delivered += 1
                    except Exception as e:
                        log.error("Change handler for %s failed on %s: %s",
                                  self.collection, record.get("id"), e, exc_info=True)
                self.since = max(self.since, change.get("seq", self.since))
        return delivered

    def cancel(self):
        self._cancelled.set()
        with self._lock:
            pass  # wait out an in-flight delivery
        self._task.cancel()
        if self in self.provider._subscriptions:
            self.provider._subscriptions.remove(self)
        log.info("Subscription to %s cancelled", self.collection,
                 extra={"collection": self.collection})
