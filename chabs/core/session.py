"""
session.py — Login sessions and role-based page access

There is no module-level "current user". SessionManager.login() creates a
Session for a user record and stores its token in the record store;
verify() turns a token back into a Session (or None); logout() destroys it.
Session objects are read-only once created.

Credential checking is out of scope: the caller has already established
who the user is (the user record carries only an opaque credential_ref).
"""

import logging
import secrets
import threading
from collections import namedtuple
from datetime import datetime, timedelta

from chabs.core.errors import AccessDeniedError

log = logging.getLogger("chabs.session")

SESSIONS_KEY = "_sessions"
DEFAULT_TTL_HOURS = 12

# Pages each role may open. Admin sees everything.
PAGE_ACCESS = {
    "admin": {"*"},
    "warehouse": {"warehouse-dashboard", "products", "orders", "warehouse",
                  "suppliers", "profile", "manual"},
    "sales": {"sales-dashboard", "customers", "products", "quotations",
              "orders", "profile", "manual"},
}


_SessionFields = namedtuple(
    "_SessionFields", "user_id email role token created_at expires_at")


class Session(_SessionFields):
    """Authenticated user context. A tuple, so read-only once created."""

    __slots__ = ()

    def can_access(self, page: str) -> bool:
        allowed = PAGE_ACCESS.get(self.role, set())
        return "*" in allowed or page.strip("/") in allowed

    def require(self, page: str):
        if not self.can_access(page):
            raise AccessDeniedError(f"role '{self.role}' may not open '{page}'")

    def to_dict(self) -> dict:
        return dict(self._asdict())

    def __repr__(self):
        return f"<Session {self.email} role={self.role}>"


class SessionManager:
    """Issues, verifies and destroys session tokens over a RecordStore."""

    def __init__(self, store, ttl_hours: float = DEFAULT_TTL_HOURS):
        self.store = store
        self.ttl = timedelta(hours=ttl_hours)
        self._lock = threading.Lock()

    def login(self, user: dict) -> Session:
        if not user.get("id") or not user.get("email") or not user.get("role"):
            raise ValueError("user record needs id, email and role")
        now = datetime.now()
        session = Session(
            user_id=user["id"], email=user["email"], role=user["role"],
            token=secrets.token_urlsafe(32),
            created_at=now.isoformat(),
            expires_at=(now + self.ttl).isoformat(),
        )
        with self._lock:
            rows = [r for r in self.store.read_collection(SESSIONS_KEY)
                    if not self._expired(r, now)]
            rows.append(session.to_dict())
            self.store.write_collection(SESSIONS_KEY, rows)
        log.info("Login: %s (%s)", session.email, session.role)
        return session

    def verify(self, token: str):
        """Session for a stored, unexpired token, else None."""
        if not token:
            return None
        now = datetime.now()
        for row in self.store.read_collection(SESSIONS_KEY):
            if row.get("token") != token:
                continue
            if self._expired(row, now):
                log.info("Session expired for %s", row.get("email"))
                return None
            return Session(row["user_id"], row["email"], row["role"], row["token"],
                           row["created_at"], row["expires_at"])
        return None

    def logout(self, token: str) -> bool:
        with self._lock:
            rows = self.store.read_collection(SESSIONS_KEY)
            kept = [r for r in rows if r.get("token") != token]
            if len(kept) == len(rows):
                return False
            self.store.write_collection(SESSIONS_KEY, kept)
        log.info("Logout")
        return True

    @staticmethod
    def _expired(row: dict, now: datetime) -> bool:
        try:
            return datetime.fromisoformat(row.get("expires_at", "")) <= now
        except (TypeError, ValueError):
            return True
