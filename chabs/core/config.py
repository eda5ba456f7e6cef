"""
config.py — Environment-driven settings for CHABS

Single source of truth for every tunable of the storage core.
Each setting has an env var, a default and a parser; load_settings()
resolves all of them at once so a provider never reads os.environ itself.

Env vars:
  CHABS_STORAGE_MODE     local | cloud | hybrid (default: local)
  CHABS_DATA_DIR         data directory (default: ./data)
  CHABS_DB_PATH          record store file (default: <data>/chabs.db)
  CHABS_REMOTE_URL       cloud backend base URL
  CHABS_REMOTE_API_KEY   cloud backend credential (Bearer)
  CHABS_SERVER_API_KEY   credential the bundled backend accepts
  CHABS_SYNC_INTERVAL    seconds between health checks (default: 30)
  CHABS_REMOTE_TIMEOUT   seconds per remote call (default: 10)
  CHABS_STORAGE_QUOTA    record store byte quota (default: 5 MiB)
  CHABS_MAX_BACKUPS      backups retained (default: 5)
  CHABS_AUTO_BACKUP_INTERVAL  seconds between automatic backups (default: 300, 0 = off)
"""

import os
import logging

from chabs.core import paths

log = logging.getLogger("chabs.config")

STORAGE_MODES = ("local", "cloud", "hybrid")

_REGISTRY = {
    "storage_mode": {
        "env": "CHABS_STORAGE_MODE",
        "default": "local",
        "parse": lambda v: v.strip().lower(),
    },
    "remote_url": {
        "env": "CHABS_REMOTE_URL",
        "default": "",
        "parse": lambda v: v.strip().rstrip("/"),
    },
    "remote_api_key": {
        "env": "CHABS_REMOTE_API_KEY",
        "default": "",
        "parse": str.strip,
        "sensitive": True,
    },
    "server_api_key": {
        "env": "CHABS_SERVER_API_KEY",
        "default": "",
        "parse": str.strip,
        "sensitive": True,
    },
    "sync_interval": {
        "env": "CHABS_SYNC_INTERVAL",
        "default": 30.0,
        "parse": float,
    },
    "remote_timeout": {
        "env": "CHABS_REMOTE_TIMEOUT",
        "default": 10.0,
        "parse": float,
    },
    "storage_quota": {
        "env": "CHABS_STORAGE_QUOTA",
        "default": 5 * 1024 * 1024,
        "parse": int,
    },
    "max_backups": {
        "env": "CHABS_MAX_BACKUPS",
        "default": 5,
        "parse": int,
    },
    "auto_backup_interval": {
        "env": "CHABS_AUTO_BACKUP_INTERVAL",
        "default": 300.0,
        "parse": float,
    },
}


def load_settings(environ: dict = None) -> dict:
    """Resolve every registered setting from `environ` (default os.environ).

    A value that fails to parse falls back to its default with a warning.
    An unknown storage mode raises ValueError, since guessing a backend
    would silently put data in the wrong place.
    """
    env = os.environ if environ is None else environ
    settings = {}
    for name, entry in _REGISTRY.items():
        raw = env.get(entry["env"], "")
        if raw == "":
            settings[name] = entry["default"]
            continue
        try:
            settings[name] = entry["parse"](raw)
        except (TypeError, ValueError):
            log.warning("Bad value for %s=%r, using default %r",
                        entry["env"], raw, entry["default"])
            settings[name] = entry["default"]

    if settings["storage_mode"] not in STORAGE_MODES:
        raise ValueError(
            f"CHABS_STORAGE_MODE must be one of {', '.join(STORAGE_MODES)}, "
            f"got '{settings['storage_mode']}'")

    data_dir = env.get("CHABS_DATA_DIR", "") or paths.resolve_data_dir()
    settings["data_dir"] = data_dir
    settings["db_path"] = env.get("CHABS_DB_PATH", "") or paths.db_path(data_dir)
    return settings


def mask(value: str) -> str:
    """Mask a secret for safe logging. Shows first 8 chars."""
    if not value:
        return "(not set)"
    if len(value) <= 12:
        return value[:4] + "****"
    return value[:8] + "****" + f"({len(value)} chars)"


def describe(settings: dict) -> dict:
    """Settings safe to log or return from a health endpoint."""
    out = {}
    for name, value in settings.items():
        entry = _REGISTRY.get(name, {})
        out[name] = mask(value) if entry.get("sensitive") else value
    return out
