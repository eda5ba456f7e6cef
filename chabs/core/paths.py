"""
chabs/core/paths.py — Centralized Path Configuration

Single source of truth for the data directory. Every module that needs a
file location imports from here instead of computing its own DATA_DIR.
"""

import os

# ── Project Root ──────────────────────────────────────────────────────────────
_THIS_FILE = os.path.abspath(__file__)
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(_THIS_FILE)))

_DEFAULT_DATA_DIR = os.path.join(PROJECT_ROOT, "data")


def resolve_data_dir() -> str:
    """CHABS_DATA_DIR env override, else the project data/ folder."""
    env_dir = os.environ.get("CHABS_DATA_DIR", "")
    if env_dir:
        return env_dir
    return _DEFAULT_DATA_DIR


def db_path(data_dir: str = None) -> str:
    """Default record store file inside the data directory."""
    return os.path.join(data_dir or resolve_data_dir(), "chabs.db")


def log_dir(data_dir: str = None) -> str:
    return os.path.join(data_dir or resolve_data_dir(), "logs")


def ensure_dir(path: str) -> str:
    os.makedirs(path, exist_ok=True)
    return path
