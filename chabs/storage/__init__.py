"""
Storage abstraction: one provider contract, three backends.

    local   LocalProvider over the SQLite record store
    cloud   RemoteProvider against the cloud backend; errors surface
    hybrid  SyncCoordinator: local first, mirrored or queued to remote
"""

import logging

from chabs.core.config import load_settings, describe
from chabs.storage.record_store import RecordStore
from chabs.storage.local import LocalProvider
from chabs.storage.remote import RemoteProvider
from chabs.storage.sync import SyncCoordinator

log = logging.getLogger("chabs.storage")


def create_provider(settings: dict = None, session=None, monitor=None, start: bool = True):
    """Build the provider for settings["storage_mode"].

    `session` is handed to the remote provider (tests pass a transport
    adapter); `monitor` is the connectivity monitor for hybrid mode.
    Local and hybrid providers also start automatic backups unless
    auto_backup_interval is 0; close() stops them.
    """
    settings = settings or load_settings()
    mode = settings["storage_mode"]
    log.info("Storage mode: %s", mode, extra={"state": mode})
    log.debug("Settings: %s", describe(settings))

    if mode == "cloud":
        return _remote(settings, session)

    store = RecordStore(settings["db_path"], quota_bytes=settings["storage_quota"])
    local = LocalProvider(store, max_backups=settings["max_backups"])
    if start and settings.get("auto_backup_interval", 0) > 0:
        local.start_auto_backup(settings["auto_backup_interval"])
    if mode == "local":
        return local

    if not settings.get("remote_url"):
        log.warning("Hybrid mode without CHABS_REMOTE_URL, staying local-only")
        coordinator = SyncCoordinator(local, local_only=True, monitor=monitor)
    else:
        coordinator = SyncCoordinator(local, _remote(settings, session), monitor=monitor,
                                      interval=settings["sync_interval"])
    return coordinator.start() if start else coordinator


def _remote(settings: dict, session=None) -> RemoteProvider:
    return RemoteProvider(settings["remote_url"], api_key=settings["remote_api_key"],
                          timeout=settings["remote_timeout"], session=session)


__all__ = ["create_provider", "RecordStore", "LocalProvider", "RemoteProvider",
           "SyncCoordinator"]
