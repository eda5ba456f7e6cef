#!/usr/bin/env python3
"""
CHABS cloud backend — Application Entry Point
Creates the Flask app, opens the record store and registers the API Blueprint.
"""

import os
import logging
from flask import Flask

from chabs.core.config import load_settings, describe
from chabs.core.logging_config import setup_logging
from chabs.storage.record_store import RecordStore
from chabs.storage.local import LocalProvider
from chabs.api.backend import CloudBackend
from chabs.api.routes import bp

log = logging.getLogger("chabs")


def create_app(settings: dict = None, configure_logging: bool = True):
    """Application factory."""
    settings = settings or load_settings()
    if configure_logging:
        setup_logging(data_dir=settings["data_dir"])

    app = Flask(__name__)
    app.config["CHABS_SERVER_API_KEY"] = settings.get("server_api_key", "")

    # ── Backend storage ───────────────────────────────────────────────────────
    store = RecordStore(settings["db_path"], quota_bytes=settings["storage_quota"])
    provider = LocalProvider(store, max_backups=settings["max_backups"])
    app.extensions["chabs_backend"] = CloudBackend(provider)
    stats = provider.stats()
    log.info("Backend store: %s | records=%d bytes=%d",
             settings["db_path"], stats["total_records"], stats["approx_bytes"])

    if not app.config["CHABS_SERVER_API_KEY"]:
        log.warning("CHABS_SERVER_API_KEY not set — API is open to anyone who can reach it")
    log.debug("Settings: %s", describe(settings))

    app.register_blueprint(bp)
    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port, debug=False)
