"""
Tests for chabs/core/config.py, chabs/core/logging_config.py and the
provider factory in chabs/storage/__init__.py.
"""
import os
import json
import logging
import time
import pytest

from chabs.core.config import load_settings, mask, describe
from chabs.core.logging_config import JSONFormatter, HumanFormatter, setup_logging
from chabs.storage import create_provider
from chabs.storage.local import LocalProvider
from chabs.storage.remote import RemoteProvider
from chabs.storage.sync import SyncCoordinator, ONLINE_SYNCED, LOCAL_ONLY


class TestLoadSettings:

    def test_defaults(self, temp_data_dir):
        s = load_settings({"CHABS_DATA_DIR": temp_data_dir})
        assert s["storage_mode"] == "local"
        assert s["sync_interval"] == 30.0
        assert s["remote_timeout"] == 10.0
        assert s["storage_quota"] == 5 * 1024 * 1024
        assert s["max_backups"] == 5
        assert s["auto_backup_interval"] == 300.0
        assert s["db_path"] == os.path.join(temp_data_dir, "chabs.db")

    def test_env_overrides(self, temp_data_dir):
        s = load_settings({
            "CHABS_DATA_DIR": temp_data_dir,
            "CHABS_STORAGE_MODE": " Hybrid ",
            "CHABS_REMOTE_URL": "https://cloud.example/",
            "CHABS_SYNC_INTERVAL": "5",
            "CHABS_DB_PATH": "/tmp/other.db",
        })
        assert s["storage_mode"] == "hybrid"
        assert s["remote_url"] == "https://cloud.example"
        assert s["sync_interval"] == 5.0
        assert s["db_path"] == "/tmp/other.db"

    def test_bad_number_falls_back(self, temp_data_dir, caplog):
        with caplog.at_level(logging.WARNING, logger="chabs.config"):
            s = load_settings({"CHABS_DATA_DIR": temp_data_dir,
                               "CHABS_MAX_BACKUPS": "lots"})
        assert s["max_backups"] == 5
        assert "CHABS_MAX_BACKUPS" in caplog.text

    def test_unknown_mode_rejected(self, temp_data_dir):
        with pytest.raises(ValueError):
            load_settings({"CHABS_DATA_DIR": temp_data_dir, "CHABS_STORAGE_MODE": "ftp"})

    def test_reads_os_environ_by_default(self, temp_data_dir, monkeypatch):
        monkeypatch.setenv("CHABS_STORAGE_MODE", "cloud")
        assert load_settings()["storage_mode"] == "cloud"


class TestMasking:

    def test_mask(self):
        assert mask("") == "(not set)"
        assert mask("short") == "shor****"
        assert mask("a-very-long-secret-key").startswith("a-very-l****")

    def test_describe_hides_secrets(self, temp_data_dir):
        s = load_settings({"CHABS_DATA_DIR": temp_data_dir,
                           "CHABS_REMOTE_API_KEY": "sk-super-secret-value"})
        shown = describe(s)
        assert "sk-super-secret-value" not in json.dumps(shown)
        assert shown["storage_mode"] == "local"


class TestLogging:

    def test_json_formatter_extra_fields(self):
        record = logging.LogRecord("chabs.sync", logging.INFO, __file__, 1,
                                   "state change", None, None)
        record.state = "OFFLINE_QUEUED"
        record.queue_len = 3
        entry = json.loads(JSONFormatter().format(record))
        assert entry["logger"] == "chabs.sync"
        assert entry["state"] == "OFFLINE_QUEUED"
        assert entry["queue_len"] == 3

    def test_human_formatter_appends_context(self):
        record = logging.LogRecord("chabs.local", logging.INFO, __file__, 1,
                                   "create products %s", ("prod_1",), None)
        record.collection = "products"
        record.op = "create"
        line = HumanFormatter().format(record)
        assert "chabs.local: create products prod_1" in line
        assert line.endswith("collection=products op=create")

    def test_setup_writes_log_file(self, temp_data_dir):
        root = logging.getLogger()
        saved = list(root.handlers), root.level
        try:
            path = setup_logging(level="INFO", data_dir=temp_data_dir)
            assert path == os.path.join(temp_data_dir, "logs", "chabs.log")
            logging.getLogger("chabs.test").info("hello file")
            for h in root.handlers:
                h.flush()
            with open(path) as f:
                assert "hello file" in f.read()
        finally:
            for h in root.handlers:
                h.close()
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])


class TestCreateProvider:

    def test_local(self, settings):
        provider = create_provider(settings)
        try:
            assert isinstance(provider, LocalProvider)
            assert provider._auto_backup.running
        finally:
            provider.close()
        assert provider._auto_backup is None

    def test_auto_backup_off(self, settings):
        settings.update(auto_backup_interval=0)
        provider = create_provider(settings)
        assert provider._auto_backup is None

    def test_auto_backup_runs(self, settings):
        settings.update(auto_backup_interval=0.05)
        provider = create_provider(settings)
        try:
            deadline = time.time() + 5
            while not provider.list_backups() and time.time() < deadline:
                time.sleep(0.02)
            assert provider.list_backups()
        finally:
            provider.close()

    def test_cloud(self, settings, transport):
        settings.update(storage_mode="cloud", remote_url="http://cloud.test",
                        remote_api_key="test-api-key")
        provider = create_provider(settings, session=transport)
        assert isinstance(provider, RemoteProvider)
        assert provider.health_check()["reachable"]

    def test_hybrid(self, settings, transport):
        settings.update(storage_mode="hybrid", remote_url="http://cloud.test",
                        remote_api_key="test-api-key", sync_interval=3600)
        provider = create_provider(settings, session=transport)
        try:
            assert isinstance(provider, SyncCoordinator)
            assert provider.state == ONLINE_SYNCED
        finally:
            provider.close()

    def test_hybrid_without_url_is_local_only(self, settings):
        settings.update(storage_mode="hybrid")
        provider = create_provider(settings)
        try:
            assert provider.state == LOCAL_ONLY
        finally:
            provider.close()
