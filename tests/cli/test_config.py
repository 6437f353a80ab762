"""Tests for CLI configuration loading and validation."""

import logging
import os

import pytest
import yaml
from pydantic import ValidationError

from src.cli.config import (
    LoggingConfig,
    StockbridgeConfig,
    StorageConfig,
    load_config,
    resolve_env_vars,
)
from src.cli.logging_setup import configure_logging


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Keep config discovery away from the developer's real files."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for key in list(os.environ):
        if key.startswith("STOCKBRIDGE_"):
            monkeypatch.delenv(key)


class TestDefaults:

    def test_storage_defaults(self):
        cfg = StorageConfig()
        assert cfg.database_url is None
        assert cfg.persist_debounce_ms == 120
        assert cfg.debounce_seconds == pytest.approx(0.12)

    def test_full_defaults(self):
        cfg = StockbridgeConfig()
        assert cfg.credentials.access_token_lifetime_days == 30
        assert cfg.credentials.proactive_refresh_hours == 12
        assert cfg.sync.retry_max_attempts == 5
        assert cfg.sync.sample_size == 36
        assert cfg.logging.level == "info"

    def test_rejects_invalid_values(self):
        with pytest.raises(ValidationError):
            StockbridgeConfig(sync={"retry_max_attempts": 0})


class TestResolveEnvVars:

    def test_resolves_known_var(self, monkeypatch):
        monkeypatch.setenv("SB_LABEL", "Main Books")
        assert resolve_env_vars("label: ${SB_LABEL}") == "label: Main Books"

    def test_missing_var_is_empty(self, monkeypatch):
        monkeypatch.delenv("SB_UNSET", raising=False)
        assert resolve_env_vars("x${SB_UNSET}y") == "xy"


class TestLoadConfig:

    def test_no_file_gives_defaults(self):
        assert load_config() == StockbridgeConfig()

    def test_explicit_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_loads_yaml(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.safe_dump({
            "storage": {"database_url": "sqlite:///state.db"},
            "sync": {"retry_max_attempts": 3, "sample_size": 10},
            "logging": {"level": "debug"},
        }))
        cfg = load_config(str(path))
        assert cfg.storage.database_url == "sqlite:///state.db"
        assert cfg.sync.retry_max_attempts == 3
        assert cfg.sync.sample_size == 10
        assert cfg.logging.level == "debug"

    def test_discovers_file_in_cwd(self, tmp_path):
        (tmp_path / "stockbridge.yaml").write_text("credentials:\n  keyring_service: test-service\n")
        assert load_config().credentials.keyring_service == "test-service"

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)) == StockbridgeConfig()

    def test_env_var_reference_in_yaml(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SB_DB", "sqlite:///from-env.db")
        path = tmp_path / "custom.yaml"
        path.write_text("storage:\n  database_url: ${SB_DB}\n")
        assert load_config(str(path)).storage.database_url == "sqlite:///from-env.db"

    def test_env_override_int(self, monkeypatch):
        monkeypatch.setenv("STOCKBRIDGE_SYNC_RETRY_MAX_ATTEMPTS", "2")
        assert load_config().sync.retry_max_attempts == 2

    def test_env_override_beats_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("logging:\n  level: warning\n")
        monkeypatch.setenv("STOCKBRIDGE_LOGGING_LEVEL", "error")
        assert load_config(str(path)).logging.level == "error"

    def test_unknown_section_env_is_ignored(self, monkeypatch):
        monkeypatch.setenv("STOCKBRIDGE_DB_PATH", "/tmp/x.db")
        assert load_config() == StockbridgeConfig()


class TestConfigureLogging:

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        root = logging.getLogger()
        saved = root.handlers[:]
        yield
        for handler in root.handlers:
            if handler not in saved:
                handler.close()
        root.handlers[:] = saved
        logging.getLogger("src").setLevel(logging.NOTSET)

    def test_sets_application_level(self):
        configure_logging(LoggingConfig(level="warning"))
        assert logging.getLogger("src").level == logging.WARNING

    def test_verbose_forces_debug(self):
        configure_logging(LoggingConfig(level="error"), verbose=True)
        assert logging.getLogger("src").level == logging.DEBUG

    def test_writes_log_file(self, tmp_path):
        log_file = tmp_path / "logs" / "stockbridge.log"
        configure_logging(LoggingConfig(file=str(log_file)))
        logging.getLogger("src.test").info("hello file")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "hello file" in log_file.read_text()
