"""Tests for settings loading from config.ini and WAB_* environment variables."""

import pytest

from broadcast_engine.config_loader import EngineSettings, load_settings

ENV_VARS = (
    "WAB_CONFIG",
    "WAB_DB_PATH",
    "WAB_HOST",
    "WAB_PORT",
    "WAB_API_TOKEN",
    "WAB_GATEWAY_URL",
    "WAB_GATEWAY_TIMEOUT",
    "WAB_BATCH_SIZE",
    "WAB_POLL_INTERVAL",
    "WAB_SCHEDULER_ACTIVE",
    "WAB_STALE_AFTER_SECONDS",
    "WAB_TEST_MODE",
    "WAB_LOG_DELIVERY_ACTIVITY",
    "WAB_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_config_file(tmp_path):
    settings = load_settings(str(tmp_path / "missing.ini"))
    assert settings == EngineSettings()
    assert settings.api_token is None
    assert settings.stale_after_seconds == 900


def test_values_from_config_file(tmp_path):
    config_file = tmp_path / "config.ini"
    config_file.write_text("""
[storage]
db_path = /tmp/engine.db

[server]
host = 127.0.0.1
port = 9000
api_token = secret

[gateway]
base_url = https://gateway.example.com
timeout_seconds = 12.5

[scheduler]
active = yes
batch_size = 10
poll_interval_seconds = 30
stale_after_seconds = 600
test_mode = true

[logging]
delivery_activity = on
level = debug
""")
    settings = load_settings(str(config_file))
    assert settings.db_path == "/tmp/engine.db"
    assert settings.http_host == "127.0.0.1"
    assert settings.http_port == 9000
    assert settings.api_token == "secret"
    assert settings.gateway_url == "https://gateway.example.com"
    assert settings.gateway_timeout == 12.5
    assert settings.scheduler_active is True
    assert settings.batch_size == 10
    assert settings.poll_interval == 30.0
    assert settings.stale_after_seconds == 600
    assert settings.test_mode is True
    assert settings.log_delivery_activity is True
    assert settings.log_level == "DEBUG"


def test_environment_fallbacks(tmp_path, monkeypatch):
    monkeypatch.setenv("WAB_DB_PATH", "/var/lib/wab.db")
    monkeypatch.setenv("WAB_PORT", "8100")
    monkeypatch.setenv("WAB_API_TOKEN", "  ")
    monkeypatch.setenv("WAB_BATCH_SIZE", "5")
    monkeypatch.setenv("WAB_SCHEDULER_ACTIVE", "1")
    monkeypatch.setenv("WAB_GATEWAY_TIMEOUT", "")
    settings = load_settings(str(tmp_path / "missing.ini"))
    assert settings.db_path == "/var/lib/wab.db"
    assert settings.http_port == 8100
    assert settings.api_token is None
    assert settings.batch_size == 5
    assert settings.scheduler_active is True
    assert settings.gateway_timeout == 30.0


def test_config_file_wins_over_environment(tmp_path, monkeypatch):
    config_file = tmp_path / "config.ini"
    config_file.write_text("[scheduler]\nbatch_size = 7\n")
    monkeypatch.setenv("WAB_BATCH_SIZE", "99")
    monkeypatch.setenv("WAB_CONFIG", str(config_file))
    assert load_settings().batch_size == 7


def test_invalid_number_raises(tmp_path):
    config_file = tmp_path / "config.ini"
    config_file.write_text("[server]\nport = eighty\n")
    with pytest.raises(ValueError):
        load_settings(str(config_file))


def test_engine_kwargs_maps_scheduler_settings():
    settings = EngineSettings(db_path="/tmp/x.db", scheduler_active=True, batch_size=3)
    kwargs = settings.engine_kwargs()
    assert kwargs["db_path"] == "/tmp/x.db"
    assert kwargs["start_active"] is True
    assert kwargs["batch_size"] == 3
    assert "api_token" not in kwargs
