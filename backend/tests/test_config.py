import importlib
import sys

import pytest


def reload_config_module():
    config_module = sys.modules.get("nudgely.config")
    if config_module:
        config_module.get_settings.cache_clear()
        sys.modules.pop("nudgely.config", None)
    return importlib.import_module("nudgely.config")


@pytest.fixture(autouse=True)
def restore_config_module():
    original = sys.modules.get("nudgely.config")
    yield
    if original is not None:
        sys.modules["nudgely.config"] = original


def test_missing_cron_secret_fails_closed(monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "")

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()

    with pytest.raises(Exception, match="cron_secret|CRON_SECRET"):
        config_module.get_settings()


def test_placeholder_cron_secret_fails_closed(monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "changeme-in-production-changeme-in-production")

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()

    with pytest.raises(Exception, match="cron_secret|CRON_SECRET"):
        config_module.get_settings()


def test_low_entropy_cron_secret_fails_closed(monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "a" * 64)

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()

    with pytest.raises(Exception, match="cron_secret|CRON_SECRET"):
        config_module.get_settings()


def test_strong_cron_secret_passes(monkeypatch):
    monkeypatch.setenv(
        "CRON_SECRET",
        "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef",
    )
    monkeypatch.setenv("SCAN_CONCURRENCY", "8")

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()
    settings = config_module.get_settings()

    assert settings.cron_secret
    assert settings.scan_concurrency == 8
    assert settings.tick_tolerance_minutes == 15


def test_scheduler_limits_must_be_positive(monkeypatch):
    monkeypatch.setenv("MAX_DISPATCH_ATTEMPTS", "0")

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()

    with pytest.raises(Exception, match="max_dispatch_attempts"):
        config_module.get_settings()
