import logging

from shoutsync.config import Settings, configure_logging, get_settings


def test_environment_overrides_defaults(monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "https://project.example.co")
    monkeypatch.setenv("SHOUTSYNC_REFETCH_DEBOUNCE_MS", "250")

    settings = Settings()

    assert settings.backend_url == "https://project.example.co"
    assert settings.refetch_debounce_ms == 250
    assert settings.notification_window_days == 7


def test_get_settings_is_cached():
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()


def test_configure_logging_sets_the_package_level():
    logger = configure_logging(Settings(SHOUTSYNC_LOG_LEVEL="debug"))
    try:
        assert logger.name == "shoutsync"
        assert logger.level == logging.DEBUG
    finally:
        logger.setLevel(logging.NOTSET)
