"""Tests for settings validation and the message id cache."""

import pytest
from pydantic import ValidationError

from streamnotify.core.cache import MessageIdCache
from streamnotify.core.config import Settings

BASE = {
    "client_id": "cid",
    "client_secret": "csecret",
    "redirect_url": "https://notify.example.com/oauth/callback",
    "eventsub_secret": "0123456789",
    "callback_url": "https://notify.example.com/_notify/twitch",
    "bot_url": "https://bot.example.com/live",
    "database_url": "postgresql://u:p@localhost/db",
}


@pytest.mark.unit
class TestSettings:
    def test_defaults(self):
        settings = Settings(**BASE)

        assert settings.port == 3000
        assert settings.token_refresh_margin == 300
        assert settings.message_dedup_ttl == 600
        assert settings.log_level == "INFO"

    def test_log_level_is_normalized(self):
        assert Settings(**BASE, log_level="debug").log_level == "DEBUG"
        assert Settings(**BASE, log_level="verbose").log_level == "INFO"

    @pytest.mark.parametrize("secret", ["short", "x" * 101])
    def test_eventsub_secret_length(self, secret):
        with pytest.raises(ValidationError):
            Settings(**{**BASE, "eventsub_secret": secret})

    def test_database_url_scheme(self):
        with pytest.raises(ValidationError):
            Settings(**{**BASE, "database_url": "mysql://u:p@localhost/db"})

    def test_environment_flags(self):
        settings = Settings(**BASE, environment="Production")

        assert settings.is_production
        assert not settings.is_development


@pytest.mark.unit
class TestMessageIdCache:
    def test_records_and_detects(self):
        cache = MessageIdCache()

        assert not cache.seen("m1")
        cache.record("m1")
        assert cache.seen("m1")
        assert cache.size == 1

    def test_bounded(self):
        cache = MessageIdCache(maxsize=2)
        for message_id in ("m1", "m2", "m3"):
            cache.record(message_id)

        assert cache.size == 2
