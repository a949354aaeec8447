"""
Tests for environment configuration.
"""

from ..config import Settings


class TestSettings:
    """Tests for Settings.from_env."""

    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.env == "development"
        assert settings.data_dir is None
        assert settings.default_board == "sales"
        assert settings.stage_card_limit == 50
        assert settings.allowed_origins == ["*"]
        assert not settings.is_production

    def test_overrides(self):
        settings = Settings.from_env({
            "STAGEFLOW_ENV": "production",
            "STAGEFLOW_DATA_DIR": "/var/lib/stageflow",
            "STAGEFLOW_DEFAULT_BOARD": "support",
            "STAGEFLOW_STAGE_CARD_LIMIT": "10",
            "STAGEFLOW_SUBSCRIBER_QUEUE": "32",
            "STAGEFLOW_LOG_LEVEL": "debug",
            "ALLOWED_ORIGINS": "https://a.example, https://b.example",
        })
        assert settings.is_production
        assert settings.data_dir == "/var/lib/stageflow"
        assert settings.default_board == "support"
        assert settings.stage_card_limit == 10
        assert settings.subscriber_queue == 32
        assert settings.log_level == "DEBUG"
        assert settings.allowed_origins == ["https://a.example", "https://b.example"]
