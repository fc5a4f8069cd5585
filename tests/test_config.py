import pytest
import os
import sys
from unittest.mock import patch

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Settings
from tools.errors import ConfigurationError


class TestSettings:
    """Test environment-driven settings."""

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env(dotenv=False)

        assert settings.crm_webhook_url is None
        assert settings.port == 8000
        assert settings.fallback_queue is True
        assert settings.forwarding_enabled is False

    def test_from_env(self):
        env = {
            "CRM_WEBHOOK_URL": "https://crm.example.com/hook",
            "WEBHOOK_SECRET": "s3cret",
            "WEBHOOK_PORT": "9000",
            "LOG_LEVEL": "debug",
            "RETRY_MAX_RETRIES": "5",
            "RETRY_BASE_DELAY": "0.5",
            "FALLBACK_QUEUE": "false",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env(dotenv=False)

        assert settings.forwarding_enabled is True
        assert settings.webhook_secret == "s3cret"
        assert settings.port == 9000
        assert settings.log_level == "DEBUG"

        retry = settings.retry_config()
        assert retry.max_retries == 5
        assert retry.base_delay == 0.5
        assert retry.fallback_queue is False

    def test_forwarding_switch(self):
        env = {"CRM_WEBHOOK_URL": "https://crm.example.com/hook", "FORWARD_TO_CRM": "no"}
        with patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env(dotenv=False)

        assert settings.forwarding_enabled is False

    def test_relay_limits(self):
        env = {
            "LOG_FILE": "",
            "ENABLE_CORS": "off",
            "CORS_ORIGINS": "https://a.example.com, https://b.example.com",
            "MAX_PAYLOAD_BYTES": "1024",
            "RATE_LIMIT_MAX": "10",
            "RATE_LIMIT_WINDOW": "60",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env(dotenv=False)

        assert settings.log_file is None
        assert settings.enable_cors is False
        assert settings.cors_origins == ("https://a.example.com", "https://b.example.com")
        assert settings.max_payload_bytes == 1024
        assert settings.rate_limit_max == 10
        assert settings.rate_limit_window == 60.0

    @pytest.mark.parametrize("name, value", [
        ("WEBHOOK_PORT", "eighty"),
        ("WEBHOOK_PORT", "70000"),
        ("FORWARD_TO_CRM", "maybe"),
        ("LOG_LEVEL", "LOUD"),
        ("RETRY_MAX_RETRIES", "-1"),
        ("RATE_LIMIT_MAX", "-5"),
        ("MAX_PAYLOAD_BYTES", "0"),
    ])
    def test_invalid_values(self, name, value):
        with patch.dict(os.environ, {name: value}, clear=True):
            with pytest.raises(ConfigurationError):
                Settings.from_env(dotenv=False).retry_config()

if __name__ == "__main__":
    # Run tests
    pytest.main([__file__, "-v"])
