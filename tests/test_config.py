import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from flowops.config import LogLevel, Settings, StorageBackend, TriggerPolicy


class TestSettings:
    """Test Settings configuration loading and validation."""

    def test_default_settings(self):
        """Test default settings values."""
        settings = Settings()

        assert settings.api_title == "FlowOps Pipeline Simulator"
        assert settings.api_version == "0.1.0"
        assert settings.allow_origins == ["*"]
        assert settings.storage_backend == StorageBackend.memory
        assert settings.failure_probability == 0.1
        assert settings.stage_duration_min == 2
        assert settings.stage_duration_max == 4
        assert settings.stage_log_window == 2.0
        assert settings.stage_pause == 0.5
        assert settings.cycle_pause == 1.0
        assert settings.log_capacity == 50
        assert settings.chart_capacity == 20
        assert settings.trigger_policy == TriggerPolicy.queue

    @patch.dict(
        os.environ,
        {
            "FLOWOPS_API_TITLE": "Custom API Title",
            "FLOWOPS_API_VERSION": "1.2.3",
            "FLOWOPS_LOG_LEVEL": "DEBUG",
        },
    )
    def test_environment_override(self):
        """Test that environment variables override defaults."""
        settings = Settings()

        assert settings.api_title == "Custom API Title"
        assert settings.api_version == "1.2.3"
        assert settings.log_level == LogLevel.DEBUG

    @patch.dict(
        os.environ,
        {"FLOWOPS_ALLOW_ORIGINS": '["https://example.com", "https://app.example.com"]'},
    )
    def test_list_environment_variables(self):
        """Test parsing list environment variables."""
        settings = Settings()

        assert settings.allow_origins == [
            "https://example.com",
            "https://app.example.com",
        ]

    @patch.dict(
        os.environ,
        {
            "FLOWOPS_FAILURE_PROBABILITY": "0.25",
            "FLOWOPS_TRIGGER_POLICY": "restart",
            "FLOWOPS_RANDOM_SEED": "42",
            "FLOWOPS_STORAGE_BACKEND": "database",
            "FLOWOPS_DATABASE_URL": "sqlite:///flowops.db",
        },
    )
    def test_simulation_configuration(self):
        """Test simulation constants from environment."""
        settings = Settings()

        assert settings.failure_probability == 0.25
        assert settings.trigger_policy == TriggerPolicy.restart
        assert settings.random_seed == 42
        assert settings.database_enabled is True

    def test_log_level_case_insensitive(self):
        """Test that log level handling works with different cases."""
        for env_value, expected in [
            ("debug", LogLevel.DEBUG),
            ("Info", LogLevel.INFO),
            ("error", LogLevel.ERROR),
        ]:
            with patch.dict(os.environ, {"FLOWOPS_LOG_LEVEL": env_value}):
                assert Settings().log_level == expected

    def test_failure_probability_bounds(self):
        with pytest.raises(ValidationError):
            Settings(failure_probability=1.5)
        with pytest.raises(ValidationError):
            Settings(failure_probability=-0.1)

    def test_duration_range_validation(self):
        with pytest.raises(ValidationError):
            Settings(stage_duration_min=5, stage_duration_max=2)

    def test_database_disabled_without_url(self):
        settings = Settings(storage_backend=StorageBackend.database, database_url=None)
        assert settings.database_enabled is False

    def test_is_production(self):
        assert Settings(log_level="ERROR").is_production
        assert not Settings(log_level="INFO").is_production

    @patch("flowops.config.logging")
    def test_environment_rules_warn(self, mock_logging):
        settings = Settings(log_level="ERROR", storage_backend=StorageBackend.database)
        settings.validate_environment_specific_rules()
        assert mock_logging.warning.call_count == 2

    def test_settings_model_config(self):
        """Test that settings model configuration is correct."""
        config = Settings().model_config
        assert config["env_prefix"] == "FLOWOPS_"
        assert config["env_file"] == ".env"
        assert config["env_file_encoding"] == "utf-8"
