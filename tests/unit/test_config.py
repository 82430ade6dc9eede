"""
Unit tests for settings validation
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.config import Settings, validate_settings
from core.exceptions import ConfigurationError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestValidateSettings:
    """Test defaults and cross-field rules"""

    def test_defaults_are_valid(self):
        conf = validate_settings(make_settings(), now=lambda: NOW)

        assert conf.START_TIME == NOW - timedelta(days=30)
        assert conf.MAX_ATTEMPTS == 3
        assert conf.DEFAULT_RETRY_AFTER == 10
        assert conf.STORAGE_ONLY is False

    def test_explicit_start_time_kept_in_utc(self):
        conf = validate_settings(make_settings(START_TIME="2024-01-01T00:00:00"), now=lambda: NOW)

        assert conf.START_TIME == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_no_warehouse_forces_storage_only(self):
        conf = validate_settings(make_settings(WAREHOUSE_PROVIDER="none"), now=lambda: NOW)

        assert conf.STORAGE_ONLY is True

    def test_provider_names_normalised(self):
        conf = validate_settings(
            make_settings(STORAGE_PROVIDER=" S3 ", S3_BUCKET="b", PIPELINE_MODE="Staged"),
            now=lambda: NOW
        )

        assert conf.STORAGE_PROVIDER == "s3"
        assert conf.PIPELINE_MODE == "staged"

    @pytest.mark.parametrize("overrides", [
        {"STORAGE_PROVIDER": "gcs"},
        {"WAREHOUSE_PROVIDER": "snowflake"},
        {"PIPELINE_MODE": "parallel"},
        {"STORAGE_PROVIDER": "s3"},
        {"SAVE_AS_JSON": True},
        {"SAVE_AS_JSON": True, "STORAGE_ONLY": True, "GROUP_FILES_BY_DAY": True},
        {"BACKOFF_SECONDS": -1},
        {"BACKOFF_STEPS_MAX": -1},
        {"MAX_ATTEMPTS": 0},
        {"PIPELINE_QUEUE_SIZE": 0},
    ])
    def test_invalid_combinations(self, overrides):
        with pytest.raises(ConfigurationError):
            validate_settings(make_settings(**overrides), now=lambda: NOW)

    def test_json_output_storage_only(self):
        conf = validate_settings(make_settings(SAVE_AS_JSON=True, STORAGE_ONLY=True), now=lambda: NOW)

        assert conf.SAVE_AS_JSON is True
