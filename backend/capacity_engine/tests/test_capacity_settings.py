"""
Tests for the capacity settings loader.

Tests cover:
- Fallback defaults when the YAML file is missing
- Overrides from a YAML file and from CAPACITY_CONFIG_PATH
- Invalid values falling back to defaults
- Singleton behaviour and reset
"""

import pytest

from capacity_engine.config.capacity_settings import (
    CONFIG_PATH_ENV_VAR,
    get_capacity_settings,
    reset_capacity_settings,
)


class TestCapacitySettingsDefaults:
    """Loader without a usable config file."""

    def test_missing_file_uses_defaults(self, temp_config_dir):
        settings = get_capacity_settings(str(temp_config_dir / "absent.yml"))

        assert settings.get_max_retries() == 3
        assert settings.get_default_token_expiration_days() == 30
        assert settings.get_max_token_batch() == 100
        assert settings.get_batch_size() == 500
        assert settings.get_expiring_soon_days() == 7

    def test_get_all_reports_effective_values(self, temp_config_dir):
        settings = get_capacity_settings(str(temp_config_dir / "absent.yml"))

        assert settings.get_all() == {
            "allocation": {"max_retries": 3},
            "tokens": {"default_expiration_days": 30, "max_batch": 100},
            "maintenance": {"batch_size": 500, "expiring_soon_days": 7},
        }


class TestCapacitySettingsOverrides:
    """Loader reading a YAML file."""

    def test_yaml_values_override_defaults(self, make_yaml_config):
        path = make_yaml_config("capacity.yml", {
            "allocation": {"max_retries": 5},
            "tokens": {"default_expiration_days": 14},
        })

        settings = get_capacity_settings(str(path))

        assert settings.get_max_retries() == 5
        assert settings.get_default_token_expiration_days() == 14
        assert settings.get_max_token_batch() == 100

    def test_env_var_selects_file(self, make_yaml_config, monkeypatch):
        path = make_yaml_config("capacity.yml", {"maintenance": {"expiring_soon_days": 3}})
        monkeypatch.setenv(CONFIG_PATH_ENV_VAR, str(path))

        assert get_capacity_settings().get_expiring_soon_days() == 3

    @pytest.mark.parametrize("bad_value", [0, -2, "three", True, None])
    def test_invalid_values_fall_back(self, make_yaml_config, bad_value):
        path = make_yaml_config("capacity.yml", {"allocation": {"max_retries": bad_value}})

        assert get_capacity_settings(str(path)).get_max_retries() == 3

    def test_reload_picks_up_changes(self, make_yaml_config):
        path = make_yaml_config("capacity.yml", {"tokens": {"max_batch": 10}})
        settings = get_capacity_settings(str(path))
        assert settings.get_max_token_batch() == 10

        make_yaml_config("capacity.yml", {"tokens": {"max_batch": 20}})
        settings.reload()

        assert settings.get_max_token_batch() == 20


class TestCapacitySettingsSingleton:

    def test_same_instance_until_reset(self, temp_config_dir):
        first = get_capacity_settings(str(temp_config_dir / "absent.yml"))
        assert get_capacity_settings() is first

        reset_capacity_settings()

        assert get_capacity_settings(str(temp_config_dir / "absent.yml")) is not first
