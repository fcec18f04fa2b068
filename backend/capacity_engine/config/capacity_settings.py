"""
Capacity engine configuration loader.

Loads allocation, token and maintenance tunables from config/capacity.yml.

Consumers:
  - SlotAllocator: optimistic retry budget
  - TokenLifecycleManager: default token validity and batch limit
  - MaintenanceSweeper: per-run batch size and expiring-soon window

Usage:
    from capacity_engine.config.capacity_settings import get_capacity_settings

    settings = get_capacity_settings()
    settings.get_max_retries()  # 3
    settings.get_default_token_expiration_days()  # 30
"""

import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV_VAR = "CAPACITY_CONFIG_PATH"

_DEFAULTS: Dict[str, Dict[str, int]] = {
    "allocation": {
        "max_retries": 3,
    },
    "tokens": {
        "default_expiration_days": 30,
        "max_batch": 100,
    },
    "maintenance": {
        "batch_size": 500,
        "expiring_soon_days": 7,
    },
}


class CapacitySettingsLoader:
    """
    Thread-safe singleton loader for config/capacity.yml.

    Missing files and missing or invalid keys fall back to built-in defaults.
    """

    _instance: Optional["CapacitySettingsLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv(CONFIG_PATH_ENV_VAR)
        self._raw: Dict[str, Any] = {}
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            path = Path(self._config_path)
            if not path.exists():
                raise FileNotFoundError(f"capacity.yml not found at {path}")
            return path

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "capacity.yml",
            Path(os.getcwd()) / "config" / "capacity.yml",
            Path(os.getcwd()) / ".." / "config" / "capacity.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"capacity.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading capacity settings from %s", path)

                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}

                logger.info(
                    "Loaded capacity settings: sections=%s",
                    sorted(self._raw.keys()),
                )
            except FileNotFoundError:
                logger.warning("capacity.yml not found, using fallback defaults")
                self._raw = {}

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    def _get_positive_int(self, section: str, key: str) -> int:
        default = _DEFAULTS[section][key]
        value = (self._raw.get(section) or {}).get(key, default)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            logger.warning(
                "Invalid capacity setting, using default",
                extra={"section": section, "key": key, "value": value, "default": default},
            )
            return default
        return value

    def get_max_retries(self) -> int:
        """Maximum optimistic attempts per allocation call."""
        return self._get_positive_int("allocation", "max_retries")

    def get_default_token_expiration_days(self) -> int:
        return self._get_positive_int("tokens", "default_expiration_days")

    def get_max_token_batch(self) -> int:
        """Upper bound on tokens created by one admin call."""
        return self._get_positive_int("tokens", "max_batch")

    def get_batch_size(self) -> int:
        """Maximum trainers swept per reconciliation pass."""
        return self._get_positive_int("maintenance", "batch_size")

    def get_expiring_soon_days(self) -> int:
        return self._get_positive_int("maintenance", "expiring_soon_days")

    def get_all(self) -> Dict[str, Any]:
        """Return the effective settings for API exposure."""
        return {
            "allocation": {"max_retries": self.get_max_retries()},
            "tokens": {
                "default_expiration_days": self.get_default_token_expiration_days(),
                "max_batch": self.get_max_token_batch(),
            },
            "maintenance": {
                "batch_size": self.get_batch_size(),
                "expiring_soon_days": self.get_expiring_soon_days(),
            },
        }


def get_capacity_settings(
    config_path: Optional[str] = None,
) -> CapacitySettingsLoader:
    """Return the singleton CapacitySettingsLoader."""
    return CapacitySettingsLoader(config_path)


def reset_capacity_settings() -> None:
    """Reset singleton (for tests only)."""
    CapacitySettingsLoader._instance = None
