"""
Configuration management with TOML + environment variable support.

Configuration hierarchy (later overrides earlier):
1. Default values in code
2. TOML file
3. Environment variables (FLYWHEEL_* prefix)
4. Runtime overrides (ConfigManager.set, used for CLI flags)
"""
import os
import tomllib
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional


class ConfigManager:
    """Centralized configuration with TOML + env var support.

    Usage:
        config = ConfigManager(Path("config/flywheel.toml"))
        cron = config.get("scheduler.buyback_cron", "10,25,40,55 * * * *")
        reserve = config.get_decimal("thresholds.reserve_sol", Decimal("0.1"))
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_prefix: str = "FLYWHEEL_",
    ) -> None:
        """Initialize ConfigManager.

        Args:
            config_path: Path to TOML config file (optional)
            env_prefix: Prefix for environment variable overrides
        """
        self._data: dict[str, Any] = {}
        self._overrides: dict[str, Any] = {}
        self._env_prefix = env_prefix
        self._config_path = config_path

        if config_path and config_path.exists():
            self._load_toml(config_path)

    def _load_toml(self, path: Path) -> None:
        with open(path, "rb") as f:
            self._data = tomllib.load(f)

    def _get_nested(self, data: dict[str, Any], key: str) -> tuple[bool, Any]:
        """Get a nested value using dot notation.

        Returns (found, value) tuple.
        """
        current: Any = data
        for part in key.split("."):
            if not isinstance(current, dict) or part not in current:
                return False, None
            current = current[part]
        return True, current

    def _get_env_value(self, key: str) -> tuple[bool, Any]:
        """Get value from environment variable.

        Converts key like "scheduler.burn_after_buyback" to
        "FLYWHEEL_SCHEDULER_BURN_AFTER_BUYBACK".
        """
        env_key = self._env_prefix + key.upper().replace(".", "_")
        if env_key in os.environ:
            return True, self._parse_env_value(os.environ[env_key])
        return False, None

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable string to appropriate type.

        Cron expressions contain spaces and commas, so only values without
        whitespace are split into lists.
        """
        lowered = value.lower()
        if lowered in ("true", "yes", "on"):
            return True
        if lowered in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if "," in value and " " not in value.strip():
            return [v.strip() for v in value.split(",") if v.strip()]

        return value

    def set(self, key: str, value: Any) -> None:
        """Override a value at runtime (e.g. from command-line flags)."""
        self._overrides[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value with dot notation.

        Runtime overrides win, then environment variables, then TOML values.
        """
        if key in self._overrides:
            return self._overrides[key]

        found, value = self._get_env_value(key)
        if found:
            return value

        found, value = self._get_nested(self._data, key)
        if found:
            return value

        return default

    def get_section(self, section: str) -> dict[str, Any]:
        """Get entire configuration section."""
        found, value = self._get_nested(self._data, section)
        if found and isinstance(value, dict):
            return value
        return {}

    def get_str(self, key: str, default: str = "") -> str:
        value = self.get(key)
        if value is None:
            return default
        return str(value)

    def get_decimal(self, key: str, default: Decimal = Decimal("0")) -> Decimal:
        value = self.get(key)
        if value is None:
            return default
        return Decimal(str(value))

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        if value is None:
            return default
        return int(value)

    def get_float(self, key: str, default: float = 0.0) -> float:
        value = self.get(key)
        if value is None:
            return default
        return float(value)

    def get_list(self, key: str, default: Optional[list[Any]] = None) -> list[Any]:
        """Get configuration value as list.

        Strings are split on commas, so both TOML arrays and
        ``FLYWHEEL_BURN_EXCLUDE_MINTS=a,b`` style values work.
        """
        if default is None:
            default = []
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return [value]

    def reload(self) -> None:
        """Reload configuration from TOML file."""
        if self._config_path and self._config_path.exists():
            self._load_toml(self._config_path)

    @property
    def raw_data(self) -> dict[str, Any]:
        """Get raw configuration data (for debugging)."""
        return self._data.copy()
