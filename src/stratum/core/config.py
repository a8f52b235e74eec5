"""
Configuration management with TOML + environment variable support.

Configuration hierarchy (later overrides earlier):
1. Default values in code (DEFAULTS)
2. TOML file
3. Environment variables (STRATUM_* prefix)
"""
import copy
import os
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore


DEFAULTS: dict[str, Any] = {
    "database": {
        "path": "./data/stratum.db",
        "busy_timeout_ms": 5000,
    },
    "migrations": {
        "lock_name": "migration_lock",
        "lock_ttl_seconds": 900,
        "timeout_seconds": 300,
        "lock_wait_seconds": 0,
    },
    "logging": {
        "level": "INFO",
        "json": False,
        "file": None,
    },
}

CONFIG_SEARCH_PATHS = [
    Path("config/default.toml"),
    Path("stratum.toml"),
    Path("/etc/stratum/stratum.toml"),
]


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def find_config_file(specified: Optional[Path] = None) -> Optional[Path]:
    """Return the explicit path if it exists, otherwise the first search hit."""
    if specified and specified.exists():
        return specified

    for path in CONFIG_SEARCH_PATHS:
        if path.exists():
            return path

    return None


class ConfigManager:
    """Centralized configuration with TOML + env var support.

    Usage:
        config = ConfigManager(Path("config/default.toml"))
        db_path = config.get("database.path")
        ttl = config.get_float("migrations.lock_ttl_seconds", 900)
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_prefix: str = "STRATUM_",
        defaults: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize ConfigManager.

        Args:
            config_path: Path to TOML config file (optional)
            env_prefix: Prefix for environment variable overrides
            defaults: Base values; the module DEFAULTS when omitted
        """
        self._defaults = DEFAULTS if defaults is None else defaults
        self._data: dict[str, Any] = copy.deepcopy(self._defaults)
        self._overrides: dict[str, Any] = {}
        self._env_prefix = env_prefix
        self._config_path = config_path

        if config_path and config_path.exists():
            self._load_toml(config_path)

    def _load_toml(self, path: Path) -> None:
        """Load configuration from TOML file on top of the defaults."""
        with open(path, "rb") as f:
            self._data = _merge(self._defaults, tomllib.load(f))

    def _get_nested(self, data: dict[str, Any], key: str) -> tuple[bool, Any]:
        """Get a nested value using dot notation.

        Returns (found, value) tuple.
        """
        parts = key.split(".")
        current = data

        for part in parts:
            if not isinstance(current, dict) or part not in current:
                return False, None
            current = current[part]

        return True, current

    def _get_env_value(self, key: str) -> tuple[bool, Any]:
        """Get value from environment variable.

        Converts key like "database.path" to "STRATUM_DATABASE_PATH".
        """
        env_key = self._env_prefix + key.upper().replace(".", "_")
        if env_key in os.environ:
            value = os.environ[env_key]
            return True, self._parse_env_value(value)
        return False, None

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable string to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        return value

    def set(self, key: str, value: Any) -> None:
        """Override a value at runtime (command-line flags).

        Runtime overrides win over environment variables and the file.
        """
        self._overrides[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value with dot notation.

        Args:
            key: Dot-notation key like "database.path"
            default: Default value if key not found

        Returns:
            Configuration value
        """
        if key in self._overrides:
            return self._overrides[key]

        found, value = self._get_env_value(key)
        if found:
            return value

        found, value = self._get_nested(self._data, key)
        if found and value is not None:
            return value

        return default

    def get_section(self, section: str) -> dict[str, Any]:
        """Get entire configuration section.

        Args:
            section: Dot-notation path to section

        Returns:
            Dictionary of section values
        """
        found, value = self._get_nested(self._data, section)
        if found and isinstance(value, dict):
            return value
        return {}

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get configuration value as boolean."""
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    def get_int(self, key: str, default: int = 0) -> int:
        """Get configuration value as integer."""
        value = self.get(key)
        if value is None:
            return default
        return int(value)

    def get_float(self, key: str, default: float = 0.0) -> float:
        """Get configuration value as float."""
        value = self.get(key)
        if value is None:
            return default
        return float(value)

    def reload(self) -> None:
        """Reload configuration from TOML file."""
        if self._config_path and self._config_path.exists():
            self._load_toml(self._config_path)

    @property
    def config_path(self) -> Optional[Path]:
        """Path of the loaded TOML file, if any."""
        return self._config_path

    @property
    def raw_data(self) -> dict[str, Any]:
        """Get raw configuration data (for debugging)."""
        return copy.deepcopy(self._data)
