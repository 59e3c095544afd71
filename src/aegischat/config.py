"""
Aegis - Configuration Management

This module handles loading, merging, and managing the session core's
tunables from TOML files and environment variables. Supports default
values and runtime configuration updates. Key material is never part
of the configuration.

Author: aegischat contributors
Version: 0.3.0
"""

import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    FILE_CHUNK_SIZE,
    FINGERPRINT_LENGTH,
    LOG_DATE_FORMAT,
    LOG_FORMAT,
    MAX_AUTH_FAILURES,
    MAX_FILE_SIZE,
    MAX_REORDER_BUFFER,
    REKEY_THRESHOLD,
)
from .errors import ConfigError, ErrorCode

logger = logging.getLogger(__name__)

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "ratchet": {
        "rekey_threshold": REKEY_THRESHOLD,
        "max_auth_failures": MAX_AUTH_FAILURES,
        "max_reorder_buffer": MAX_REORDER_BUFFER,
    },
    "identity": {
        "fingerprint_length": FINGERPRINT_LENGTH,
    },
    "transfer": {
        "chunk_size": FILE_CHUNK_SIZE,
        "max_file_size": MAX_FILE_SIZE,
    },
    "logging": {
        "level": "INFO",
    },
}

# Lower bounds for integer settings
_MINIMUMS: Dict[str, Dict[str, int]] = {
    "ratchet": {"rekey_threshold": 1, "max_auth_failures": 1, "max_reorder_buffer": 0},
    "identity": {"fingerprint_length": 16},
    "transfer": {"chunk_size": 1, "max_file_size": 0},
}


class Config:
    """Configuration manager for Aegis.

    Loads configuration from TOML files, merges with defaults,
    and applies environment variable overrides.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses default location
        """
        if config_path is None:
            data_dir = Path(DEFAULT_DATA_DIR).expanduser()
            config_path = data_dir / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()

    @classmethod
    def defaults(cls) -> "Config":
        """Build a configuration from built-in defaults only.

        No file is read and no environment override is applied.
        """
        config = cls.__new__(cls)
        config.config_path = Path(DEFAULT_DATA_DIR).expanduser() / CONFIG_FILENAME
        config.data = copy.deepcopy(DEFAULT_CONFIG)
        return config

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Returns:
            Merged configuration dictionary

        Raises:
            ConfigError: If configuration loading, parsing or validation fails
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e
            except OSError as e:
                raise ConfigError(
                    ErrorCode.E701_CONFIG_LOAD_FAILED,
                    f"Failed to read configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e

            config = self._merge_config(config, file_config)

        config = self._apply_env_overrides(config)
        self._validate(config)

        return config

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config.

        Args:
            base: Base configuration dictionary
            override: Override configuration dictionary

        Returns:
            Merged configuration dictionary
        """
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: AEGIS_SECTION_KEY
        For example: AEGIS_RATCHET_REKEY_THRESHOLD=50

        Args:
            config: Base configuration dictionary

        Returns:
            Configuration with environment overrides applied
        """
        result = copy.deepcopy(config)

        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key in settings:
                env_var = f"AEGIS_{section.upper()}_{key.upper()}"
                env_value = os.environ.get(env_var)

                if env_value is not None:
                    original_type = type(settings[key])
                    try:
                        if original_type == bool:
                            result[section][key] = env_value.lower() in ("true", "1", "yes")
                        elif original_type == int:
                            result[section][key] = int(env_value)
                        elif original_type == float:
                            result[section][key] = float(env_value)
                        else:
                            result[section][key] = env_value
                    except ValueError:
                        # Keep original value if conversion fails
                        logger.warning(f"Ignoring {env_var}: expected {original_type.__name__}")

        return result

    def _validate(self, config: Dict[str, Any]) -> None:
        """Check integer settings against their lower bounds.

        Raises:
            ConfigError: If a value has the wrong type or is out of range
        """
        for section, bounds in _MINIMUMS.items():
            for key, minimum in bounds.items():
                value = config.get(section, {}).get(key)
                if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
                    raise ConfigError(
                        ErrorCode.E703_INVALID_CONFIG,
                        f"Invalid value for {section}.{key}: {value!r}",
                        {"section": section, "key": key, "minimum": minimum},
                    )

        level = config.get("logging", {}).get("level")
        if not isinstance(level, str) or not isinstance(logging.getLevelName(level.upper()), int):
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                f"Invalid logging level: {level!r}",
                {"section": "logging", "key": "level"},
            )

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            section: Configuration section name
            key: Configuration key name
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value.

        Args:
            section: Configuration section name
            key: Configuration key name
            value: Value to set

        Raises:
            ConfigError: If the value fails the same checks as a loaded file
        """
        updated = copy.deepcopy(self.data)
        updated.setdefault(section, {})[key] = value
        self._validate(updated)
        self.data = updated

    @property
    def rekey_threshold(self) -> int:
        return self.get("ratchet", "rekey_threshold", REKEY_THRESHOLD)

    @property
    def max_auth_failures(self) -> int:
        return self.get("ratchet", "max_auth_failures", MAX_AUTH_FAILURES)

    @property
    def max_reorder_buffer(self) -> int:
        return self.get("ratchet", "max_reorder_buffer", MAX_REORDER_BUFFER)

    @property
    def fingerprint_length(self) -> int:
        return self.get("identity", "fingerprint_length", FINGERPRINT_LENGTH)

    @property
    def chunk_size(self) -> int:
        return self.get("transfer", "chunk_size", FILE_CHUNK_SIZE)

    @property
    def max_file_size(self) -> int:
        return self.get("transfer", "max_file_size", MAX_FILE_SIZE)

    def save(self) -> None:
        """Save current configuration to file.

        Raises:
            ConfigError: If saving fails
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

            with open(self.config_path, "w", encoding="utf-8") as f:
                self._write_toml(f, self.data)

        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
            ) from e

    def _write_toml(self, file, data: Dict[str, Any]) -> None:
        """Write configuration data as TOML format.

        Args:
            file: File object to write to
            data: Configuration data to write
        """
        for section, settings in data.items():
            if isinstance(settings, dict):
                file.write(f"[{section}]\n")
                for key, value in settings.items():
                    if isinstance(value, bool):
                        file.write(f"{key} = {str(value).lower()}\n")
                    elif isinstance(value, (int, float)):
                        file.write(f"{key} = {value}\n")
                    elif isinstance(value, str):
                        file.write(f'{key} = "{value}"\n')
                file.write("\n")

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary.

        Returns:
            Configuration dictionary
        """
        return copy.deepcopy(self.data)

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Create an example configuration file.

        Args:
            path: Path where to create the example config

        Raises:
            ConfigError: If file creation fails
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)

            with open(path, "w", encoding="utf-8") as f:
                f.write("# Aegis Configuration File\n")
                f.write("# Generated example configuration\n\n")
                cls.defaults()._write_toml(f, DEFAULT_CONFIG)

        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to create example configuration: {e}",
                {"path": str(path), "error": str(e)},
            ) from e


def setup_logging(config: Optional[Config] = None) -> None:
    """Configure the ``aegischat`` logger from the ``[logging]`` section.

    Args:
        config: Configuration to read the level from (defaults when omitted)
    """
    config = config or Config.defaults()
    level = config.get("logging", "level", "INFO").upper()

    package_logger = logging.getLogger("aegischat")
    package_logger.setLevel(level)

    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        package_logger.addHandler(handler)
