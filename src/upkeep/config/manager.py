"""Layered configuration for one upkeep invocation.

Later layers win:
1. defaults from the registry
2. the TOML file (``--config``, else $UPKEEP_CONFIG, else config/default.toml)
3. UPKEEP_<SECTION>_<NAME> environment variables, after the .env file is loaded

Every command is a short-lived process, so configuration is read once.
"""

import copy
import os
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib
except ImportError:  # Python < 3.11
    import tomli as tomllib  # type: ignore

import structlog
from dotenv import load_dotenv

from .registry import REGISTRY, get_config_key, get_default_values, validate_config_value

logger = structlog.get_logger(__name__)

ENV_PREFIX = "UPKEEP_"
DEFAULT_CONFIG_FILE = Path("config/default.toml")

SENSITIVE_KEYS = ("telegram_bot_token",)

# warn must not exceed critical
_THRESHOLD_PAIRS = (
    ("resources.mem_warn_pct", "resources.mem_crit_pct"),
    ("resources.disk_warn_pct", "resources.disk_crit_pct"),
    ("resources.service_rss_warn_mb", "resources.service_rss_crit_mb"),
    ("resources.aux_warn_mb", "resources.aux_crit_mb"),
)

_TRUE_WORDS = ("true", "1", "yes", "on")


def _redact_sensitive_value(key: str, value: Any) -> Any:
    if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
        return "[REDACTED]"
    return value


def _flatten(data: dict, prefix: str = "") -> dict[str, Any]:
    """{"service": {"port": 1}} -> {"service.port": 1}"""
    flat: dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            flat.update(_flatten(value, dotted))
        else:
            flat[dotted] = value
    return flat


def _parse_env_value(raw: str, target_type: type) -> Any:
    """Convert an environment string to ``target_type``.

    Lists are comma separated. Raises ValueError when the text does not parse.
    """
    if target_type is bool:
        return raw.strip().lower() in _TRUE_WORDS
    if target_type is int:
        return int(raw)
    if target_type is float:
        return float(raw)
    if target_type is list:
        return [item.strip() for item in raw.split(",") if item.strip()]
    if target_type is str:
        return raw
    raise ValueError(f"Unsupported type for env parsing: {target_type}")


class ConfigManager:
    """Resolved configuration: ``get`` for values, ``path`` for expanded paths."""

    def __init__(self, config_file: Optional[Path] = None, env_file: Optional[Path] = None):
        if config_file is None:
            env_config = os.getenv("UPKEEP_CONFIG")
            config_file = Path(env_config) if env_config else DEFAULT_CONFIG_FILE
        self.config_file = Path(config_file)
        self.env_file = Path(env_file) if env_file is not None else Path(".env")
        self.config: dict[str, Any] = {}

    def _apply_toml(self, config: dict[str, Any]) -> None:
        if not self.config_file.exists():
            logger.debug("config_file_not_found", config_file=str(self.config_file), using_defaults=True)
            return
        with open(self.config_file, "rb") as f:
            flat = _flatten(tomllib.load(f))
        for key, value in flat.items():
            if key in REGISTRY:
                config[key] = value
            else:
                logger.warning("unknown_config_key", key=key, config_file=str(self.config_file))
        logger.debug("toml_config_loaded", config_file=str(self.config_file), keys_count=len(flat))

    def _apply_env(self, config: dict[str, Any]) -> None:
        for key, entry in REGISTRY.items():
            env_key = self.env_key_for(key)
            raw = os.getenv(env_key)
            if raw is None:
                continue
            try:
                config[key] = _parse_env_value(raw, entry.value_type)
            except ValueError as e:
                logger.error("env_parse_error", key=key, env_key=env_key, error=str(e))
                raise ValueError(f"Failed to parse env var {env_key}: {e}") from e
            logger.debug("env_override_applied", key=key, value=_redact_sensitive_value(key, config[key]))

    @staticmethod
    def _validate(config: dict[str, Any]) -> None:
        for key, value in config.items():
            is_valid, reason = validate_config_value(key, value)
            if not is_valid:
                logger.error("config_validation_failed", key=key, error=reason)
                raise ValueError(f"Config validation failed for '{key}': {reason}")
        for warn_key, crit_key in _THRESHOLD_PAIRS:
            if config[warn_key] > config[crit_key]:
                raise ValueError(
                    f"Config validation failed: '{warn_key}' ({config[warn_key]}) "
                    f"exceeds '{crit_key}' ({config[crit_key]})"
                )

    def load(self) -> dict[str, Any]:
        """Resolve all layers and validate the result.

        Raises:
            ValueError: a value fails validation or an environment override does not parse
            OSError: the TOML file exists but cannot be read
        """
        if self.env_file.exists():
            load_dotenv(self.env_file)
            logger.debug("env_file_loaded", env_file=str(self.env_file))

        config = copy.deepcopy(get_default_values())
        self._apply_toml(config)
        self._apply_env(config)
        self._validate(config)

        self.config = config
        logger.debug("config_loaded", keys_count=len(config))
        return config

    def get(self, key: str) -> Any:
        """Value for ``key``, falling back to its default. Unknown keys raise KeyError."""
        return self.config.get(key, get_config_key(key).default)

    def path(self, key: str) -> Path:
        return Path(os.path.expanduser(str(self.get(key))))

    @staticmethod
    def env_key_for(key: str) -> str:
        return ENV_PREFIX + key.replace(".", "_").upper()


def initialize_config(config_file: Optional[Path] = None, env_file: Optional[Path] = None) -> ConfigManager:
    """Build and load the configuration for this process."""
    manager = ConfigManager(config_file, env_file)
    manager.load()
    return manager
