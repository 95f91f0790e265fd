"""Every configuration key upkeep understands, with its type, default and limits.

Keys are ``section.name``. In the TOML file they nest by section; in the
environment they are spelled UPKEEP_<SECTION>_<NAME>, e.g. UPKEEP_SERVICE_PORT
for ``service.port``.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class ConfigKey:
    """Type, default and constraints of one key.

    ``min_value``/``max_value`` only apply to numbers; ``validator`` runs last
    and must return True for an acceptable value.
    """
    value_type: type
    default: Any
    min_value: Optional[Any] = None
    max_value: Optional[Any] = None
    validator: Optional[Callable[[Any], bool]] = None


def _int(default: int, low: Optional[int] = None, high: Optional[int] = None) -> ConfigKey:
    return ConfigKey(int, default, low, high)


def _str(default: str, validator: Optional[Callable[[Any], bool]] = None) -> ConfigKey:
    return ConfigKey(str, default, validator=validator)


def _list(default: list, validator: Optional[Callable[[Any], bool]] = None) -> ConfigKey:
    return ConfigKey(list, default, validator=validator)


def _pct(default: int) -> ConfigKey:
    return _int(default, 1, 100)


DAY = 86400

REGISTRY: dict[str, ConfigKey] = {
    # paths
    "paths.install_dir": _str("/opt/clawdbot"),
    "paths.config_file": _str("~/.openclaw/openclaw.json"),
    "paths.state_dir": _str("~/.openclaw/upgrade-guard"),

    # logging
    "logging.file_path": _str("~/.openclaw/upgrade-guard/upkeep.log"),
    "logging.level": _str("INFO", validator=lambda v: v in LOG_LEVELS),

    # managed service
    "service.host": _str("127.0.0.1"),
    "service.port": _int(18789, 1, 65535),
    "service.health_paths": _list(
        ["/healthz", "/"],
        validator=lambda v: len(v) > 0 and all(str(p).startswith("/") for p in v),
    ),
    "service.http_timeout_seconds": _int(10, 1, 60),
    "service.systemd_unit": _str("clawdbot.service"),
    "service.process_pattern": _str(r"openclaw.*gateway|clawdbot.*gateway|node.*dist/index\.js.*gateway"),
    "service.start_command": _list(
        ["node", "dist/index.js", "gateway", "--port", "{port}"],
        validator=lambda v: len(v) > 0,
    ),
    "service.log_files": _list(
        ["~/.openclaw/logs/gateway.log", "~/.clawdbot/logs/gateway.log", "/tmp/openclaw-gateway.log"]
    ),

    # escalation
    "watchdog.fail_threshold": _int(3, 1, 100),
    "watchdog.restart_timeout_seconds": _int(60, 1, 3600),
    "watchdog.cooldown_seconds": _int(300, 0, DAY),
    "watchdog.rollback_settle_seconds": _int(10, 0, 600),
    "watchdog.interval_seconds": _int(60, 10, 3600),

    # auxiliary messaging channel
    "channel.name": _str("telegram"),
    "channel.error_pattern": _str(r"telegram.*error|telegram.*disconnect|grammY.*error|ETELEGRAM"),
    "channel.error_threshold": _int(3, 0, 1000),
    "channel.window_minutes": _int(2, 1, 60),

    # resource thresholds
    "resources.mem_warn_pct": _pct(80),
    "resources.mem_crit_pct": _pct(90),
    "resources.disk_warn_pct": _pct(80),
    "resources.disk_crit_pct": _pct(90),
    "resources.service_rss_warn_mb": _int(1024, 1),
    "resources.service_rss_crit_mb": _int(2048, 1),
    "resources.aux_process_pattern": _str(r"chrome|chromium|headless_shell"),
    "resources.aux_warn_mb": _int(1024, 1),
    "resources.aux_crit_mb": _int(2048, 1),

    # metrics log
    "metrics.max_samples": _int(1440, 30, 100000),
    "metrics.growth_warn_pct": _int(20, 1, 1000),

    # operator alerts
    "alerts.enabled": ConfigKey(bool, False),
    "alerts.telegram_bot_token": _str(""),
    "alerts.telegram_chat_id": _str(""),
    "alerts.cooldown_seconds": _int(300, 0, DAY),
    "alerts.warn_cooldown_seconds": _int(1800, 0, DAY),

    # upgrade guard
    "guard.remote": _str("origin"),
    "guard.branch": _str("main"),
    "guard.min_free_disk_mb": _int(500, 0),
    "guard.verify_timeout_seconds": _int(30, 1, 600),
    "guard.install_timeout_seconds": _int(600, 30, 7200),
    "guard.rename_from": _str("clawdbot"),
    "guard.rename_to": _str("openclaw"),
    "guard.critical_modules": _list(["pi-ai", "@anthropic-ai/sdk", "grammy"]),
}


def get_config_key(key: str) -> ConfigKey:
    """Registry entry for ``key``.

    Raises:
        KeyError: unknown key
    """
    try:
        return REGISTRY[key]
    except KeyError:
        raise KeyError(f"Configuration key '{key}' not found in registry") from None


def validate_config_value(key: str, value: Any) -> tuple[bool, Optional[str]]:
    """Check ``value`` against the entry for ``key``.

    Returns:
        (True, None) when acceptable, otherwise (False, reason)
    """
    try:
        spec = get_config_key(key)
    except KeyError as e:
        return False, str(e)

    # bool is a subclass of int
    if spec.value_type is int and isinstance(value, bool):
        return False, "Expected type int, got bool"
    if not isinstance(value, spec.value_type):
        return False, f"Expected type {spec.value_type.__name__}, got {type(value).__name__}"

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if spec.min_value is not None and value < spec.min_value:
            return False, f"Value {value} below minimum {spec.min_value}"
        if spec.max_value is not None and value > spec.max_value:
            return False, f"Value {value} above maximum {spec.max_value}"

    if spec.validator is not None:
        try:
            accepted = spec.validator(value)
        except (TypeError, ValueError, AttributeError) as e:
            return False, f"Validator error: {e}"
        if not accepted:
            return False, f"Custom validation failed for value: {value}"

    return True, None


def get_default_values() -> dict[str, Any]:
    return {key: entry.default for key, entry in REGISTRY.items()}
