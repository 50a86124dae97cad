from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import os
from pathlib import Path
from typing import Any, Callable, Mapping, cast
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

CURRENT_CONFIG_VERSION = 1

LOGGER = logging.getLogger(__name__)

SUBSCRIBER_MODES = {"fixed", "allow_list"}

_CONFIG_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {}

_DEFAULT_CONFIG_VALUES: dict[str, Any] = {
    "poll_interval_seconds": 60,
    "lookback_minutes": 30,
    "max_body_length": 1024,
    "mailbox": "INBOX",
    "reconnect_max_attempts": 5,
    "reconnect_base_delay_seconds": 1.0,
    "notify_when_disconnected": False,
    "disconnected_notice_cooldown_seconds": 300,
    "display_timezone": "Europe/Moscow",
    "log_file": "logs/mailwatch.log",
    "log_level": "INFO",
    "log_console_level": "INFO",
    "log_console_enabled": True,
    "log_max_bytes": 5_000_000,
    "log_backup_count": 3,
    "config_version": CURRENT_CONFIG_VERSION,
}

_ENV_REQUIRED = (
    "EMAIL_ADDRESS",
    "EMAIL_PASSWORD",
    "IMAP_HOST",
    "IMAP_PORT",
    "BOT_TOKEN",
    "CHRONOS_CHAT_ID",
)


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid; fatal at startup."""


def get_user_data_dir() -> Path:
    override = os.environ.get("MAILWATCH_DATA_DIR")
    if override:
        return Path(override)
    return Path.home() / ".mailwatch"


@dataclass(frozen=True)
class ImapConfig:
    host: str
    port: int
    user: str
    password: str
    use_tls: bool = True
    tls_verify: bool = True
    timeout_seconds: int = 30


@dataclass(frozen=True)
class TelegramConfig:
    token: str
    api_url: str = "https://api.telegram.org"
    timeout_seconds: int = 30
    retry_attempts: int = 2
    retry_backoff_seconds: float = 1.0
    poll_commands: bool = True
    poll_timeout_seconds: int = 30


@dataclass(frozen=True)
class SubscribersConfig:
    mode: str
    target: str = ""
    allow_list: list[str] = field(default_factory=lambda: cast(list[str], []))


@dataclass(frozen=True)
class AppConfig:
    imap: ImapConfig
    telegram: TelegramConfig
    subscribers: SubscribersConfig
    poll_interval_seconds: int = 60
    lookback_minutes: int = 30
    max_body_length: int = 1024
    mailbox: str = "INBOX"
    reconnect_max_attempts: int = 5
    reconnect_base_delay_seconds: float = 1.0
    notify_when_disconnected: bool = False
    disconnected_notice_cooldown_seconds: int = 300
    display_timezone: str = "Europe/Moscow"
    log_file: str = "logs/mailwatch.log"
    log_level: str = "INFO"
    log_console_level: str = "INFO"
    log_console_enabled: bool = True
    log_max_bytes: int = 5_000_000
    log_backup_count: int = 3
    config_version: int = CURRENT_CONFIG_VERSION


def _migrate_config_data(data: dict[str, Any]) -> dict[str, Any]:
    version_raw = data.get("config_version", CURRENT_CONFIG_VERSION)
    try:
        version = int(version_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError("config_version must be an integer") from exc
    if version > CURRENT_CONFIG_VERSION:
        raise ConfigError(
            "config_version is newer than supported: "
            f"{version} > {CURRENT_CONFIG_VERSION}"
        )
    if version < 1:
        raise ConfigError("config_version must be >= 1")
    migrated = dict(data)
    while version < CURRENT_CONFIG_VERSION:
        migrate = _CONFIG_MIGRATIONS.get(version)
        if migrate is None:
            raise ConfigError(f"Unsupported config_version {version}: no migration available")
        migrated = migrate(migrated)
        version = int(migrated.get("config_version", version + 1))
    migrated["config_version"] = CURRENT_CONFIG_VERSION
    return migrated


def _apply_config_defaults(data: dict[str, Any]) -> dict[str, Any]:
    missing: list[str] = []
    updated = dict(data)
    for key, value in _DEFAULT_CONFIG_VALUES.items():
        if key not in updated:
            updated[key] = value
            missing.append(key)
    if missing:
        LOGGER.info(
            "Defaults applied for missing keys: %s",
            ", ".join(sorted(missing)),
            extra={"category": "config"},
        )
    return updated


def _get_required(data: Mapping[str, Any], key: str, *, section: str = "") -> Any:
    label = f"{section}.{key}" if section else key
    if key not in data:
        raise ConfigError(f"Missing required config key: {label}")
    value = data[key]
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigError(f"Missing required config key: {label}")
    return value


def _get_section(data: Mapping[str, Any], key: str) -> dict[str, Any]:
    raw = data.get(key)
    if raw is None:
        raise ConfigError(f"Missing required config section: {key}")
    if not isinstance(raw, dict):
        raise ConfigError(f"{key} must be a mapping")
    return cast(dict[str, Any], raw)


def _as_int(value: Any, label: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be an integer") from exc


_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


def _as_bool(value: Any, label: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ConfigError(f"{label} must be true or false")


def _as_float(value: Any, label: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be a number") from exc


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        raw: object = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("Config must be a mapping")
    return cast(dict[str, Any], raw)


def _split_ids(raw: Any, label: str) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (str, int)):
        return [item.strip() for item in str(raw).split(",") if item.strip()]
    if isinstance(raw, list):
        return [str(item).strip() for item in cast(list[object], raw) if str(item).strip()]
    raise ConfigError(f"{label} must be a list or comma-separated string")


def _build_imap_config(data: dict[str, Any]) -> ImapConfig:
    password = os.environ.get("MAILWATCH_IMAP_PASSWORD") or data.get("password")
    if not password:
        raise ConfigError(
            "Missing required config key: imap.password "
            "(or set MAILWATCH_IMAP_PASSWORD)"
        )
    return ImapConfig(
        host=str(_get_required(data, "host", section="imap")),
        port=_as_int(_get_required(data, "port", section="imap"), "imap.port"),
        user=str(_get_required(data, "user", section="imap")),
        password=str(password),
        use_tls=_as_bool(data.get("use_tls", True), "imap.use_tls"),
        tls_verify=_as_bool(data.get("tls_verify", True), "imap.tls_verify"),
        timeout_seconds=_as_int(data.get("timeout_seconds", 30), "imap.timeout_seconds"),
    )


def _build_telegram_config(data: dict[str, Any]) -> TelegramConfig:
    token = os.environ.get("MAILWATCH_TELEGRAM_TOKEN") or data.get("token")
    if not token:
        raise ConfigError(
            "Missing required config key: telegram.token "
            "(or set MAILWATCH_TELEGRAM_TOKEN)"
        )
    return TelegramConfig(
        token=str(token),
        api_url=str(data.get("api_url", "https://api.telegram.org")).rstrip("/"),
        timeout_seconds=_as_int(data.get("timeout_seconds", 30), "telegram.timeout_seconds"),
        retry_attempts=_as_int(data.get("retry_attempts", 2), "telegram.retry_attempts"),
        retry_backoff_seconds=_as_float(
            data.get("retry_backoff_seconds", 1.0), "telegram.retry_backoff_seconds"
        ),
        poll_commands=_as_bool(data.get("poll_commands", True), "telegram.poll_commands"),
        poll_timeout_seconds=_as_int(
            data.get("poll_timeout_seconds", 30), "telegram.poll_timeout_seconds"
        ),
    )


def _build_subscribers_config(data: dict[str, Any]) -> SubscribersConfig:
    mode = str(data.get("mode", "fixed")).strip().lower()
    if mode not in SUBSCRIBER_MODES:
        raise ConfigError(f"subscribers.mode must be one of: {', '.join(sorted(SUBSCRIBER_MODES))}")
    if mode == "fixed":
        target = str(_get_required(data, "target", section="subscribers")).strip()
        return SubscribersConfig(mode=mode, target=target)
    allow_list = _split_ids(data.get("allow_list"), "subscribers.allow_list")
    if not allow_list:
        raise ConfigError("Missing required config key: subscribers.allow_list")
    return SubscribersConfig(mode=mode, allow_list=allow_list)


def _build_config(data: dict[str, Any]) -> AppConfig:
    data = _apply_config_defaults(_migrate_config_data(data))
    config = AppConfig(
        imap=_build_imap_config(_get_section(data, "imap")),
        telegram=_build_telegram_config(_get_section(data, "telegram")),
        subscribers=_build_subscribers_config(_get_section(data, "subscribers")),
        poll_interval_seconds=_as_int(data["poll_interval_seconds"], "poll_interval_seconds"),
        lookback_minutes=_as_int(data["lookback_minutes"], "lookback_minutes"),
        max_body_length=_as_int(data["max_body_length"], "max_body_length"),
        mailbox=str(data["mailbox"]),
        reconnect_max_attempts=_as_int(data["reconnect_max_attempts"], "reconnect_max_attempts"),
        reconnect_base_delay_seconds=_as_float(
            data["reconnect_base_delay_seconds"], "reconnect_base_delay_seconds"
        ),
        notify_when_disconnected=_as_bool(
            data["notify_when_disconnected"], "notify_when_disconnected"
        ),
        disconnected_notice_cooldown_seconds=_as_int(
            data["disconnected_notice_cooldown_seconds"],
            "disconnected_notice_cooldown_seconds",
        ),
        display_timezone=str(data["display_timezone"]),
        log_file=str(data["log_file"]),
        log_level=str(data["log_level"]),
        log_console_level=str(data["log_console_level"]),
        log_console_enabled=_as_bool(data["log_console_enabled"], "log_console_enabled"),
        log_max_bytes=_as_int(data["log_max_bytes"], "log_max_bytes"),
        log_backup_count=_as_int(data["log_backup_count"], "log_backup_count"),
        config_version=int(data["config_version"]),
    )
    config = _apply_log_path_policy(config)
    _validate_config(config)
    return config


def _apply_log_path_policy(config: AppConfig) -> AppConfig:
    candidate = Path(config.log_file)
    if candidate.is_absolute():
        return config
    return replace(config, log_file=str(get_user_data_dir() / candidate))


def _is_valid_log_level(level: str) -> bool:
    level_name = str(level).upper()
    return level_name in logging.getLevelNamesMapping()


def _validate_config(config: AppConfig) -> None:
    if not 0 < config.imap.port < 65536:
        raise ConfigError("imap.port must be between 1 and 65535")
    if config.imap.timeout_seconds < 1:
        raise ConfigError("imap.timeout_seconds must be >= 1")
    if config.telegram.timeout_seconds < 1:
        raise ConfigError("telegram.timeout_seconds must be >= 1")
    if config.telegram.retry_attempts < 0:
        raise ConfigError("telegram.retry_attempts must be >= 0")
    if config.telegram.retry_backoff_seconds < 0:
        raise ConfigError("telegram.retry_backoff_seconds must be >= 0")
    if config.telegram.poll_timeout_seconds < 0:
        raise ConfigError("telegram.poll_timeout_seconds must be >= 0")
    if config.poll_interval_seconds < 1:
        raise ConfigError("poll_interval_seconds must be >= 1")
    if config.lookback_minutes < 1:
        raise ConfigError("lookback_minutes must be >= 1")
    if config.max_body_length < 1:
        raise ConfigError("max_body_length must be >= 1")
    if not config.mailbox:
        raise ConfigError("mailbox is required")
    if config.reconnect_max_attempts < 1:
        raise ConfigError("reconnect_max_attempts must be >= 1")
    if config.reconnect_base_delay_seconds <= 0:
        raise ConfigError("reconnect_base_delay_seconds must be > 0")
    if config.disconnected_notice_cooldown_seconds < 0:
        raise ConfigError("disconnected_notice_cooldown_seconds must be >= 0")
    try:
        ZoneInfo(config.display_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"display_timezone is not a known time zone: {config.display_timezone}") from exc
    if not config.log_file:
        raise ConfigError("log_file is required")
    if config.log_max_bytes < 1024:
        raise ConfigError("log_max_bytes must be >= 1024")
    if config.log_backup_count < 0:
        raise ConfigError("log_backup_count must be >= 0")
    if not _is_valid_log_level(config.log_level):
        raise ConfigError("log_level must be a valid logging level")
    if not _is_valid_log_level(config.log_console_level):
        raise ConfigError("log_console_level must be a valid logging level")


def load_config(path: str) -> AppConfig:
    data = _load_yaml(Path(path))
    return _build_config(data)


def load_config_from_env(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Build a single-target configuration from the bot's environment variables.

    Expects EMAIL_ADDRESS, EMAIL_PASSWORD, IMAP_HOST, IMAP_PORT, BOT_TOKEN and
    CHRONOS_CHAT_ID. TLS is always enabled.
    """
    env = os.environ if environ is None else environ
    missing = [name for name in _ENV_REQUIRED if not env.get(name)]
    if missing:
        raise ConfigError(f"Missing env variables: {', '.join(missing)}")
    try:
        port = int(env["IMAP_PORT"])
    except ValueError as exc:
        raise ConfigError("Wrong imap port") from exc
    if port <= 0:
        raise ConfigError("Wrong imap port")

    data: dict[str, Any] = {
        "imap": {
            "host": env["IMAP_HOST"],
            "port": port,
            "user": env["EMAIL_ADDRESS"],
            "password": env["EMAIL_PASSWORD"],
            "use_tls": True,
        },
        "telegram": {"token": env["BOT_TOKEN"]},
        "subscribers": {"mode": "fixed", "target": env["CHRONOS_CHAT_ID"]},
    }
    return _build_config(data)
