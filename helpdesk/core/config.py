from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from utils.constants import (
    ALLOWED_ATTACHMENT_EXTENSIONS,
    MAX_ATTACHMENT_BYTES,
    MAX_ATTACHMENTS_PER_COMMENT,
    MAX_ATTACHMENTS_PER_TICKET,
)


class ConfigError(RuntimeError):
    pass


@dataclass(slots=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])


@dataclass(slots=True)
class DatabaseConfig:
    url: str = "sqlite:///./data/helpdesk.db"
    pool_min_size: int = 2
    pool_max_size: int = 10
    timeout_seconds: int = 30
    lock_timeout_seconds: int = 10


@dataclass(slots=True)
class RedisConfig:
    enabled: bool = False
    url: str = "redis://localhost:6379/0"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    directory: str = "logs"
    file_name: str = "helpdesk.log"
    max_bytes: int = 10_000_000
    backup_count: int = 10
    json_console: bool = False


@dataclass(slots=True)
class AuthConfig:
    jwt_secret: str
    jwt_algorithm: str = "HS256"


@dataclass(slots=True)
class TicketConfig:
    default_page_size: int = 10
    max_page_size: int = 100
    restrict_user_visibility: bool = False


@dataclass(slots=True)
class SecurityConfig:
    ticket_creation_max_per_hour: int = 150


@dataclass(slots=True)
class UploadConfig:
    storage_directory: str = "uploads"
    max_file_size: int = MAX_ATTACHMENT_BYTES
    allowed_extensions: list[str] = field(default_factory=lambda: list(ALLOWED_ATTACHMENT_EXTENSIONS))
    max_files_per_ticket: int = MAX_ATTACHMENTS_PER_TICKET
    max_files_per_comment: int = MAX_ATTACHMENTS_PER_COMMENT


@dataclass(slots=True)
class NotificationConfig:
    enabled: bool = True
    sender: str = "log"
    webhook_url: str = ""
    frontend_url: str = "http://localhost:3000"
    poll_interval_seconds: float = 5.0
    batch_size: int = 50
    max_attempts: int = 3


@dataclass(slots=True)
class BootstrapConfig:
    admin_username: str | None = None
    admin_email: str | None = None


@dataclass(slots=True)
class AppConfig:
    auth: AuthConfig
    server: ServerConfig = field(default_factory=ServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    tickets: TicketConfig = field(default_factory=TicketConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    uploads: UploadConfig = field(default_factory=UploadConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    bootstrap: BootstrapConfig = field(default_factory=BootstrapConfig)


def _get_env_str(key: str, fallback: str | None = None) -> str | None:
    value = os.getenv(key)
    if value is None:
        return fallback
    cleaned = value.strip()
    return cleaned if cleaned else fallback


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _deep_get(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    node: Any = data
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return raw


def _split_csv(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config(config_path: Path) -> AppConfig:
    env_path = config_path.parent.parent / ".env"
    load_dotenv(env_path)
    raw = _load_yaml(config_path)

    jwt_secret = _get_env_str("HELPDESK_JWT_SECRET", _deep_get(raw, "auth", "jwt_secret"))
    if not jwt_secret or "${" in jwt_secret:
        raise ConfigError("HELPDESK_JWT_SECRET is required")

    auth_cfg = AuthConfig(
        jwt_secret=jwt_secret,
        jwt_algorithm=str(_deep_get(raw, "auth", "jwt_algorithm", default="HS256")),
    )

    server_cfg = ServerConfig(
        host=str(_get_env_str("HOST", _deep_get(raw, "server", "host", default="0.0.0.0"))),
        port=_as_int(_get_env_str("PORT"), _as_int(_deep_get(raw, "server", "port"), 8000)),
        cors_origins=_split_csv(_get_env_str("CORS_ORIGINS"))
        or [str(item) for item in _deep_get(raw, "server", "cors_origins", default=["http://localhost:3000"])],
    )

    database_cfg = DatabaseConfig(
        url=str(_get_env_str("DATABASE_URL", _deep_get(raw, "database", "url", default="sqlite:///./data/helpdesk.db"))),
        pool_min_size=_as_int(
            _get_env_str("DB_POOL_MIN", None),
            _as_int(_deep_get(raw, "database", "pool_min_size"), 2),
        ),
        pool_max_size=_as_int(
            _get_env_str("DB_POOL_MAX", None),
            _as_int(_deep_get(raw, "database", "pool_max_size"), 10),
        ),
        timeout_seconds=_as_int(
            _get_env_str("DB_TIMEOUT_SECONDS", None),
            _as_int(_deep_get(raw, "database", "timeout_seconds"), 30),
        ),
        lock_timeout_seconds=_as_int(_deep_get(raw, "database", "lock_timeout_seconds"), 10),
    )

    redis_cfg = RedisConfig(
        enabled=_as_bool(_get_env_str("REDIS_ENABLED"), _as_bool(_deep_get(raw, "redis", "enabled"), False)),
        url=str(_get_env_str("REDIS_URL", _deep_get(raw, "redis", "url", default="redis://localhost:6379/0"))),
    )

    logging_cfg = LoggingConfig(
        level=str(_get_env_str("LOG_LEVEL", _deep_get(raw, "logging", "level", default="INFO"))),
        directory=str(_deep_get(raw, "logging", "directory", default="logs")),
        file_name=str(_deep_get(raw, "logging", "file_name", default="helpdesk.log")),
        max_bytes=_as_int(_deep_get(raw, "logging", "max_bytes"), 10_000_000),
        backup_count=_as_int(_deep_get(raw, "logging", "backup_count"), 10),
        json_console=_as_bool(_deep_get(raw, "logging", "json_console"), False),
    )

    ticket_cfg = TicketConfig(
        default_page_size=_as_int(_deep_get(raw, "tickets", "default_page_size"), 10),
        max_page_size=_as_int(_deep_get(raw, "tickets", "max_page_size"), 100),
        restrict_user_visibility=_as_bool(_deep_get(raw, "tickets", "restrict_user_visibility"), False),
    )

    security_cfg = SecurityConfig(
        ticket_creation_max_per_hour=_as_int(
            _deep_get(raw, "security", "ticket_creation_max_per_hour"), 150
        ),
    )

    upload_cfg = UploadConfig(
        storage_directory=str(
            _get_env_str("UPLOAD_DIR", _deep_get(raw, "uploads", "storage_directory", default="uploads"))
        ),
        max_file_size=_as_int(
            _get_env_str("MAX_FILE_SIZE"),
            _as_int(_deep_get(raw, "uploads", "max_file_size"), MAX_ATTACHMENT_BYTES),
        ),
        allowed_extensions=[
            str(ext).lower().lstrip(".")
            for ext in _deep_get(
                raw, "uploads", "allowed_extensions", default=list(ALLOWED_ATTACHMENT_EXTENSIONS)
            )
        ],
        max_files_per_ticket=_as_int(
            _get_env_str("MAX_FILES"),
            _as_int(_deep_get(raw, "uploads", "max_files_per_ticket"), MAX_ATTACHMENTS_PER_TICKET),
        ),
        max_files_per_comment=_as_int(
            _deep_get(raw, "uploads", "max_files_per_comment"), MAX_ATTACHMENTS_PER_COMMENT
        ),
    )

    notification_cfg = NotificationConfig(
        enabled=_as_bool(_deep_get(raw, "notifications", "enabled"), True),
        sender=str(_deep_get(raw, "notifications", "sender", default="log")),
        webhook_url=str(
            _get_env_str("NOTIFY_WEBHOOK_URL", _deep_get(raw, "notifications", "webhook_url", default=""))
        ),
        frontend_url=str(
            _get_env_str(
                "FRONTEND_URL",
                _deep_get(raw, "notifications", "frontend_url", default="http://localhost:3000"),
            )
        ),
        poll_interval_seconds=_as_float(_deep_get(raw, "notifications", "poll_interval_seconds"), 5.0),
        batch_size=_as_int(_deep_get(raw, "notifications", "batch_size"), 50),
        max_attempts=_as_int(_deep_get(raw, "notifications", "max_attempts"), 3),
    )
    if notification_cfg.sender not in {"log", "webhook"}:
        raise ConfigError("notifications.sender must be 'log' or 'webhook'")
    if notification_cfg.sender == "webhook" and not notification_cfg.webhook_url:
        raise ConfigError("notifications.webhook_url is required for the webhook sender")

    bootstrap_cfg = BootstrapConfig(
        admin_username=_get_env_str("BOOTSTRAP_ADMIN_USERNAME", _deep_get(raw, "bootstrap", "admin_username")),
        admin_email=_get_env_str("BOOTSTRAP_ADMIN_EMAIL", _deep_get(raw, "bootstrap", "admin_email")),
    )

    return AppConfig(
        auth=auth_cfg,
        server=server_cfg,
        database=database_cfg,
        redis=redis_cfg,
        logging=logging_cfg,
        tickets=ticket_cfg,
        security=security_cfg,
        uploads=upload_cfg,
        notifications=notification_cfg,
        bootstrap=bootstrap_cfg,
    )
