"""Configuration management for the quote pipeline service.

Loads from YAML config file with environment variable overrides.
Pattern: CONFIG__{SECTION}__{KEY} overrides nested YAML keys.
Example: CONFIG__REMINDERS__POLL_INTERVAL_SECONDS=30

Deployment-critical values also have dedicated env vars
(DATABASE_URL, JWT_SECRET, SMTP_HOST, ...), see ``_DEDICATED_ENV``.
"""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_DB_URL = "sqlite+aiosqlite:///data/quoteboard.db"


# --- Sections ---


class DatabaseConfig(BaseModel):
    url: str = DEFAULT_DB_URL
    echo: bool = False
    operation_timeout_seconds: float = Field(default=10.0, gt=0)


class AuthConfig(BaseModel):
    jwt_secret: str = "dev-secret-change-me"
    algorithm: str = "HS256"
    token_expire_minutes: int = 7 * 24 * 60  # 7 days
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    # Bootstrap admin is only created when a password is configured
    admin_username: str = "admin"
    admin_password: str = ""


class SMTPConfig(BaseModel):
    host: str = ""  # empty → reminders are logged, not mailed
    port: int = 587
    username: str = ""
    password: str = ""
    secure: bool = False  # implicit TLS (port 465)
    from_address: str = ""
    timeout_seconds: float = 30.0


class ReminderConfig(BaseModel):
    enabled: bool = True
    poll_interval_seconds: int = Field(default=60, ge=1)


class UploadConfig(BaseModel):
    directory: str = "uploads"
    max_size_mb: int = 10
    allowed_types: list[str] = ["application/pdf"]


class RateLimitConfig(BaseModel):
    enabled: bool = True
    # limits syntax: "<count> per <n> <unit>", per client address
    auth: str = "5 per 15 minutes"  # shared by register and login
    api: str = "100 per minute"


# --- Service Config ---


class ServiceConfig(BaseModel):
    database: DatabaseConfig = DatabaseConfig()
    auth: AuthConfig = AuthConfig()
    smtp: SMTPConfig = SMTPConfig()
    reminders: ReminderConfig = ReminderConfig()
    uploads: UploadConfig = UploadConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]


# env var -> (section, key)
_DEDICATED_ENV = {
    "DATABASE_URL": ("database", "url"),
    "JWT_SECRET": ("auth", "jwt_secret"),
    "ADMIN_PASSWORD": ("auth", "admin_password"),
    "SMTP_HOST": ("smtp", "host"),
    "SMTP_PORT": ("smtp", "port"),
    "SMTP_USER": ("smtp", "username"),
    "SMTP_PASS": ("smtp", "password"),
    "SMTP_SECURE": ("smtp", "secure"),
    "SMTP_FROM": ("smtp", "from_address"),
    "UPLOAD_DIR": ("uploads", "directory"),
}


def normalize_database_url(url: str) -> str:
    """Map plain driver URLs onto the async drivers we ship with."""
    # Common Heroku/Cloud SQL pattern: postgres:// → postgresql+asyncpg://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def _apply_env_overrides(config_dict: dict, prefix: str = "CONFIG") -> dict:
    """Apply environment variable overrides to config dict.

    Pattern: CONFIG__SECTION__KEY=value maps to config[section][key] = value
    """
    for key, value in os.environ.items():
        if not key.startswith(f"{prefix}__"):
            continue
        parts = key[len(prefix) + 2 :].lower().split("__")
        target = config_dict
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        # Values stay strings; pydantic coerces them per field type
        target[parts[-1]] = value
    return config_dict


def _apply_dedicated_env(config_dict: dict) -> dict:
    for env_name, (section, key) in _DEDICATED_ENV.items():
        value = os.getenv(env_name)
        if value:
            config_dict.setdefault(section, {})[key] = value

    frontend_url = os.getenv("FRONTEND_URL")
    if frontend_url:
        origins = list(config_dict.get("cors_origins") or ServiceConfig().cors_origins)
        if frontend_url not in origins:
            origins.append(frontend_url)
        config_dict["cors_origins"] = origins
    return config_dict


def load_config(
    config_path: Optional[str] = None,
) -> ServiceConfig:
    """Load configuration from YAML file with env overrides.

    Priority: dedicated env vars > CONFIG__ env vars > YAML file > defaults
    """
    config_dict = {}

    # 1. Load YAML if exists
    if config_path is None:
        config_path = os.getenv("CONFIG_PATH", "config/quoteboard.yml")
    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            config_dict = yaml.safe_load(f) or {}

    # 2. Apply env overrides
    config_dict = _apply_env_overrides(config_dict)
    config_dict = _apply_dedicated_env(config_dict)

    config = ServiceConfig(**config_dict)
    config.database.url = normalize_database_url(config.database.url)
    return config


# Singleton for the service
_config: Optional[ServiceConfig] = None


def get_config() -> ServiceConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Optional[str] = None) -> ServiceConfig:
    global _config
    _config = load_config(config_path)
    return _config
