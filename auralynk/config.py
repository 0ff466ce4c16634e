"""Configuration management for the Auralynk booking service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from .rooms import DEFAULT_DAILY_API_URL

DEFAULT_MAIL_FROM = "Auralynk <no-reply@auralynk.com>"


@dataclass(frozen=True)
class MailSettings:
    """SMTP relay used for booking confirmations.

    The defaults point at a local catch-all relay such as MailHog, which is
    where development confirmations are expected to land.
    """

    host: str = "localhost"
    port: int = 1025
    username: Optional[str] = None
    password: Optional[str] = None
    use_starttls: bool = False
    use_ssl: bool = False
    sender: str = DEFAULT_MAIL_FROM
    timeout: float = 10.0


@dataclass(frozen=True)
class Settings:
    """Runtime settings assembled from the YAML file and the environment."""

    database_path: Optional[str] = None
    daily_api_key: Optional[str] = None
    daily_api_url: str = DEFAULT_DAILY_API_URL
    mail: MailSettings = field(default_factory=MailSettings)
    pending_blocks_slot: bool = True
    availability_cache_ttl: float = 30.0
    integration_tokens: Tuple[str, ...] = ()
    cors_origins: Tuple[str, ...] = ("*",)


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _split_list(value: object) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        raise ValueError("Expected a list or a comma-separated string")
    return tuple(item.strip() for item in items if item.strip())


def _mail_from_dict(data: Mapping[str, object]) -> MailSettings:
    defaults = MailSettings()
    return MailSettings(
        host=str(data.get("host", defaults.host)),
        port=int(data.get("port", defaults.port)),
        username=str(data["username"]) if data.get("username") is not None else None,
        password=str(data["password"]) if data.get("password") is not None else None,
        use_starttls=bool(data.get("starttls", defaults.use_starttls)),
        use_ssl=bool(data.get("ssl", defaults.use_ssl)),
        sender=str(data.get("sender", defaults.sender)),
        timeout=float(data.get("timeout", defaults.timeout)),
    )


def settings_from_dict(data: Mapping[str, object]) -> Settings:
    """Create :class:`Settings` from the parsed YAML document."""

    defaults = Settings()
    daily = data.get("daily") or {}
    mail = data.get("mail") or {}
    bookings = data.get("bookings") or {}
    if not isinstance(daily, dict) or not isinstance(mail, dict) or not isinstance(bookings, dict):
        raise ValueError("The 'daily', 'mail' and 'bookings' sections must be mappings")

    cors = data.get("cors_origins")
    return Settings(
        database_path=str(data["database_path"]) if data.get("database_path") else None,
        daily_api_key=str(daily["api_key"]) if daily.get("api_key") else None,
        daily_api_url=str(daily.get("api_url", defaults.daily_api_url)),
        mail=_mail_from_dict(mail),
        pending_blocks_slot=bool(bookings.get("pending_blocks_slot", defaults.pending_blocks_slot)),
        availability_cache_ttl=float(bookings.get("cache_ttl", defaults.availability_cache_ttl)),
        integration_tokens=_split_list(data.get("integration_tokens")),
        cors_origins=_split_list(cors) if cors is not None else defaults.cors_origins,
    )


def _apply_environment(settings: Settings, env: Mapping[str, str]) -> Settings:
    overrides: Dict[str, object] = {}
    mail_overrides: Dict[str, object] = {}

    if env.get("AURALYNK_DB_PATH"):
        overrides["database_path"] = env["AURALYNK_DB_PATH"]
    if env.get("AURALYNK_DAILY_API_KEY"):
        overrides["daily_api_key"] = env["AURALYNK_DAILY_API_KEY"].strip()
    if env.get("AURALYNK_DAILY_API_URL"):
        overrides["daily_api_url"] = env["AURALYNK_DAILY_API_URL"].strip()
    if "AURALYNK_PENDING_BLOCKS_SLOT" in env:
        overrides["pending_blocks_slot"] = _env_flag(env["AURALYNK_PENDING_BLOCKS_SLOT"], True)
    if env.get("AURALYNK_AVAILABILITY_CACHE_TTL"):
        overrides["availability_cache_ttl"] = float(env["AURALYNK_AVAILABILITY_CACHE_TTL"])
    if "AURALYNK_INTEGRATION_TOKENS" in env:
        overrides["integration_tokens"] = _split_list(env["AURALYNK_INTEGRATION_TOKENS"])
    if env.get("AURALYNK_CORS_ORIGINS"):
        overrides["cors_origins"] = _split_list(env["AURALYNK_CORS_ORIGINS"])

    if env.get("AURALYNK_SMTP_HOST"):
        mail_overrides["host"] = env["AURALYNK_SMTP_HOST"].strip()
    if env.get("AURALYNK_SMTP_PORT"):
        mail_overrides["port"] = int(env["AURALYNK_SMTP_PORT"])
    if env.get("AURALYNK_SMTP_USERNAME"):
        mail_overrides["username"] = env["AURALYNK_SMTP_USERNAME"]
    if env.get("AURALYNK_SMTP_PASSWORD"):
        mail_overrides["password"] = env["AURALYNK_SMTP_PASSWORD"]
    if "AURALYNK_SMTP_STARTTLS" in env:
        mail_overrides["use_starttls"] = _env_flag(env["AURALYNK_SMTP_STARTTLS"])
    if "AURALYNK_SMTP_SSL" in env:
        mail_overrides["use_ssl"] = _env_flag(env["AURALYNK_SMTP_SSL"])
    if env.get("AURALYNK_MAIL_FROM"):
        mail_overrides["sender"] = env["AURALYNK_MAIL_FROM"].strip()

    if mail_overrides:
        overrides["mail"] = replace(settings.mail, **mail_overrides)
    return replace(settings, **overrides) if overrides else settings


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "auralynk.yaml").resolve(strict=False)
    return candidate


def load_settings(
    config_path: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from YAML (when present) and apply environment overrides."""

    environ = os.environ if env is None else env
    path = config_path or resolve_config_path(environ.get("AURALYNK_CONFIG"))

    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        if not isinstance(raw, dict):
            raise ValueError("Configuration file must contain a mapping at the top level")
        settings = settings_from_dict(raw)
    else:
        settings = Settings()

    return _apply_environment(settings, environ)


__all__ = [
    "MailSettings",
    "Settings",
    "load_settings",
    "resolve_config_path",
    "settings_from_dict",
]
