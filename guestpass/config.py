"""Global configuration for guestpass."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

from sqlalchemy.engine import make_url

DEFAULTS: dict[str, Any] = {
    "base_url": "http://localhost:8000",
    "database_url": "",
    "token_ttl_days": 90,
    "cancelled_retention_days": 180,
    "resend_min_response_ms": 150,
    "rate_limit_disabled": False,
    "enable_scheduler": False,
    "purge_interval_hours": 24,
    "email_backend": "log",
    "email_from": "Guest Registration <noreply@example.com>",
    "resend_api_key": "",
    "event_name": "Our Event",
    "event_date": "",
    "app_host": "0.0.0.0",
    "app_port": 8000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "base_url": str,
    "database_url": str,
    "token_ttl_days": int,
    "cancelled_retention_days": int,
    "resend_min_response_ms": int,
    "rate_limit_disabled": bool,
    "enable_scheduler": bool,
    "purge_interval_hours": int,
    "email_backend": str,
    "email_from": str,
    "resend_api_key": str,
    "event_name": str,
    "event_date": str,
    "app_host": str,
    "app_port": int,
}

# Never echoed by ``settings_as_dict`` or the ``config`` command.
SECRET_KEYS = {"resend_api_key"}

EMAIL_BACKENDS = {"log", "outbox", "resend"}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    database_url: str
    base_url: str
    token_ttl_days: int
    cancelled_retention_days: int
    resend_min_response_ms: int
    rate_limit_disabled: bool
    enable_scheduler: bool
    purge_interval_hours: int
    email_backend: str
    email_from: str
    resend_api_key: str
    event_name: str
    event_date: str
    app_host: str
    app_port: int
    config_path: Path

    @property
    def token_ttl(self) -> timedelta:
        return timedelta(days=self.token_ttl_days)

    @property
    def cancelled_retention(self) -> timedelta:
        return timedelta(days=self.cancelled_retention_days)

    @property
    def resend_min_duration(self) -> timedelta:
        return timedelta(milliseconds=self.resend_min_response_ms)

    @property
    def purge_interval(self) -> timedelta:
        return timedelta(hours=self.purge_interval_hours)


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"GUESTPASS_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = (
        Path(database_path) if database_path else resolved_data / "guestpass.db"
    )
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("GUESTPASS_BASE_DIR", Path.cwd()))
    env_config = os.getenv("GUESTPASS_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "guestpass.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("GUESTPASS_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("GUESTPASS_DB", toml_config.get("database_path")),
    )

    values = {key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS}
    email_backend = values["email_backend"].strip().lower()
    if email_backend not in EMAIL_BACKENDS:
        raise ValueError(
            f"Unknown email backend {email_backend!r}; "
            f"expected one of {sorted(EMAIL_BACKENDS)}"
        )
    values["email_backend"] = email_backend
    values["base_url"] = values["base_url"].rstrip("/")
    if not values["database_url"]:
        values["database_url"] = f"sqlite:///{database_path_value}"

    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        config_path=config_path,
        **values,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    effective: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
    }
    for key in DEFAULTS:
        if key in SECRET_KEYS:
            effective[key] = "***" if getattr(settings, key) else ""
            continue
        effective[key] = getattr(settings, key)
    effective["database_url"] = make_url(settings.database_url).render_as_string(
        hide_password=True
    )
    return effective


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# guestpass configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            continue
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
