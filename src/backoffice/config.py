from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import sys

from backoffice.domain.errors import ValidationError


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path


@dataclass(frozen=True)
class Settings:
    balance_tolerance: float = 0.01
    busy_timeout_seconds: float = 10.0
    bulk_timeout_seconds: float = 30.0
    log_level: str = "INFO"


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "ShopBackoffice") -> AppPaths:
    override = os.environ.get("BACKOFFICE_HOME", "").strip()
    if override:
        base = Path(override)
    elif sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    db = base / "backoffice.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be a number, got {raw!r}.") from exc
    if value < 0:
        raise ValidationError(f"{name} must be >= 0.")
    return value


def load_settings() -> Settings:
    return Settings(
        balance_tolerance=_env_float("BACKOFFICE_BALANCE_TOLERANCE", 0.01),
        busy_timeout_seconds=_env_float("BACKOFFICE_BUSY_TIMEOUT", 10.0),
        bulk_timeout_seconds=_env_float("BACKOFFICE_BULK_TIMEOUT", 30.0),
        log_level=(os.environ.get("BACKOFFICE_LOG_LEVEL", "").strip() or "INFO").upper(),
    )
