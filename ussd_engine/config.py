"""Application configuration handling."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parent / ".env"
load_dotenv(ENV_PATH, encoding="utf-8-sig")

DEFAULT_PIN_MENUS = ("contribution_pin", "enter_pin", "verify_pin", "pin_input", "confirm_pin")


def _env(key: str, default: str | None = None) -> str:
    value = os.getenv(key, default)
    if value is None:
        raise RuntimeError(f"Missing required environment variable: {key}")
    return value


def _env_int(key: str, default: int | None = None) -> int:
    value = _env(key, str(default) if default is not None else None)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RuntimeError(f"Environment variable {key} must be an integer") from None


def _env_float(key: str, default: float | None = None) -> float:
    value = _env(key, str(default) if default is not None else None)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RuntimeError(f"Environment variable {key} must be a number") from None


def _env_list(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = os.getenv(key)
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_path: Path
    apps_path: Path
    session_timeout_seconds: int = 300
    cleanup_probability: float = 0.1
    pin_menus: Tuple[str, ...] = DEFAULT_PIN_MENUS
    mask_position: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 5.0
    default_api_timeout_ms: int = 5000
    max_input_length: int = 1000
    response_continue: str = "CON"
    response_end: str = "END"
    environment: str = "development"
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        package_dir = Path(__file__).resolve().parent
        default_db_path = package_dir.parent / "data" / "ussd.sqlite3"
        return cls(
            database_path=Path(_env("USSD_DATABASE_PATH", str(default_db_path))).expanduser(),
            apps_path=Path(_env("USSD_APPS_PATH", str(package_dir / "apps"))).expanduser(),
            session_timeout_seconds=_env_int("SESSION_TIMEOUT_SECONDS", 300),
            cleanup_probability=_env_float("SESSION_CLEANUP_PROBABILITY", 0.1),
            pin_menus=_env_list("PIN_MENUS", DEFAULT_PIN_MENUS),
            mask_position=_env_int("PIN_MASK_POSITION", 5),
            retry_base_delay=_env_float("API_RETRY_BASE_DELAY", 1.0),
            retry_max_delay=_env_float("API_RETRY_MAX_DELAY", 5.0),
            default_api_timeout_ms=_env_int("API_DEFAULT_TIMEOUT_MS", 5000),
            max_input_length=_env_int("MAX_INPUT_LENGTH", 1000),
            response_continue=_env("RESPONSE_TYPE_CONTINUE", "CON"),
            response_end=_env("RESPONSE_TYPE_END", "END"),
            environment=_env("APP_ENV", "development"),
            log_level=_env("LOG_LEVEL", "INFO"),
        )
