from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List

from dotenv import load_dotenv


# Timeout budgets in milliseconds.
SHEETS_TIMEOUT_MS = 10000
FETCH_TIMEOUT_MS = 10000

DEFAULT_SHEETS_API_BASE = "https://sheets.googleapis.com/v4"
DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value}")
    return value


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass(frozen=True)
class Settings:
    sheet_id: str = ""
    google_api_key: str = ""
    sheets_api_base: str = DEFAULT_SHEETS_API_BASE
    sheets_timeout_ms: int = SHEETS_TIMEOUT_MS
    fetch_timeout_ms: int = FETCH_TIMEOUT_MS
    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))


def load_settings() -> Settings:
    """Read settings from the environment (and `.env`, when present)."""
    load_dotenv()
    return Settings(
        sheet_id=(os.getenv("SHEET_ID") or "").strip(),
        google_api_key=(os.getenv("GOOGLE_API_KEY") or "").strip(),
        sheets_api_base=(os.getenv("SHEETS_API_BASE") or DEFAULT_SHEETS_API_BASE).rstrip("/"),
        sheets_timeout_ms=_env_int("SHEETS_TIMEOUT_MS", SHEETS_TIMEOUT_MS),
        fetch_timeout_ms=_env_int("FETCH_TIMEOUT_MS", FETCH_TIMEOUT_MS),
        cors_origins=_env_list("CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
