# eotracker/config.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError

load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env", override=False)

DEFAULT_SOURCE_URL = "https://www.whitehouse.gov/presidential-actions/"
DEFAULT_RENDER_API_URL = "https://api.spaw.com/v1"
DEFAULT_FLOOR_DATE = date(2025, 1, 1)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level.upper())
        return
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")
    if value < 0:
        raise ConfigError(f"{key} must be >= 0, got {value}")
    return value


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}")


def _floor_date(env: Mapping[str, str]) -> date:
    raw = (env.get("INGEST_FLOOR_DATE") or "").strip()
    if raw:
        try:
            return date.fromisoformat(raw)
        except ValueError:
            raise ConfigError(f"INGEST_FLOOR_DATE must be YYYY-MM-DD, got {raw!r}")
    year = _int(env, "INGEST_FLOOR_YEAR", 0)
    if year:
        return date(year, 1, 1)
    return DEFAULT_FLOOR_DATE


@dataclass(frozen=True)
class Settings:
    source_url: str = DEFAULT_SOURCE_URL
    fetcher: str = "browser"                 # browser | render_service
    render_api_url: str = DEFAULT_RENDER_API_URL
    render_api_key: Optional[str] = None
    fetch_timeout_seconds: float = 45.0
    interval_minutes: int = 30
    floor_date: date = DEFAULT_FLOOR_DATE
    cron_secret: Optional[str] = None
    database_url: Optional[str] = None
    store_backend: str = "postgres"          # postgres | dynamodb
    dynamodb_table: str = "executive-orders"
    aws_region: str = "us-east-2"
    max_consecutive_failures: int = 3
    retry_count: int = 3
    retry_delay_seconds: float = 5.0
    enrich_concurrency: int = 5
    max_pages: int = 10
    log_level: str = "INFO"

    @property
    def floor_year(self) -> int:
        return self.floor_date.year

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        fetcher = (env.get("FETCHER") or "browser").strip().lower()
        if fetcher not in ("browser", "render_service"):
            raise ConfigError(f"FETCHER must be 'browser' or 'render_service', got {fetcher!r}")

        store_backend = (env.get("STORE_BACKEND") or "postgres").strip().lower()
        if store_backend not in ("postgres", "dynamodb"):
            raise ConfigError(f"STORE_BACKEND must be 'postgres' or 'dynamodb', got {store_backend!r}")

        interval = _int(env, "SCHEDULER_INTERVAL_MINUTES", 30)
        if interval == 0:
            raise ConfigError("SCHEDULER_INTERVAL_MINUTES must be > 0")

        return cls(
            source_url=(env.get("SOURCE_URL") or DEFAULT_SOURCE_URL).strip(),
            fetcher=fetcher,
            render_api_url=(env.get("RENDER_API_URL") or DEFAULT_RENDER_API_URL).strip(),
            render_api_key=(env.get("RENDER_API_KEY") or "").strip() or None,
            fetch_timeout_seconds=_float(env, "FETCH_TIMEOUT_SECONDS", 45.0),
            interval_minutes=interval,
            floor_date=_floor_date(env),
            cron_secret=(env.get("CRON_SECRET") or "").strip() or None,
            database_url=(env.get("DATABASE_URL") or "").strip() or None,
            store_backend=store_backend,
            dynamodb_table=(env.get("DYNAMODB_TABLE") or "executive-orders").strip(),
            aws_region=(env.get("AWS_REGION") or "us-east-2").strip(),
            max_consecutive_failures=max(1, _int(env, "MAX_CONSECUTIVE_FAILURES", 3)),
            retry_count=_int(env, "RETRY_COUNT", 3),
            retry_delay_seconds=_float(env, "RETRY_DELAY_SECONDS", 5.0),
            enrich_concurrency=max(1, _int(env, "ENRICH_CONCURRENCY", 5)),
            max_pages=max(1, _int(env, "MAX_PAGES", 10)),
            log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        )
