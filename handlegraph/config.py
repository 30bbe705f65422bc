"""Configuration helpers for the handle graph crawler."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Optional

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_PATH = PROJECT_ROOT / ".env"

# Load environment variables early so downstream modules can rely on them.
load_dotenv(ENV_PATH, override=False)

DB_PATH_ENV = "HANDLEGRAPH_DB_PATH"
BLOB_DIR_ENV = "HANDLEGRAPH_BLOB_DIR"
RATE_STATE_DIR_ENV = "HANDLEGRAPH_RATE_STATE_DIR"
API_BASE_URL_ENV = "HANDLEGRAPH_API_BASE_URL"
MIN_TICK_SECONDS_ENV = "HANDLEGRAPH_MIN_TICK_SECONDS"
LEASE_SECONDS_ENV = "HANDLEGRAPH_LEASE_SECONDS"
MAX_WORKERS_ENV = "HANDLEGRAPH_MAX_WORKERS"
ADMIN_IDS_ENV = "HANDLEGRAPH_ADMIN_IDS"
TRIGGER_HEADER_ENV = "HANDLEGRAPH_TRIGGER_HEADER"
TICK_TIMEOUT_SECONDS_ENV = "HANDLEGRAPH_TICK_TIMEOUT_SECONDS"

DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "handlegraph.db"
DEFAULT_BLOB_DIR = PROJECT_ROOT / "data" / "blobs"
DEFAULT_RATE_STATE_DIR = PROJECT_ROOT / "data" / "rate_state"
DEFAULT_API_BASE_URL = "https://api.twitter.com/1.1"
# 15 id-page calls per 15 minute window.
DEFAULT_MIN_TICK_SECONDS = 60
DEFAULT_LEASE_SECONDS = 120
DEFAULT_MAX_WORKERS = 4
DEFAULT_TRIGGER_HEADER = "X-Appengine-Cron"
# Keeps a tick inside one trigger cycle and inside its lease.
DEFAULT_TICK_TIMEOUT_SECONDS = 50


@dataclass(frozen=True)
class StorageSettings:
    """Where jobs, graph files and rate-limit state live on disk."""

    db_path: Path
    blob_dir: Path
    rate_state_dir: Path


@dataclass(frozen=True)
class WorkerSettings:
    """Runtime knobs for the tick driver and the worker endpoint."""

    api_base_url: str
    min_tick_seconds: int
    lease_seconds: int
    max_workers: int
    admin_ids: FrozenSet[str]
    trigger_header: str
    tick_timeout_seconds: int = DEFAULT_TICK_TIMEOUT_SECONDS


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer; received '{raw}'.") from exc
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}; received {value}.")
    return value


def _resolve_path(name: str, default: Path) -> Path:
    return Path(_get_env(name, str(default))).expanduser().resolve()


def get_storage_settings() -> StorageSettings:
    """Resolve on-disk locations from environment with sensible defaults."""

    return StorageSettings(
        db_path=_resolve_path(DB_PATH_ENV, DEFAULT_DB_PATH),
        blob_dir=_resolve_path(BLOB_DIR_ENV, DEFAULT_BLOB_DIR),
        rate_state_dir=_resolve_path(RATE_STATE_DIR_ENV, DEFAULT_RATE_STATE_DIR),
    )


def get_worker_settings() -> WorkerSettings:
    """Resolve driver configuration, raising a descriptive error on bad values."""

    raw_admins = _get_env(ADMIN_IDS_ENV, "") or ""
    lease_seconds = _get_int(LEASE_SECONDS_ENV, DEFAULT_LEASE_SECONDS, minimum=1)
    tick_timeout = _get_int(TICK_TIMEOUT_SECONDS_ENV, DEFAULT_TICK_TIMEOUT_SECONDS, minimum=1)
    if lease_seconds < tick_timeout:
        raise RuntimeError(
            f"{LEASE_SECONDS_ENV} ({lease_seconds}) must be >= "
            f"{TICK_TIMEOUT_SECONDS_ENV} ({tick_timeout}) so a lease outlives its tick."
        )
    admin_ids = frozenset(part.strip() for part in raw_admins.split(",") if part.strip())
    return WorkerSettings(
        api_base_url=_get_env(API_BASE_URL_ENV, DEFAULT_API_BASE_URL).rstrip("/"),
        min_tick_seconds=_get_int(MIN_TICK_SECONDS_ENV, DEFAULT_MIN_TICK_SECONDS),
        lease_seconds=lease_seconds,
        max_workers=_get_int(MAX_WORKERS_ENV, DEFAULT_MAX_WORKERS, minimum=1),
        admin_ids=admin_ids,
        trigger_header=_get_env(TRIGGER_HEADER_ENV, DEFAULT_TRIGGER_HEADER),
        tick_timeout_seconds=tick_timeout,
    )
