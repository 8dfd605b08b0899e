from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


def _parse_float(value: str | None, default: float) -> float:
    try:
        return float(str(value).strip())
    except Exception:
        return default


def _parse_int(value: str | None, default: int) -> int:
    try:
        return int(str(value).strip())
    except Exception:
        return default


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    s = str(value).strip().lower()
    if s == "":
        return default
    return s in ("true", "1", "yes", "y", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str
    ssh_default_user: str
    ssh_default_port: int
    ssh_connect_timeout_sec: float
    command_timeout_sec: float
    package_timeout_sec: float
    ping_timeout_sec: float
    poll_interval_sec: float
    full_refresh_interval_sec: float
    poll_on_start: bool
    poll_max_workers: int
    celery_broker_url: str
    celery_result_backend: str
    timezone: str


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./openwrt_fleet.db"),
        ssh_default_user=os.getenv("SSH_DEFAULT_USER", "root"),
        ssh_default_port=_parse_int(os.getenv("SSH_DEFAULT_PORT"), 22),
        ssh_connect_timeout_sec=_parse_float(os.getenv("SSH_CONNECT_TIMEOUT_SEC"), 15.0),
        command_timeout_sec=_parse_float(os.getenv("COMMAND_TIMEOUT_SEC"), 30.0),
        package_timeout_sec=_parse_float(os.getenv("PACKAGE_TIMEOUT_SEC"), 120.0),
        ping_timeout_sec=_parse_float(os.getenv("PING_TIMEOUT_SEC"), 10.0),
        poll_interval_sec=_parse_float(os.getenv("POLL_INTERVAL_SEC"), 30.0),
        full_refresh_interval_sec=_parse_float(os.getenv("FULL_REFRESH_INTERVAL_SEC"), 300.0),
        poll_on_start=_parse_bool(os.getenv("POLL_ON_START"), True),
        poll_max_workers=max(_parse_int(os.getenv("POLL_MAX_WORKERS"), 16), 1),
        celery_broker_url=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
        celery_result_backend=os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1"),
        timezone=os.getenv("TZ_NAME", "UTC"),
    )
