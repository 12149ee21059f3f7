"""
Environment-driven settings shared by the export/resource-control building blocks.

Every value has a local default so the API boots with only DATABASE_URL set.
Groups are frozen dataclasses; `validate()` rejects misconfiguration at load time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


PARTITION_STRATEGIES = {"user", "api_key", "address"}


class SettingsError(RuntimeError):
    pass


def env_str(name: str, default: str) -> str:
    return os.environ.get(name, default).strip() or default


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "no", "off"}


@dataclass(frozen=True)
class StreamingSettings:
    # Safety ceiling enforced by the safeguard wrapper (error, not truncation).
    max_records: int = 100_000
    flush_interval: int = 10
    # Upper bound for the client `limit` override (applied as SQL LIMIT).
    hard_cap: int = 10_000
    log_successful: bool = True
    prefetch: int = 500

    def validate(self) -> "StreamingSettings":
        if self.max_records <= 0:
            raise SettingsError("STREAM_MAX_RECORDS must be > 0.")
        if self.flush_interval <= 0:
            raise SettingsError("STREAM_FLUSH_INTERVAL must be > 0.")
        if self.flush_interval > self.max_records:
            raise SettingsError("STREAM_FLUSH_INTERVAL cannot exceed STREAM_MAX_RECORDS.")
        if self.hard_cap <= 0:
            raise SettingsError("STREAM_HARD_CAP must be > 0.")
        if self.prefetch <= 0:
            raise SettingsError("STREAM_PREFETCH must be > 0.")
        return self


@dataclass(frozen=True)
class RateLimitSettings:
    permit_limit: int = 5
    window_s: float = 60.0
    queueing: bool = False
    max_queue: int = 0
    partition: str = "user"

    def validate(self) -> "RateLimitSettings":
        if self.permit_limit <= 0:
            raise SettingsError("RATE_LIMIT_PERMIT_LIMIT must be > 0.")
        if self.window_s <= 0:
            raise SettingsError("RATE_LIMIT_WINDOW_S must be > 0.")
        if self.max_queue < 0:
            raise SettingsError("RATE_LIMIT_MAX_QUEUE must be >= 0.")
        if self.partition not in PARTITION_STRATEGIES:
            raise SettingsError(
                f"RATE_LIMIT_PARTITION must be one of {sorted(PARTITION_STRATEGIES)}."
            )
        return self


@dataclass(frozen=True)
class CacheSettings:
    redis_url: str = ""
    key_prefix: str = "catalog:production"
    local_max_entries: int = 10_000

    def validate(self) -> "CacheSettings":
        if self.local_max_entries <= 0:
            raise SettingsError("CACHE_LOCAL_MAX_ENTRIES must be > 0.")
        return self


@lru_cache(maxsize=1)
def streaming_settings() -> StreamingSettings:
    return StreamingSettings(
        max_records=env_int("STREAM_MAX_RECORDS", 100_000),
        flush_interval=env_int("STREAM_FLUSH_INTERVAL", 10),
        hard_cap=env_int("STREAM_HARD_CAP", 10_000),
        log_successful=env_bool("STREAM_LOG_SUCCESSFUL", True),
        prefetch=env_int("STREAM_PREFETCH", 500),
    ).validate()


@lru_cache(maxsize=1)
def rate_limit_settings() -> RateLimitSettings:
    return RateLimitSettings(
        permit_limit=env_int("RATE_LIMIT_PERMIT_LIMIT", 5),
        window_s=env_float("RATE_LIMIT_WINDOW_S", 60.0),
        queueing=env_bool("RATE_LIMIT_QUEUEING", False),
        max_queue=env_int("RATE_LIMIT_MAX_QUEUE", 0),
        partition=env_str("RATE_LIMIT_PARTITION", "user").lower(),
    ).validate()


@lru_cache(maxsize=1)
def cache_settings() -> CacheSettings:
    app_env = env_str("APP_ENV", "production").lower()
    return CacheSettings(
        redis_url=os.environ.get("REDIS_URL", "").strip(),
        key_prefix=env_str("CACHE_KEY_PREFIX", f"catalog:{app_env}"),
        local_max_entries=env_int("CACHE_LOCAL_MAX_ENTRIES", 10_000),
    ).validate()


def bulk_batch_size() -> int:
    value = env_int("BULK_BATCH_SIZE", 500)
    return value if value > 0 else 500


def log_level() -> str:
    return env_str("LOG_LEVEL", "INFO").upper()
