# syncqueue/config.py
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from syncqueue.client import SyncQueueClient
from syncqueue.common.retry import RetryPolicy
from syncqueue.storage.base import JobStorage

STORAGE_CHOICES = ("memory", "sql", "redis")


class _GlobalConfig:
    def __init__(self):
        self.storage: Optional[JobStorage] = None
        self.default_max_retries: int = 3
        self.client: Optional[SyncQueueClient] = None

_GLOBAL_CONFIG = _GlobalConfig()

def configure(storage: Optional[JobStorage], default_max_retries: int = 3) -> None:
    _GLOBAL_CONFIG.storage = storage
    _GLOBAL_CONFIG.default_max_retries = default_max_retries
    _GLOBAL_CONFIG.client = None

def get_storage() -> JobStorage:
    if not _GLOBAL_CONFIG.storage:
        raise RuntimeError("SyncQueue has not been configured. Call syncqueue.configure() first.")
    return _GLOBAL_CONFIG.storage

def get_client() -> SyncQueueClient:
    if _GLOBAL_CONFIG.client is None:
        _GLOBAL_CONFIG.client = SyncQueueClient(
            get_storage(), default_max_retries=_GLOBAL_CONFIG.default_max_retries
        )
    return _GLOBAL_CONFIG.client


@dataclass
class Settings:
    storage: str = "memory"
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    max_retries: int = 3
    backoff_base_seconds: float = 30.0
    backoff_max_seconds: float = 3600.0
    stale_timeout_seconds: float = 1800.0
    poll_interval_seconds: float = 1.0

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            backoff_base=timedelta(seconds=self.backoff_base_seconds),
            backoff_max=timedelta(seconds=self.backoff_max_seconds),
        )

    @property
    def stale_timeout(self) -> timedelta:
        return timedelta(seconds=self.stale_timeout_seconds)


def _env_number(environ: Mapping[str, str], name: str, default, cast):
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Reads ``SYNCQUEUE_*`` environment variables into a ``Settings``."""
    env = os.environ if environ is None else environ
    storage = env.get("SYNCQUEUE_STORAGE", "memory").strip().lower()
    if storage not in STORAGE_CHOICES:
        raise ValueError(f"SYNCQUEUE_STORAGE must be one of {', '.join(STORAGE_CHOICES)}")

    settings = Settings(
        storage=storage,
        database_url=env.get("SYNCQUEUE_DATABASE_URL") or None,
        redis_url=env.get("SYNCQUEUE_REDIS_URL") or None,
        max_retries=_env_number(env, "SYNCQUEUE_MAX_RETRIES", 3, int),
        backoff_base_seconds=_env_number(env, "SYNCQUEUE_BACKOFF_BASE_SECONDS", 30.0, float),
        backoff_max_seconds=_env_number(env, "SYNCQUEUE_BACKOFF_MAX_SECONDS", 3600.0, float),
        stale_timeout_seconds=_env_number(env, "SYNCQUEUE_STALE_TIMEOUT_SECONDS", 1800.0, float),
        poll_interval_seconds=_env_number(env, "SYNCQUEUE_POLL_INTERVAL_SECONDS", 1.0, float),
    )
    if settings.max_retries < 0:
        raise ValueError("SYNCQUEUE_MAX_RETRIES must not be negative")
    return settings


def create_storage(settings: Settings) -> JobStorage:
    if settings.storage == "memory":
        from syncqueue.storage.memory_storage import MemoryStorage

        return MemoryStorage(retry_policy=settings.retry_policy)

    if settings.storage == "sql":
        if not settings.database_url:
            raise ValueError("SYNCQUEUE_DATABASE_URL is required for sql storage")
        from syncqueue.storage.sql_storage import SqlStorage

        return SqlStorage(
            connection_url=settings.database_url, retry_policy=settings.retry_policy
        )

    if settings.storage == "redis":
        import redis

        from syncqueue.storage.redis_storage import RedisStorage

        if settings.redis_url:
            redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
            return RedisStorage(redis_client=redis_client, retry_policy=settings.retry_policy)
        return RedisStorage(retry_policy=settings.retry_policy)

    raise ValueError(f"storage must be one of {', '.join(STORAGE_CHOICES)}")


def configure_from_settings(settings: Settings) -> JobStorage:
    """Builds the configured store and makes it the process-wide default."""
    storage = create_storage(settings)
    configure(storage, default_max_retries=settings.max_retries)
    return storage
