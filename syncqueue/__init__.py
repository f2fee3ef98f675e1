from .client import SyncQueueClient
from .common.job import Job
from .common.retry import RetryPolicy
from .config import configure, configure_from_settings, get_client, get_storage
from .execution.performer import HandlerRegistry
from .server.worker import Worker

__all__ = [
    "HandlerRegistry",
    "Job",
    "RetryPolicy",
    "SyncQueueClient",
    "Worker",
    "configure",
    "configure_from_settings",
    "get_client",
    "get_storage",
]
