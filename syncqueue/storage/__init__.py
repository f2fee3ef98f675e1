from .base import JobStorage
from .memory_storage import MemoryStorage
from .redis_storage import RedisStorage
from .sql_storage import SqlStorage

__all__ = ["JobStorage", "MemoryStorage", "RedisStorage", "SqlStorage"]
