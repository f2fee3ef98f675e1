# syncqueue/common/exceptions.py


class SyncQueueException(Exception):
    """Base exception for the SyncQueue library."""

    pass


class StoreUnavailableError(SyncQueueException):
    """Raised when the job store cannot be reached. Callers should retry with backoff."""

    pass


class JobNotFoundError(SyncQueueException):
    """Raised when an operation names a job id the store does not know."""

    pass


class JobLoadError(SyncQueueException):
    """Raised when a job's handler cannot be loaded."""

    pass


class HandlerNotFoundError(JobLoadError):
    """Raised when no handler is registered for a job type."""

    pass
