# syncqueue/storage/base.py
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from syncqueue.common.job import Job


class JobStorage(ABC):
    """
    The durable job table behind an atomic claim.

    Implementations guarantee that ``claim_next_job`` never hands the same job
    to two callers, and that reports only move jobs that are ``running``.
    A report carrying ``started_at`` only applies to that claim, so a worker
    whose job was recovered and claimed again cannot finish the new claim.
    Store outages surface as ``StoreUnavailableError``.
    """

    @abstractmethod
    def enqueue(self, job: Job) -> str: ...

    @abstractmethod
    def claim_next_job(self, now: Optional[datetime] = None) -> Optional[Job]: ...

    @abstractmethod
    def report_success(
        self,
        job_id: str,
        result: Any = None,
        now: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
    ) -> bool: ...

    @abstractmethod
    def report_failure(
        self,
        job_id: str,
        error_message: str,
        now: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
    ) -> bool: ...

    @abstractmethod
    def recover_stale_jobs(
        self, timeout: timedelta, now: Optional[datetime] = None, limit: int = 100
    ) -> int: ...

    @abstractmethod
    def cancel_pending_jobs(
        self, job_type: Optional[str] = None, now: Optional[datetime] = None
    ) -> int: ...

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        start: int = 0,
        count: int = 20,
    ) -> List[Job]: ...

    @abstractmethod
    def get_status_counts(self) -> Dict[str, int]: ...

    @abstractmethod
    def get_job_history(self, job_id: str) -> List[dict]: ...
