# syncqueue/client.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from .common.job import Job, as_utc
from .storage.base import JobStorage


class SyncQueueClient:
    """
    Enqueues sync jobs and answers operator queries about the queue.
    """

    def __init__(self, storage: JobStorage, default_max_retries: int = 3):
        if default_max_retries < 0:
            raise ValueError("default_max_retries must not be negative")
        self.storage = storage
        self.default_max_retries = default_max_retries

    def add_job(
        self,
        job_type: str,
        options: Any = None,
        priority: int = 0,
        scheduled_for: Optional[datetime] = None,
        max_retries: Optional[int] = None,
    ) -> str:
        """Creates a pending job, eligible from ``scheduled_for`` (default: now)."""
        if not job_type or not job_type.strip():
            raise ValueError("Job type cannot be empty.")
        if max_retries is None:
            max_retries = self.default_max_retries
        if max_retries < 0:
            raise ValueError("max_retries must not be negative.")

        job = Job(
            type=job_type.strip(),
            options=options if options is not None else {},
            priority=int(priority),
            scheduled_for=as_utc(scheduled_for) if scheduled_for else None,
            max_retries=max_retries,
        )
        return self.storage.enqueue(job)

    def cancel_pending(self, job_type: Optional[str] = None) -> int:
        return self.storage.cancel_pending_jobs(job_type)

    # --- Dashboard Methods ---

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.storage.get_job(job_id)

    def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> List[Job]:
        start = (max(page, 1) - 1) * page_size
        return self.storage.list_jobs(status, job_type, start, page_size)

    def get_status_counts(self) -> Dict[str, int]:
        return self.storage.get_status_counts()

    def get_job_history(self, job_id: str) -> List[dict]:
        return self.storage.get_job_history(job_id)
