# syncqueue/storage/memory_storage.py
import copy
import itertools
import logging
from datetime import datetime, timedelta
from threading import RLock
from typing import Any, Dict, List, Optional

from syncqueue.common.exceptions import JobNotFoundError
from syncqueue.common.job import Job, as_utc
from syncqueue.common.retry import RetryPolicy
from syncqueue.common.states import (
    ALL_STATES,
    BaseState,
    CancelledState,
    CompletedState,
    PendingState,
    RunningState,
)
from syncqueue.storage.base import JobStorage

logger = logging.getLogger(__name__)


class MemoryStorage(JobStorage):
    """In-process store. A single lock serializes every claim and transition."""

    def __init__(self, retry_policy: Optional[RetryPolicy] = None):
        self.retry_policy = retry_policy or RetryPolicy()
        self._jobs: Dict[str, Job] = {}
        self._sequence: Dict[str, int] = {}  # insertion order, final tie-break
        self._history: Dict[str, List[dict]] = {}
        self._counter = itertools.count()
        self._lock = RLock()

    def _record_history(self, job_id: str, state: BaseState) -> None:
        self._history.setdefault(job_id, []).append(
            {
                "state": state.name,
                "timestamp": state.created_at.isoformat(),
                "data": copy.deepcopy(state.serialize_data()),
            }
        )

    def _apply_state(self, job: Job, state: BaseState) -> None:
        # Copy first so a payload that cannot be copied leaves the job untouched
        fields = copy.deepcopy(state.job_fields())
        for field_name, value in fields.items():
            setattr(job, field_name, value)
        job.updated_at = state.created_at
        self._record_history(job.id, state)

    def enqueue(self, job: Job) -> str:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job '{job.id}' already exists.")
            stored = copy.deepcopy(job)
            self._jobs[stored.id] = stored
            self._sequence[stored.id] = next(self._counter)
            self._record_history(
                stored.id,
                PendingState(stored.scheduled_for, created_at=stored.created_at),
            )
        return job.id

    def claim_next_job(self, now: Optional[datetime] = None) -> Optional[Job]:
        now = as_utc(now)
        with self._lock:
            eligible = [
                job
                for job in self._jobs.values()
                if job.status == PendingState.NAME and job.scheduled_for <= now
            ]
            if not eligible:
                return None

            job = min(
                eligible,
                key=lambda j: (-j.priority, j.created_at, self._sequence[j.id]),
            )
            self._apply_state(job, RunningState(created_at=now))
            logger.debug(f"Claimed job {job.id} ({job.type}, priority {job.priority})")
            return copy.deepcopy(job)

    def _get_running(
        self, job_id: str, action: str, started_at: Optional[datetime]
    ) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job '{job_id}' does not exist.")
        if job.status != RunningState.NAME:
            logger.warning(
                f"Ignoring {action} report for job {job_id}: status is {job.status}, not running."
            )
            return None
        if started_at is not None and job.started_at != as_utc(started_at):
            logger.warning(
                f"Ignoring {action} report for job {job_id}: claim from {started_at} was superseded."
            )
            return None
        return job

    def report_success(
        self,
        job_id: str,
        result: Any = None,
        now: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
    ) -> bool:
        now = as_utc(now)
        with self._lock:
            job = self._get_running(job_id, "success", started_at)
            if job is None:
                return False
            self._apply_state(job, CompletedState(result, created_at=now))
            return True

    def report_failure(
        self,
        job_id: str,
        error_message: str,
        now: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
    ) -> bool:
        now = as_utc(now)
        with self._lock:
            job = self._get_running(job_id, "failure", started_at)
            if job is None:
                return False
            self._apply_state(job, self.retry_policy.elect_state(job, error_message, now))
            return True

    def recover_stale_jobs(
        self, timeout: timedelta, now: Optional[datetime] = None, limit: int = 100
    ) -> int:
        now = as_utc(now)
        cutoff = now - timeout
        message = f"Job exceeded processing timeout of {timeout}"
        with self._lock:
            stale = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.status == RunningState.NAME
                    and job.started_at is not None
                    and job.started_at < cutoff
                ),
                key=lambda j: j.started_at,
            )[:limit]
            for job in stale:
                self._apply_state(job, self.retry_policy.elect_state(job, message, now))
                logger.info(f"Recovered stale job {job.id}; now {job.status}")
            return len(stale)

    def cancel_pending_jobs(
        self, job_type: Optional[str] = None, now: Optional[datetime] = None
    ) -> int:
        now = as_utc(now)
        cancelled = 0
        with self._lock:
            for job in self._jobs.values():
                if job.status != PendingState.NAME:
                    continue
                if job_type is not None and job.type != job_type:
                    continue
                self._apply_state(
                    job, CancelledState(created_at=now, reason="Cancelled by operator")
                )
                cancelled += 1
        return cancelled

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        start: int = 0,
        count: int = 20,
    ) -> List[Job]:
        with self._lock:
            jobs = [
                job
                for job in self._jobs.values()
                if (status is None or job.status == status)
                and (job_type is None or job.type == job_type)
            ]
            jobs.sort(key=lambda j: (j.created_at, self._sequence[j.id]), reverse=True)
            return [copy.deepcopy(job) for job in jobs[start : start + count]]

    def get_status_counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {state: 0 for state in ALL_STATES}
            for job in self._jobs.values():
                counts[job.status] = counts.get(job.status, 0) + 1
            return counts

    def get_job_history(self, job_id: str) -> List[dict]:
        with self._lock:
            return copy.deepcopy(self._history.get(job_id, []))
