# syncqueue/server/worker.py
import logging
import threading
import time
import uuid
from datetime import timedelta
from typing import Optional

from syncqueue.common.exceptions import StoreUnavailableError
from syncqueue.execution.performer import HandlerRegistry
from syncqueue.server.processor import JobProcessor
from syncqueue.storage.base import JobStorage

logger = logging.getLogger(__name__)


class Worker:
    """
    Polls the store for eligible jobs and runs them one at a time.

    Any number of workers may share a store; the store's claim is the only
    coordination between them. With ``stale_timeout_seconds`` set, the worker
    also requeues jobs whose owners died, every ``recovery_interval_seconds``.
    """

    error_cooldown_seconds = 5.0
    max_outage_cooldown_seconds = 30.0

    def __init__(
        self,
        storage: JobStorage,
        registry: HandlerRegistry,
        poll_interval_seconds: float = 1.0,
        stale_timeout_seconds: Optional[float] = None,
        recovery_interval_seconds: float = 60.0,
        worker_id: Optional[str] = None,
    ):
        self.storage = storage
        self.registry = registry
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_timeout_seconds = stale_timeout_seconds
        self.recovery_interval_seconds = recovery_interval_seconds
        self.worker_id = worker_id or f"worker:{uuid.uuid4()}"
        self._shutdown = threading.Event()
        self._next_recovery_at = 0.0

    def stop(self) -> None:
        self._shutdown.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def recover_if_due(self) -> int:
        if self.stale_timeout_seconds is None:
            return 0
        now = time.monotonic()
        if now < self._next_recovery_at:
            return 0
        self._next_recovery_at = now + self.recovery_interval_seconds
        recovered = self.storage.recover_stale_jobs(
            timedelta(seconds=self.stale_timeout_seconds)
        )
        if recovered:
            logger.info(f"[{self.worker_id}] Recovered {recovered} stale jobs")
        return recovered

    def run_once(self) -> bool:
        """Claims and processes at most one job. Returns True if a job was run."""
        self.recover_if_due()
        job = self.storage.claim_next_job()
        if job is None:
            return False

        logger.info(f"[{self.worker_id}] Picked up job {job.id} ({job.type})")
        JobProcessor(job, self.storage, self.registry).process()
        logger.info(f"[{self.worker_id}] Finished processing job {job.id}")
        return True

    def run(self) -> None:
        """Starts the worker's processing loop; returns after ``stop()``."""
        logger.info(
            f"[{self.worker_id}] Starting worker for job types: {', '.join(self.registry.job_types) or '(none)'}"
        )
        outage_cooldown = 1.0
        while not self._shutdown.is_set():
            try:
                processed = self.run_once()
                outage_cooldown = 1.0
                if not processed:
                    self._shutdown.wait(self.poll_interval_seconds)
            except StoreUnavailableError as e:
                logger.warning(
                    f"[{self.worker_id}] Job store unavailable, retrying in {outage_cooldown:.0f}s: {e}"
                )
                self._shutdown.wait(outage_cooldown)
                outage_cooldown = min(outage_cooldown * 2, self.max_outage_cooldown_seconds)
            except Exception:
                logger.exception(f"[{self.worker_id}] Unhandled exception in worker loop")
                self._shutdown.wait(self.error_cooldown_seconds)

        logger.info(f"[{self.worker_id}] Worker has stopped.")
