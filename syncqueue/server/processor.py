# syncqueue/server/processor.py
import logging

from syncqueue.common.job import Job
from syncqueue.execution.performer import HandlerRegistry, perform_job
from syncqueue.storage.base import JobStorage

logger = logging.getLogger(__name__)


class JobProcessor:
    def __init__(self, job: Job, storage: JobStorage, registry: HandlerRegistry):
        self.job = job
        self.storage = storage
        self.registry = registry

    def process(self) -> bool:
        """Runs the claimed job and reports the outcome. Returns True when the job completed."""
        try:
            result = perform_job(self.registry, self.job.type, self.job.options)
        except Exception as e:
            # Handler errors are recorded on the job, never raised to the worker
            logger.error(f"Job {self.job.id} ({self.job.type}) failed.", exc_info=True)
            self.storage.report_failure(
                self.job.id, f"{type(e).__name__}: {e}", started_at=self.job.started_at
            )
            return False

        return self.storage.report_success(self.job.id, result, started_at=self.job.started_at)
