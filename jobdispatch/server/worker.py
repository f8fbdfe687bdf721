# jobdispatch/server/worker.py
import logging
import threading
import uuid
from typing import Optional

from jobdispatch.events import EventDispatcher, PoolError
from jobdispatch.execution.performer import Processor
from jobdispatch.server.limiter import RateLimiter
from jobdispatch.server.processor import JobProcessor
from jobdispatch.storage.base import JobStorage

logger = logging.getLogger(__name__)


class Worker:
    """One execution slot: pulls a job, processes it, reports, repeats."""

    def __init__(
        self,
        storage: JobStorage,
        queue_name: str,
        processor: Processor,
        shutdown_event: threading.Event,
        events: Optional[EventDispatcher] = None,
        limiter: Optional[RateLimiter] = None,
        dequeue_timeout: float = 1.0,
        error_cooldown: float = 5.0,
    ):
        self.storage = storage
        self.queue_name = queue_name
        self.processor = processor
        self.events = events
        self.limiter = limiter
        self.dequeue_timeout = dequeue_timeout
        self.error_cooldown = error_cooldown
        self.worker_id = f"worker:{uuid.uuid4()}"
        self.current_job_id: Optional[str] = None
        self._shutdown = shutdown_event

    def run(self):
        """Starts the worker's processing loop."""
        logger.debug(f"[{self.worker_id}] Starting worker for queue {self.queue_name}")
        while not self._shutdown.is_set():
            try:
                if self.limiter and not self.limiter.acquire(self._shutdown):
                    break

                # 1. Dequeue a job
                job = self.storage.dequeue(
                    self.queue_name, self.dequeue_timeout, self.worker_id
                )
                if job is None:
                    if self.limiter:
                        self.limiter.refund()
                    continue

                if self._shutdown.is_set():
                    # Stop was requested while we waited; hand the job back untouched.
                    self.storage.release(job.id)
                    if self.limiter:
                        self.limiter.refund()
                    logger.info(f"[{self.worker_id}] Released job {job.id} on shutdown")
                    break

                # 2. Process it
                self.current_job_id = job.id
                logger.debug(f"[{self.worker_id}] Picked up job {job.id}")
                try:
                    JobProcessor(job, self.storage, self.processor, self.events).process()
                finally:
                    self.current_job_id = None

            except Exception as e:
                logger.exception(f"[{self.worker_id}] Unhandled exception in worker loop")
                if self.events is not None:
                    self.events.publish(PoolError(self.queue_name, str(e)))
                self._shutdown.wait(self.error_cooldown)  # Cooldown period after a major failure

        logger.debug(f"[{self.worker_id}] Worker has stopped.")
