# jobdispatch/lifecycle.py
import logging
import threading
import time
from contextlib import AbstractContextManager, ExitStack
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from jobdispatch.broker import BrokerConnectionManager
from jobdispatch.client import JobQueue
from jobdispatch.common.exceptions import UnknownQueueError
from jobdispatch.config import Settings, get_settings
from jobdispatch.events import EventSink, LoggingEventSink
from jobdispatch.execution.performer import Processor
from jobdispatch.processors.email import EmailDispatchProcessor, SmtpTransport
from jobdispatch.processors.plagiarism import (
    CheckFunction,
    FailureCallback,
    PlagiarismCheckProcessor,
    PlagiarismFailureSink,
)
from jobdispatch.queues import QUEUE_DEFINITIONS, QUEUE_NAMES
from jobdispatch.server.limiter import RateLimiter
from jobdispatch.server.pool import DISABLED, IDLE, RUNNING, STOPPED, WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class _Registration:
    queue_name: str
    processor: Processor
    concurrency: int
    resources: List[AbstractContextManager] = field(default_factory=list)
    pool: Optional[WorkerPool] = None


class JobDispatcher:
    """
    Starts and stops every worker pool of a process together with the broker
    connection and the resources the processors share.

    With no reachable broker the dispatcher stays ``disabled``: it logs once,
    starts nothing and does not retry.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        broker: Optional[BrokerConnectionManager] = None,
        sinks: Sequence[EventSink] = (),
    ):
        self.settings = settings or get_settings()
        self.broker = broker or BrokerConnectionManager(self.settings)
        self.queue = JobQueue(self.broker, self.settings)
        self.status = IDLE
        self._sinks: List[EventSink] = [LoggingEventSink(), *sinks]
        self._registrations: Dict[str, _Registration] = {}
        self._resources: Optional[ExitStack] = None
        self._lock = threading.Lock()

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)
        for registration in self._registrations.values():
            if registration.pool is not None:
                registration.pool.add_sink(sink)

    def register(
        self,
        queue_name: str,
        processor: Processor,
        concurrency: Optional[int] = None,
        resources: Iterable[AbstractContextManager] = (),
    ) -> None:
        """Registers the processor for a queue. Takes effect on ``start``."""
        if queue_name in self._registrations:
            raise ValueError(f"A processor is already registered for {queue_name}")
        definition = QUEUE_DEFINITIONS.get(queue_name)
        if concurrency is None:
            concurrency = definition.concurrency if definition else 1
        self._registrations[queue_name] = _Registration(
            queue_name, processor, concurrency, list(resources)
        )

    def pool(self, queue_name: str) -> Optional[WorkerPool]:
        """The running pool of a registered queue; None before ``start``."""
        if queue_name not in self._registrations:
            raise UnknownQueueError(f"No processor registered for {queue_name}")
        return self._registrations[queue_name].pool

    def start(self) -> bool:
        with self._lock:
            if self.status == RUNNING:
                return True
            if self.status == DISABLED:
                return False

            if not self.broker.connect():
                self.status = DISABLED
                logger.info("Job dispatching disabled; no worker pools started.")
                return False

            storage = self.broker.storage
            self._resources = ExitStack()
            for registration in self._registrations.values():
                for resource in registration.resources:
                    self._resources.enter_context(resource)

                definition = QUEUE_DEFINITIONS.get(registration.queue_name)
                limiter = None
                if definition is not None:
                    storage.set_retention(
                        definition.name, definition.keep_completed, definition.keep_failed
                    )
                    if definition.limiter:
                        limiter = RateLimiter(*definition.limiter)

                registration.pool = WorkerPool(self.broker, sinks=self._sinks)
                registration.pool.start(
                    registration.queue_name,
                    registration.processor,
                    concurrency=registration.concurrency,
                    limiter=limiter,
                )

            self.status = RUNNING
            logger.info(
                f"Job dispatcher started: {', '.join(self._registrations) or 'no queues'}"
            )
            return True

    def stop(self, timeout: float = 30.0) -> bool:
        """Drains every pool within ``timeout`` overall, then releases resources."""
        with self._lock:
            drained = True
            deadline = time.monotonic() + timeout
            for registration in self._registrations.values():
                if registration.pool is not None:
                    remaining = max(deadline - time.monotonic(), 0)
                    drained = registration.pool.stop(remaining) and drained

            if self._resources is not None:
                self._resources.close()
                self._resources = None
            self.broker.close()

            if self.status == RUNNING:
                logger.info("Job dispatcher stopped.")
            self.status = STOPPED
            return drained

    def __enter__(self) -> "JobDispatcher":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


def create_dispatcher(
    settings: Optional[Settings] = None,
    sinks: Sequence[EventSink] = (),
    plagiarism_check: Optional[CheckFunction] = None,
    on_plagiarism_failed: Optional[FailureCallback] = None,
) -> JobDispatcher:
    """
    The dispatcher for the application's queues: email always, plagiarism
    checks when a check function is given.
    """
    settings = settings or get_settings()
    dispatcher = JobDispatcher(settings, sinks=sinks)

    email_queue = QUEUE_DEFINITIONS[QUEUE_NAMES.EMAIL]
    transport = SmtpTransport.from_settings(settings, pool_size=email_queue.concurrency)
    dispatcher.register(
        QUEUE_NAMES.EMAIL,
        EmailDispatchProcessor(transport, settings.email_from),
        resources=[transport],
    )

    if plagiarism_check is not None:
        dispatcher.register(
            QUEUE_NAMES.PLAGIARISM, PlagiarismCheckProcessor(plagiarism_check)
        )
        if on_plagiarism_failed is not None:
            dispatcher.add_sink(PlagiarismFailureSink(on_plagiarism_failed))
    return dispatcher
