# jobdispatch/server/pool.py
import logging
import threading
import time
from typing import List, Optional

from jobdispatch.broker import BrokerConnectionManager
from jobdispatch.events import EventDispatcher, EventSink
from jobdispatch.execution.performer import Processor
from jobdispatch.server.limiter import RateLimiter
from jobdispatch.server.worker import Worker

logger = logging.getLogger(__name__)

IDLE = "idle"
RUNNING = "running"
DISABLED = "disabled"
STOPPED = "stopped"


class WorkerPool:
    """
    Bounded-concurrency consumer of one queue.

    ``start`` spawns exactly ``concurrency`` worker threads, so no more than
    ``concurrency`` jobs of this pool are ever in flight. ``stop`` drains
    cooperatively: workers never pick up another job once it is called.
    A stopped pool will not start again until the workers of its previous run
    have exited.
    """

    def __init__(
        self,
        broker: BrokerConnectionManager,
        sinks: Optional[List[EventSink]] = None,
        dequeue_timeout: float = 1.0,
        error_cooldown: float = 5.0,
    ):
        self.broker = broker
        self.dequeue_timeout = dequeue_timeout
        self.error_cooldown = error_cooldown
        self.status = IDLE
        self.queue_name: Optional[str] = None
        self.events: Optional[EventDispatcher] = None
        self._sinks: List[EventSink] = list(sinks or [])
        self._workers: List[Worker] = []
        self._threads: List[threading.Thread] = []
        self._shutdown = threading.Event()
        self._lock = threading.RLock()

    def add_sink(self, sink: EventSink) -> None:
        with self._lock:
            self._sinks.append(sink)
            if self.events is not None:
                self.events.add_sink(sink)

    @property
    def is_running(self) -> bool:
        return self.status == RUNNING

    @property
    def in_flight(self) -> int:
        return sum(1 for worker in self._workers if worker.current_job_id)

    def start(
        self,
        queue_name: str,
        processor: Processor,
        concurrency: int = 1,
        limiter: Optional[RateLimiter] = None,
    ) -> bool:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        with self._lock:
            if self.status == RUNNING:
                if queue_name == self.queue_name:
                    logger.warning(f"[{queue_name}] Worker pool already running.")
                else:
                    logger.error(
                        f"Worker pool is already serving {self.queue_name}; "
                        f"refusing to start it for {queue_name}"
                    )
                return False

            leftover = sum(1 for thread in self._threads if thread.is_alive())
            if leftover:
                logger.error(
                    f"[{queue_name}] {leftover} worker(s) from the previous run are still "
                    f"finishing their jobs; refusing to start another set"
                )
                return False

            self.queue_name = queue_name
            if not self.broker.is_available():
                self.status = DISABLED
                logger.warning(
                    f"[{queue_name}] Broker not available; worker pool not started."
                )
                return False

            storage = self.broker.storage
            self._shutdown = threading.Event()
            self.events = EventDispatcher(queue_name, self._sinks)
            self.events.start()
            self._workers = [
                Worker(
                    storage,
                    queue_name,
                    processor,
                    self._shutdown,
                    events=self.events,
                    limiter=limiter,
                    dequeue_timeout=self.dequeue_timeout,
                    error_cooldown=self.error_cooldown,
                )
                for _ in range(concurrency)
            ]
            self._threads = [
                threading.Thread(
                    target=worker.run, name=f"{queue_name}:{index}", daemon=True
                )
                for index, worker in enumerate(self._workers)
            ]
            for thread in self._threads:
                thread.start()

            self.status = RUNNING
            logger.info(
                f"[{queue_name}] Worker pool started with concurrency {concurrency}."
            )
            return True

    def stop(self, timeout: float = 30.0) -> bool:
        """
        Stop accepting jobs and wait up to ``timeout`` seconds for in-flight
        jobs. Returns False if some were still running when time ran out;
        the broker's visibility timeout requeues those.
        """
        with self._lock:
            if self.status != RUNNING:
                return True

            self._shutdown.set()
            deadline = time.monotonic() + timeout
            for thread in self._threads:
                thread.join(max(deadline - time.monotonic(), 0))

            drained = not any(thread.is_alive() for thread in self._threads)
            if not drained:
                logger.warning(
                    f"[{self.queue_name}] {self.in_flight} job(s) still in flight after "
                    f"{timeout}s; leaving them to the broker's visibility timeout."
                )
            if self.events is not None:
                self.events.stop(max(deadline - time.monotonic(), 0))

            self.status = STOPPED
            logger.info(f"[{self.queue_name}] Worker pool stopped.")
            return drained
