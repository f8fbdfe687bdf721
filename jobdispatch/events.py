# jobdispatch/events.py
"""
Typed lifecycle notifications emitted by worker pools.

Sinks subscribe to ``JobCompleted``, ``JobFailed`` and ``PoolError``. Every
pool owns one ``EventDispatcher`` whose single delivery thread drains a FIFO,
so a slow or raising sink never stalls job processing and events of one pool
arrive in the order they were published.
"""
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobCompleted:
    job_id: str
    queue_name: str
    result: Any = None


@dataclass(frozen=True)
class JobFailed:
    job_id: str
    queue_name: str
    attempt: int
    error_message: str


@dataclass(frozen=True)
class PoolError:
    queue_name: str
    error_message: str


Event = Union[JobCompleted, JobFailed, PoolError]


class EventSink:
    def on_completed(self, event: JobCompleted) -> None:
        pass  # Default implementation does nothing

    def on_failed(self, event: JobFailed) -> None:
        pass

    def on_pool_error(self, event: PoolError) -> None:
        pass


class CallbackSink(EventSink):
    """Adapts plain callables to the sink interface."""

    def __init__(
        self,
        on_completed: Optional[Callable[[JobCompleted], None]] = None,
        on_failed: Optional[Callable[[JobFailed], None]] = None,
        on_pool_error: Optional[Callable[[PoolError], None]] = None,
    ):
        self._on_completed = on_completed
        self._on_failed = on_failed
        self._on_pool_error = on_pool_error

    def on_completed(self, event: JobCompleted) -> None:
        if self._on_completed:
            self._on_completed(event)

    def on_failed(self, event: JobFailed) -> None:
        if self._on_failed:
            self._on_failed(event)

    def on_pool_error(self, event: PoolError) -> None:
        if self._on_pool_error:
            self._on_pool_error(event)


class LoggingEventSink(EventSink):
    def on_completed(self, event: JobCompleted) -> None:
        logger.info(f"[{event.queue_name}] Job {event.job_id} completed")

    def on_failed(self, event: JobFailed) -> None:
        logger.error(
            f"[{event.queue_name}] Job {event.job_id} FAILED after "
            f"{event.attempt} attempt(s): {event.error_message}"
        )

    def on_pool_error(self, event: PoolError) -> None:
        logger.error(f"[{event.queue_name}] Worker pool error: {event.error_message}")


_STOP = object()


class EventDispatcher:
    def __init__(self, name: str, sinks: Optional[List[EventSink]] = None):
        self.name = name
        self._sinks: List[EventSink] = list(sinks or [])
        self._events: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def add_sink(self, sink: EventSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run, name=f"events:{self.name}", daemon=True
            )
            self._thread.start()

    def publish(self, event: Event) -> None:
        """Queue an event for delivery. Never blocks on sinks."""
        self._events.put(event)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Deliver what is already queued, then stop the delivery thread."""
        thread = self._thread
        if thread is None:
            return
        self._events.put(_STOP)
        thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while True:
            event = self._events.get()
            if event is _STOP:
                return
            self._deliver(event)

    def _deliver(self, event: Event) -> None:
        with self._lock:
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                if isinstance(event, JobCompleted):
                    sink.on_completed(event)
                elif isinstance(event, JobFailed):
                    sink.on_failed(event)
                elif isinstance(event, PoolError):
                    sink.on_pool_error(event)
            except Exception:
                logger.exception(
                    f"Event sink {type(sink).__name__} raised while handling {event!r}"
                )
