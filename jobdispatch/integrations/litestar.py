"""Litestar integration helpers for jobdispatch."""

from __future__ import annotations

try:
    from litestar import Litestar
    from litestar.datastructures import State
    from litestar.di import Provide
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "Litestar integration requires 'litestar'. Install with `pip install jobdispatch[litestar]`."
    ) from exc

from jobdispatch.client import JobQueue
from jobdispatch.lifecycle import JobDispatcher


def get_job_queue(state: State) -> JobQueue:
    return state.job_queue


def job_queue_dependency() -> Provide:
    return Provide(get_job_queue, sync_to_thread=False)


def configure_jobdispatch(
    app: Litestar, dispatcher: JobDispatcher, stop_timeout: float = 10.0
) -> JobQueue:
    app.state.job_queue = dispatcher.queue
    app.on_startup.append(dispatcher.start)
    app.on_shutdown.append(lambda: dispatcher.stop(stop_timeout))
    return dispatcher.queue
