"""FastAPI integration helpers for jobdispatch."""

from __future__ import annotations

from contextlib import asynccontextmanager

try:
    from fastapi import FastAPI, Request
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "FastAPI integration requires 'fastapi'. Install with `pip install jobdispatch[fastapi]`."
    ) from exc

from jobdispatch.client import JobQueue
from jobdispatch.lifecycle import JobDispatcher


class JobDispatchFastAPIPlugin:
    def __init__(self, app: FastAPI, dispatcher: JobDispatcher, stop_timeout: float = 10.0):
        self.app = app
        self.dispatcher = dispatcher
        self.stop_timeout = stop_timeout

        app.state.job_queue = dispatcher.queue
        app.state.job_dispatcher = dispatcher

        # Wrap whatever lifespan the app already has so user hooks still run.
        app_lifespan = app.router.lifespan_context

        @asynccontextmanager
        async def lifespan(lifespan_app):
            await self.startup()
            try:
                async with app_lifespan(lifespan_app) as state:
                    yield state
            finally:
                await self.shutdown()

        app.router.lifespan_context = lifespan

    def get_queue(self) -> JobQueue:
        return self.dispatcher.queue

    async def startup(self) -> None:
        self.dispatcher.start()

    async def shutdown(self) -> None:
        self.dispatcher.stop(self.stop_timeout)


def get_job_queue(request: Request) -> JobQueue:
    """Dependency returning the application's ``JobQueue``."""
    return request.app.state.job_queue


def add_jobdispatch_to_fastapi(
    app: FastAPI, dispatcher: JobDispatcher, stop_timeout: float = 10.0
) -> JobDispatchFastAPIPlugin:
    return JobDispatchFastAPIPlugin(app, dispatcher, stop_timeout)
