# jobdispatch/execution/performer.py
import asyncio
import importlib
import inspect
import logging
from typing import Any, Callable, Dict, Optional

from jobdispatch.common.exceptions import JobLoadError
from jobdispatch.common.job import Job

logger = logging.getLogger(__name__)

Processor = Callable[[Job], Any]


def load_processor(path: str) -> Callable[..., Any]:
    """Dynamically imports ``package.module:attribute`` (or ``package.module.attribute``)."""
    if ":" in path:
        module_name, attr_name = path.split(":", 1)
    else:
        module_name, _, attr_name = path.rpartition(".")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr_name)
    except (ImportError, AttributeError, ValueError) as e:
        raise JobLoadError(f"Could not load processor: {path}") from e


def perform_job(processor: Processor, job: Job) -> Any:
    """Runs a processor for one job. Coroutine processors run to completion."""
    result = processor(job)
    if inspect.isawaitable(result):
        return asyncio.run(_await(result))
    return result


async def _await(awaitable):
    return await awaitable


def run_inline(
    queue_name: str, payload: Dict[str, Any], processor: Processor, job_id: Optional[str] = None
) -> Any:
    """
    Runs a processor synchronously, without a broker.

    Fallback for hosts whose broker is unavailable. Returns the processor's
    result, or None when it raised.
    """
    job = Job(queue_name=queue_name, payload=payload, attempt=1, max_attempts=1)
    if job_id:
        job.id = job_id
    try:
        return perform_job(processor, job)
    except Exception as e:
        logger.error(f"Inline job {job.id} on {queue_name} failed: {e}", exc_info=True)
        return None
