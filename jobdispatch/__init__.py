from .client import JobQueue
from .config import Settings, configure, get_settings
from .events import CallbackSink, EventSink, JobCompleted, JobFailed, PoolError
from .lifecycle import JobDispatcher, create_dispatcher
from .queues import QUEUE_NAMES, enqueue_email, enqueue_plagiarism_check

__all__ = [
    "CallbackSink",
    "EventSink",
    "JobCompleted",
    "JobDispatcher",
    "JobFailed",
    "JobQueue",
    "PoolError",
    "QUEUE_NAMES",
    "Settings",
    "configure",
    "create_dispatcher",
    "enqueue_email",
    "enqueue_plagiarism_check",
    "get_settings",
]
