# jobdispatch/common/job.py
import uuid
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Dict, Optional

from jobdispatch.common.backoff import BackoffPolicy
from jobdispatch.common.states import QueuedState

DEFAULT_MAX_ATTEMPTS = 3


@dataclass
class Job:
    """
    A durable unit of work handled by the processor registered for its queue.

    ``queue_name``, ``payload``, ``max_attempts`` and ``backoff`` are fixed at
    enqueue time. Only the broker mutates ``attempt``, ``status``,
    ``last_error``, ``state_data`` and ``updated_at``.
    """

    queue_name: str
    payload: Dict[str, Any]

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    priority: int = 0

    # State information
    status: str = QueuedState.NAME
    attempt: int = 0
    last_error: Optional[str] = None
    state_data: Dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @property
    def attempts_left(self) -> int:
        return self.max_attempts - self.attempt
