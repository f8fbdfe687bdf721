# jobdispatch/storage/base.py
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from jobdispatch.common.job import Job
from jobdispatch.common.states import BaseState

DEFAULT_VISIBILITY_TIMEOUT = 300.0


class JobStorage(ABC):
    """
    Durable queue backend shared by producers (``JobQueue``) and consumers
    (``WorkerPool``).

    A dequeued job is leased to one worker for ``visibility_timeout``
    seconds. Leases that expire without an acknowledgement are reclaimed:
    the job goes back to its queue, or to ``failed`` if it has no attempts
    left.
    """

    def __init__(self, visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT):
        self.visibility_timeout = visibility_timeout
        self._retention: Dict[str, Dict[str, Optional[int]]] = {}

    def set_retention(
        self,
        queue_name: str,
        keep_completed: Optional[int] = None,
        keep_failed: Optional[int] = None,
    ) -> None:
        """Keep only the newest N completed / M failed jobs of a queue."""
        self._retention[queue_name] = {
            "completed": keep_completed,
            "failed": keep_failed,
        }

    def _retention_limit(self, queue_name: str, status: str) -> Optional[int]:
        return self._retention.get(queue_name, {}).get(status)

    @abstractmethod
    def ping(self) -> bool: ...

    @abstractmethod
    def enqueue(self, job: Job) -> str: ...

    @abstractmethod
    def dequeue(
        self, queue_name: str, timeout_seconds: float, worker_id: str
    ) -> Optional[Job]: ...

    @abstractmethod
    def release(self, job_id: str) -> bool: ...

    @abstractmethod
    def acknowledge(self, job_id: str) -> None: ...

    @abstractmethod
    def set_job_state(
        self, job_id: str, state: BaseState, expected_old_state: Optional[str] = None
    ) -> bool: ...

    @abstractmethod
    def get_job_data(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    def update_job_field(self, job_id: str, field_name: str, value: Any) -> None: ...

    @abstractmethod
    def get_job_ids_by_state(
        self, state_name: str, start: int, count: int
    ) -> List[str]: ...

    @abstractmethod
    def get_state_job_count(self, state_name: str) -> int: ...

    @abstractmethod
    def recover_stuck_jobs(
        self, max_age_seconds: Optional[float] = None, limit: int = 100
    ) -> List[str]: ...

    def close(self) -> None:
        pass


UPDATABLE_FIELDS = {"last_error", "priority"}
