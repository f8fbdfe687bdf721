# jobdispatch/storage/memory_storage.py
import copy
import heapq
import itertools
import time
from collections import deque
from datetime import datetime, UTC
from threading import RLock, Condition
from typing import Any, Dict, List, Optional, Tuple

from jobdispatch.common.exceptions import BrokerUnavailableError
from jobdispatch.common.job import Job
from jobdispatch.common.states import (
    BaseState,
    FailedState,
    ProcessingState,
    QueuedState,
    TERMINAL_STATES,
)
from jobdispatch.storage.base import (
    DEFAULT_VISIBILITY_TIMEOUT,
    JobStorage,
    UPDATABLE_FIELDS,
)


class MemoryStorage(JobStorage):
    """Process-local backend for tests and single-process development."""

    def __init__(self, visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT):
        super().__init__(visibility_timeout)
        self._jobs: Dict[str, Job] = {}
        # Heaps of (-priority, seq, job_id) and (ready_at, seq, job_id).
        self._queues: Dict[str, List[Tuple[int, int, str]]] = {}
        self._delayed: Dict[str, List[Tuple[float, int, str]]] = {}
        self._entries: Dict[str, int] = {}  # job_id -> seq of its live heap entry
        self._processing: Dict[str, float] = {}  # job_id -> lease deadline
        self._terminal: Dict[Tuple[str, str], deque] = {}
        self._seq = itertools.count()
        self._closed = False
        self._lock = RLock()
        self._condition = Condition(self._lock)

    def ping(self) -> bool:
        return not self._closed

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._condition.notify_all()

    def enqueue(self, job: Job) -> str:
        with self._lock:
            if self._closed:
                raise BrokerUnavailableError("Memory broker has been closed")
            if job.id in self._jobs:
                return job.id
            stored = copy.deepcopy(job)
            self._jobs[stored.id] = stored
            self._push(stored)
            self._condition.notify()  # Notify any waiting worker
        return job.id

    def _push(self, job: Job, delay: float = 0.0) -> None:
        seq = next(self._seq)
        self._entries[job.id] = seq
        if delay > 0:
            heap = self._delayed.setdefault(job.queue_name, [])
            heapq.heappush(heap, (time.monotonic() + delay, seq, job.id))
        else:
            heap = self._queues.setdefault(job.queue_name, [])
            heapq.heappush(heap, (-job.priority, seq, job.id))

    def _promote_due(self, queue_name: str, now: float) -> None:
        delayed = self._delayed.get(queue_name)
        while delayed and delayed[0][0] <= now:
            _, seq, job_id = heapq.heappop(delayed)
            job = self._jobs.get(job_id)
            if job is None or self._entries.get(job_id) != seq:
                continue
            self._push(job)

    def _pop_ready(self, queue_name: str) -> Optional[Job]:
        heap = self._queues.get(queue_name)
        while heap:
            _, seq, job_id = heapq.heappop(heap)
            job = self._jobs.get(job_id)
            if job is None or self._entries.get(job_id) != seq:
                continue  # stale entry
            if job.status != QueuedState.NAME:
                continue
            del self._entries[job_id]
            return job
        return None

    def _next_due(self, queue_name: str) -> Optional[float]:
        delayed = self._delayed.get(queue_name)
        return delayed[0][0] if delayed else None

    def dequeue(
        self, queue_name: str, timeout_seconds: float, worker_id: str
    ) -> Optional[Job]:
        deadline = time.monotonic() + timeout_seconds
        with self._condition:
            while not self._closed:
                now = time.monotonic()
                self._reclaim(now)
                self._promote_due(queue_name, now)
                job = self._pop_ready(queue_name)
                if job:
                    # Atomically move to processing
                    job.attempt += 1
                    self._apply_state(job, ProcessingState(worker_id))
                    self._processing[job.id] = now + self.visibility_timeout
                    return copy.deepcopy(job)

                remaining = deadline - now
                if remaining <= 0:
                    return None
                next_due = self._next_due(queue_name)
                if next_due is not None:
                    remaining = min(remaining, max(next_due - now, 0.001))
                self._condition.wait(remaining)
            raise BrokerUnavailableError("Memory broker has been closed")

    def _apply_state(self, job: Job, state: BaseState) -> None:
        job.status = state.name
        job.state_data = state.serialize_data()
        job.updated_at = datetime.now(UTC)
        if isinstance(state, FailedState):
            job.last_error = state.error

    def _reclaim(self, now: float, cutoff: Optional[float] = None, limit: int = 0) -> List[str]:
        cutoff = now if cutoff is None else cutoff
        expired = [job_id for job_id, lease in self._processing.items() if lease <= cutoff]
        if limit:
            expired = expired[:limit]
        for job_id in expired:
            del self._processing[job_id]
            job = self._jobs[job_id]
            if job.attempt >= job.max_attempts:
                self._apply_state(
                    job,
                    FailedState("LeaseExpired", "visibility timeout expired"),
                )
                self._track_terminal(job)
            else:
                self._apply_state(job, QueuedState(reason="Lease expired"))
                self._push(job)
        if expired:
            self._condition.notify_all()
        return expired

    def recover_stuck_jobs(
        self, max_age_seconds: Optional[float] = None, limit: int = 100
    ) -> List[str]:
        with self._lock:
            now = time.monotonic()
            cutoff = None
            if max_age_seconds is not None:
                cutoff = now - max_age_seconds + self.visibility_timeout
            return self._reclaim(now, cutoff, limit)

    def release(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != ProcessingState.NAME:
                return False
            self._processing.pop(job_id, None)
            job.attempt = max(job.attempt - 1, 0)
            self._apply_state(job, QueuedState(reason="Released by stopping worker"))
            self._push(job)
            self._condition.notify()
            return True

    def acknowledge(self, job_id: str) -> None:
        with self._lock:
            self._processing.pop(job_id, None)
            job = self._jobs.get(job_id)
            if job is not None and job.status in TERMINAL_STATES:
                self._track_terminal(job)

    def _track_terminal(self, job: Job) -> None:
        keep = self._retention_limit(job.queue_name, job.status)
        if keep is None:
            return
        history = self._terminal.setdefault((job.queue_name, job.status), deque())
        if job.id not in history:
            history.append(job.id)
        while len(history) > keep:
            old_id = history.popleft()
            old = self._jobs.get(old_id)
            if old is not None and old.status in TERMINAL_STATES:
                del self._jobs[old_id]

    def set_job_state(
        self, job_id: str, state: BaseState, expected_old_state: Optional[str] = None
    ) -> bool:
        with self._lock:
            if job_id not in self._jobs:
                return False

            job = self._jobs[job_id]
            if expected_old_state and job.status != expected_old_state:
                return False

            self._apply_state(job, state)
            if isinstance(state, QueuedState):
                # A retry moves the job from processing back to its queue.
                self._processing.pop(job_id, None)
                self._push(job, state.delay)
                self._condition.notify_all()
            return True

    def get_job_data(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def update_job_field(self, job_id: str, field_name: str, value: Any) -> None:
        if field_name not in UPDATABLE_FIELDS:
            raise ValueError(f"Unsupported field update: {field_name}")
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                setattr(job, field_name, value)
                job.updated_at = datetime.now(UTC)

    def get_job_ids_by_state(self, state_name: str, start: int, count: int) -> List[str]:
        with self._lock:
            jobs = sorted(
                (job for job in self._jobs.values() if job.status == state_name),
                key=lambda job: job.created_at,
                reverse=True,
            )
            return [job.id for job in jobs[start : start + count]]

    def get_state_job_count(self, state_name: str) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.status == state_name)
