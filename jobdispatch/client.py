# jobdispatch/client.py
import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from jobdispatch.broker import BrokerConnectionManager
from jobdispatch.common.backoff import BackoffPolicy
from jobdispatch.common.exceptions import BrokerUnavailableError, InvalidPayloadError
from jobdispatch.common.job import Job
from jobdispatch.common.states import ALL_STATES, QueuedState
from jobdispatch.config import Settings, get_settings
from jobdispatch.queues import QUEUE_DEFINITIONS, QueueDefinition

logger = logging.getLogger(__name__)


class JobQueue:
    """
    Producer side of the dispatcher: submits jobs and queries them.

    A job is durable in the broker by the time ``enqueue`` returns; when it
    cannot be made durable ``BrokerUnavailableError`` is raised instead.
    """

    def __init__(
        self,
        broker: BrokerConnectionManager,
        settings: Optional[Settings] = None,
        definitions: Optional[Mapping[str, QueueDefinition]] = None,
    ):
        self.broker = broker
        self.settings = settings or broker.settings or get_settings()
        self.definitions = dict(QUEUE_DEFINITIONS if definitions is None else definitions)

    def enqueue(
        self,
        queue_name: str,
        payload: Mapping[str, Any],
        max_attempts: Optional[int] = None,
        backoff: Union[BackoffPolicy, Mapping[str, Any], None] = None,
        priority: Optional[int] = None,
        job_id: Optional[str] = None,
    ) -> str:
        """Creates a job. Returns the existing id if ``job_id`` is already taken."""
        if not self.broker.is_available():
            raise BrokerUnavailableError(
                f"Cannot enqueue on {queue_name}: broker is not available"
            )

        definition = self.definitions.get(queue_name)
        if definition is not None:
            try:
                payload = definition.validate_payload(payload)
            except ValidationError as e:
                raise InvalidPayloadError(
                    f"Invalid payload for {queue_name}: {e}"
                ) from e
            default_attempts = definition.max_attempts
            default_backoff = definition.backoff
        else:
            payload = dict(payload)
            default_attempts = self.settings.default_max_attempts
            default_backoff = BackoffPolicy()

        job = Job(
            queue_name=queue_name,
            payload=payload,
            max_attempts=max_attempts if max_attempts is not None else default_attempts,
            backoff=BackoffPolicy.from_value(backoff) if backoff is not None else default_backoff,
            priority=priority or 0,
            state_data=QueuedState(reason="Enqueued").serialize_data(),
        )
        if job_id:
            job.id = job_id

        stored_id = self.broker.storage.enqueue(job)
        logger.debug(f"Enqueued job {stored_id} on {queue_name}")
        return stored_id

    # --- Inspection ---

    def get_job_details(self, job_id: str) -> Optional[Job]:
        return self.broker.storage.get_job_data(job_id)

    def get_jobs_by_state(
        self, state_name: str, page: int = 1, page_size: int = 20
    ) -> List[Job]:
        start = (page - 1) * page_size
        job_ids = self.broker.storage.get_job_ids_by_state(state_name, start, page_size)

        jobs = []
        for job_id in job_ids:
            job = self.broker.storage.get_job_data(job_id)
            if job:
                jobs.append(job)
        return jobs

    def get_state_counts(self) -> Dict[str, int]:
        return {
            state: self.broker.storage.get_state_job_count(state) for state in ALL_STATES
        }
