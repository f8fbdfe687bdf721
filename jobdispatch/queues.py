# jobdispatch/queues.py
"""Known queues: their names, payload schemas and per-queue job defaults."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field

from jobdispatch.common.backoff import BackoffPolicy
from jobdispatch.common.job import DEFAULT_MAX_ATTEMPTS

if TYPE_CHECKING:
    from jobdispatch.client import JobQueue


class QUEUE_NAMES:
    EMAIL = "email-dispatch"
    PLAGIARISM = "plagiarism-check"


class EmailPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to: str = Field(min_length=1)
    subject: str
    html: str
    text: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")


class PlagiarismPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    submission_id: str = Field(alias="submissionId", min_length=1)
    storage_key: str = Field(alias="storageKey")
    file_type: str = Field(alias="fileType")
    project_id: str = Field(alias="projectId")
    chapter: int


@dataclass(frozen=True)
class QueueDefinition:
    name: str
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff: BackoffPolicy = BackoffPolicy()
    concurrency: int = 1
    keep_completed: Optional[int] = None
    keep_failed: Optional[int] = None
    # (max jobs, per seconds)
    limiter: Optional[Tuple[int, float]] = None
    schema: Optional[Type[BaseModel]] = None

    def validate_payload(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Returns the normalised payload. Raises pydantic's ValidationError."""
        if self.schema is None:
            return dict(payload)
        model = self.schema.model_validate(payload)
        return model.model_dump(by_alias=True, exclude_none=True)


EMAIL_QUEUE = QueueDefinition(
    name=QUEUE_NAMES.EMAIL,
    max_attempts=3,
    backoff=BackoffPolicy(strategy="exponential", base_delay=3.0),
    concurrency=5,
    keep_completed=100,
    keep_failed=200,
    schema=EmailPayload,
)

# 5s -> 10s -> 20s
PLAGIARISM_QUEUE = QueueDefinition(
    name=QUEUE_NAMES.PLAGIARISM,
    max_attempts=3,
    backoff=BackoffPolicy(strategy="exponential", base_delay=5.0),
    concurrency=2,
    keep_completed=200,
    keep_failed=500,
    limiter=(10, 60.0),
    schema=PlagiarismPayload,
)

QUEUE_DEFINITIONS: Dict[str, QueueDefinition] = {
    EMAIL_QUEUE.name: EMAIL_QUEUE,
    PLAGIARISM_QUEUE.name: PLAGIARISM_QUEUE,
}


def enqueue_email(queue: "JobQueue", payload: Mapping[str, Any]) -> str:
    return queue.enqueue(QUEUE_NAMES.EMAIL, payload)


def enqueue_plagiarism_check(queue: "JobQueue", payload: Mapping[str, Any]) -> str:
    """Enqueues a check; one job per submission no matter how often it is called."""
    submission_id = payload.get("submissionId") or payload.get("submission_id")
    return queue.enqueue(
        QUEUE_NAMES.PLAGIARISM, payload, job_id=f"plag-{submission_id}"
    )
