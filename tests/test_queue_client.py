import pytest

from jobdispatch.broker import BrokerConnectionManager
from jobdispatch.client import JobQueue
from jobdispatch.common.backoff import BackoffPolicy
from jobdispatch.common.exceptions import InvalidPayloadError
from jobdispatch.config import Settings
from jobdispatch.queues import (
    QUEUE_DEFINITIONS,
    QUEUE_NAMES,
    enqueue_email,
    enqueue_plagiarism_check,
)

EMAIL = {"to": "student@example.com", "subject": "Hello", "html": "<p>Hi</p>"}
PLAGIARISM = {
    "submissionId": "s1",
    "storageKey": "uploads/s1.pdf",
    "fileType": "application/pdf",
    "projectId": "p1",
    "chapter": 2,
}


@pytest.fixture
def broker():
    manager = BrokerConnectionManager(
        Settings(backend="memory", default_max_attempts=4)
    )
    manager.connect()
    yield manager
    manager.close()


@pytest.fixture
def queue(broker):
    return JobQueue(broker)


def test_queue_definitions_match_known_queues():
    email = QUEUE_DEFINITIONS[QUEUE_NAMES.EMAIL]
    assert (email.max_attempts, email.concurrency) == (3, 5)
    assert email.backoff == BackoffPolicy(base_delay=3.0)
    assert (email.keep_completed, email.keep_failed) == (100, 200)

    plagiarism = QUEUE_DEFINITIONS[QUEUE_NAMES.PLAGIARISM]
    assert plagiarism.concurrency == 2
    assert plagiarism.limiter == (10, 60.0)
    assert [plagiarism.backoff.compute_delay(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]


def test_enqueue_uses_queue_defaults(queue):
    job_id = enqueue_email(queue, EMAIL)
    job = queue.get_job_details(job_id)
    assert job.queue_name == "email-dispatch"
    assert job.status == "queued"
    assert job.attempt == 0
    assert job.max_attempts == 3
    assert job.backoff.base_delay == 3.0
    assert job.payload == EMAIL


def test_enqueue_overrides(queue):
    job_id = queue.enqueue(
        QUEUE_NAMES.EMAIL,
        {**EMAIL, "from": "dean@example.com"},
        max_attempts=5,
        backoff={"strategy": "fixed", "base_delay": 1},
        priority=7,
    )
    job = queue.get_job_details(job_id)
    assert job.max_attempts == 5
    assert job.backoff.strategy == "fixed"
    assert job.priority == 7
    assert job.payload["from"] == "dean@example.com"


def test_unknown_queue_falls_back_to_settings(queue):
    job = queue.get_job_details(queue.enqueue("reports", {"anything": True}))
    assert job.max_attempts == 4
    assert job.backoff == BackoffPolicy()


def test_invalid_payload_is_rejected(queue, broker):
    with pytest.raises(InvalidPayloadError):
        enqueue_email(queue, {"to": "student@example.com"})
    with pytest.raises(InvalidPayloadError):
        enqueue_plagiarism_check(queue, {**PLAGIARISM, "chapter": "two"})
    assert broker.storage.get_state_job_count("queued") == 0


def test_max_attempts_must_be_positive(queue):
    with pytest.raises(ValueError):
        queue.enqueue("reports", {}, max_attempts=0)


def test_plagiarism_checks_are_deduplicated(queue, broker):
    first = enqueue_plagiarism_check(queue, PLAGIARISM)
    second = enqueue_plagiarism_check(queue, PLAGIARISM)
    assert first == second == "plag-s1"
    assert broker.storage.get_state_job_count("queued") == 1


def test_inspection_helpers(queue):
    ids = [enqueue_email(queue, EMAIL) for _ in range(3)]
    counts = queue.get_state_counts()
    assert counts == {"queued": 3, "processing": 0, "completed": 0, "failed": 0}
    page = queue.get_jobs_by_state("queued", page=1, page_size=2)
    assert len(page) == 2
    assert {job.id for job in page} <= set(ids)
    assert queue.get_jobs_by_state("queued", page=3, page_size=2) == []
