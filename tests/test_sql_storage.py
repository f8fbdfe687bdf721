import time

import pytest

sqlalchemy = pytest.importorskip("sqlalchemy")
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool

from jobdispatch.common.backoff import BackoffPolicy
from jobdispatch.common.job import Job
from jobdispatch.common.states import CompletedState, FailedState, QueuedState
from jobdispatch.storage.sql_storage import QueueEntryModel, SqlStorage


def _make_storage(**kwargs) -> SqlStorage:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return SqlStorage(engine=engine, create_tables=True, **kwargs)


def _job(**kwargs) -> Job:
    return Job(queue_name="default", payload={"to": "a@example.com"}, **kwargs)


def test_sql_storage_enqueue_dequeue():
    storage = _make_storage()
    job = _job(backoff=BackoffPolicy(strategy="fixed", base_delay=2.0))
    storage.enqueue(job)

    dequeued = storage.dequeue("default", timeout_seconds=0, worker_id="worker-1")
    assert dequeued is not None
    assert dequeued.id == job.id
    assert dequeued.status == "processing"
    assert dequeued.attempt == 1
    assert dequeued.payload == {"to": "a@example.com"}
    assert dequeued.backoff == BackoffPolicy(strategy="fixed", base_delay=2.0)

    assert storage.dequeue("default", timeout_seconds=0, worker_id="worker-1") is None


def test_sql_storage_deduplicates_job_ids():
    storage = _make_storage()
    storage.enqueue(_job(id="plag-1"))
    storage.enqueue(_job(id="plag-1"))
    assert storage.get_state_job_count("queued") == 1


def test_sql_storage_priority_order():
    storage = _make_storage()
    low = _job()
    high = _job(priority=10)
    storage.enqueue(low)
    storage.enqueue(high)
    assert storage.dequeue("default", 0, "w").id == high.id
    assert storage.dequeue("default", 0, "w").id == low.id


def test_sql_storage_delayed_retry():
    storage = _make_storage()
    job = _job()
    storage.enqueue(job)
    storage.dequeue("default", 0, "w")

    assert storage.set_job_state(
        job.id, QueuedState(delay=0.2), expected_old_state="processing"
    )
    assert storage.dequeue("default", 0, "w") is None
    retried = storage.dequeue("default", 2, "w")
    assert retried is not None
    assert retried.attempt == 2


def test_sql_storage_acknowledge_removes_queue_entry():
    storage = _make_storage()
    job = _job()
    storage.enqueue(job)
    storage.dequeue("default", 0, "w")
    assert storage.set_job_state(job.id, CompletedState(result=3), "processing")
    storage.acknowledge(job.id)

    with storage._session_factory() as session:
        entry = session.execute(
            select(QueueEntryModel).where(QueueEntryModel.job_id == job.id)
        ).scalar_one_or_none()
    assert entry is None

    stored = storage.get_job_data(job.id)
    assert stored.status == "completed"
    assert stored.state_data["result"] == 3
    history = [row["state"] for row in storage.get_job_history(job.id)]
    assert history == ["queued", "processing", "completed"]


def test_sql_storage_failed_state_sets_last_error():
    storage = _make_storage()
    job = _job()
    storage.enqueue(job)
    storage.dequeue("default", 0, "w")
    storage.set_job_state(job.id, FailedState("SMTPException", "refused"), "processing")
    assert storage.get_job_data(job.id).last_error == "SMTPException: refused"


def test_sql_storage_recovers_expired_leases():
    storage = _make_storage(visibility_timeout=0.05)
    retryable = _job(max_attempts=2)
    exhausted = _job(max_attempts=1)
    storage.enqueue(retryable)
    storage.enqueue(exhausted)
    storage.dequeue("default", 0, "w")
    storage.dequeue("default", 0, "w")

    time.sleep(0.1)
    recovered = storage.recover_stuck_jobs()
    assert sorted(recovered) == sorted([retryable.id, exhausted.id])
    assert storage.get_job_data(retryable.id).status == "queued"
    failed = storage.get_job_data(exhausted.id)
    assert failed.status == "failed"
    assert failed.last_error == "LeaseExpired: visibility timeout expired"


def test_sql_storage_release_restores_attempt():
    storage = _make_storage()
    job = _job()
    storage.enqueue(job)
    storage.dequeue("default", 0, "w")

    assert storage.release(job.id)
    assert storage.get_job_data(job.id).attempt == 0
    assert storage.dequeue("default", 0, "w").attempt == 1


def test_sql_storage_retention():
    storage = _make_storage()
    storage.set_retention("default", keep_failed=1)
    jobs = [_job(), _job()]
    for job in jobs:
        storage.enqueue(job)
    for job in jobs:
        storage.dequeue("default", 0, "w")
        storage.set_job_state(job.id, FailedState("ValueError", "x"), "processing")
        storage.acknowledge(job.id)

    assert storage.get_job_data(jobs[0].id) is None
    assert storage.get_job_data(jobs[1].id) is not None
    assert storage.get_job_history(jobs[0].id) == []


def test_sql_storage_state_queries():
    storage = _make_storage()
    ids = [storage.enqueue(_job()) for _ in range(3)]
    assert storage.get_state_job_count("queued") == 3
    assert sorted(storage.get_job_ids_by_state("queued", 0, 10)) == sorted(ids)
    assert len(storage.get_job_ids_by_state("queued", 1, 10)) == 2
    assert storage.ping()
