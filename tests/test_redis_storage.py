import time
import uuid

import pytest

redis = pytest.importorskip("redis")

from jobdispatch.common.job import Job
from jobdispatch.common.states import CompletedState, QueuedState
from jobdispatch.storage.redis_storage import RedisStorage


@pytest.fixture
def redis_client():
    r = redis.Redis(host="localhost", port=6379, db=0, decode_responses=True)
    try:
        r.ping()
    except redis.exceptions.ConnectionError:
        pytest.skip("Redis server not available")
    yield r
    r.close()


@pytest.fixture
def redis_storage(redis_client):
    prefix = f"jobdispatch-test-{uuid.uuid4().hex[:8]}:"
    storage = RedisStorage(redis_client=redis_client, prefix=prefix, poll_interval=0.02)
    yield storage
    for key in redis_client.scan_iter(f"{prefix}*"):
        redis_client.delete(key)


def _job(**kwargs) -> Job:
    return Job(queue_name="default", payload={"to": "a@example.com"}, **kwargs)


def test_redis_storage_enqueue_dequeue(redis_storage, redis_client):
    job = _job()
    assert redis_storage.enqueue(job) == job.id
    assert redis_client.hget(f"{redis_storage.prefix}job:{job.id}", "status") == "queued"

    dequeued = redis_storage.dequeue("default", timeout_seconds=1, worker_id="w1")
    assert dequeued.id == job.id
    assert dequeued.attempt == 1
    assert dequeued.status == "processing"
    assert dequeued.payload == {"to": "a@example.com"}
    assert redis_storage.dequeue("default", timeout_seconds=0.1, worker_id="w1") is None


def test_redis_storage_deduplicates(redis_storage):
    redis_storage.enqueue(_job(id="plag-9"))
    redis_storage.enqueue(_job(id="plag-9"))
    assert redis_storage.get_state_job_count("queued") == 1


def test_redis_storage_priority(redis_storage):
    low = _job()
    high = _job(priority=3)
    redis_storage.enqueue(low)
    redis_storage.enqueue(high)
    assert redis_storage.dequeue("default", 0, "w").id == high.id
    assert redis_storage.dequeue("default", 0, "w").id == low.id


def test_redis_storage_retry_and_complete(redis_storage):
    job = _job()
    redis_storage.enqueue(job)
    redis_storage.dequeue("default", 0, "w")

    assert redis_storage.set_job_state(job.id, QueuedState(delay=0.2), "processing")
    assert not redis_storage.set_job_state(job.id, CompletedState(), "processing")
    assert redis_storage.dequeue("default", 0, "w") is None

    retried = redis_storage.dequeue("default", 2, "w")
    assert retried.attempt == 2
    assert redis_storage.set_job_state(job.id, CompletedState(result=1), "processing")
    redis_storage.acknowledge(job.id)
    assert redis_storage.get_job_data(job.id).status == "completed"


def test_redis_storage_lease_reclaim(redis_storage):
    redis_storage.visibility_timeout = 0.05
    job = _job(max_attempts=1)
    redis_storage.enqueue(job)
    redis_storage.dequeue("default", 0, "w")

    time.sleep(0.1)
    assert redis_storage.recover_stuck_jobs() == [job.id]
    stored = redis_storage.get_job_data(job.id)
    assert stored.status == "failed"
    assert stored.last_error == "LeaseExpired: visibility timeout expired"


def test_redis_storage_release(redis_storage):
    job = _job()
    redis_storage.enqueue(job)
    redis_storage.dequeue("default", 0, "w")
    assert redis_storage.release(job.id)
    assert redis_storage.get_job_data(job.id).attempt == 0


def test_redis_release_restores_attempt_within_requeue(redis_storage, monkeypatch):
    def no_separate_update(*args, **kwargs):
        raise AssertionError("attempt must be restored by the requeue itself")

    monkeypatch.setattr(redis_storage.redis_client, "hincrby", no_separate_update)
    job = _job()
    redis_storage.enqueue(job)
    assert redis_storage.dequeue("default", 0, "w1").attempt == 1
    assert redis_storage.release(job.id)

    redelivered = redis_storage.dequeue("default", 0, "w2")
    assert redelivered.id == job.id
    assert redelivered.attempt == 1

    # Releasing a job that is no longer processing changes nothing.
    redis_storage.set_job_state(job.id, CompletedState(), "processing")
    assert not redis_storage.release(job.id)
    assert redis_storage.get_job_data(job.id).attempt == 1


def test_redis_storage_retention(redis_storage):
    redis_storage.set_retention("default", keep_completed=1)
    jobs = [_job(), _job()]
    for job in jobs:
        redis_storage.enqueue(job)
    for job in jobs:
        redis_storage.dequeue("default", 0, "w")
        redis_storage.set_job_state(job.id, CompletedState(), "processing")
        redis_storage.acknowledge(job.id)
    assert redis_storage.get_job_data(jobs[0].id) is None
    assert redis_storage.get_job_data(jobs[1].id) is not None
