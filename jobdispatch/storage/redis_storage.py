# jobdispatch/storage/redis_storage.py
import json
import logging
import time
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

import redis

from jobdispatch.common.exceptions import BrokerUnavailableError
from jobdispatch.common.job import Job
from jobdispatch.common.states import (
    BaseState,
    FailedState,
    ProcessingState,
    QueuedState,
    TERMINAL_STATES,
)
from jobdispatch.serialization.json_serializer import JsonSerializer
from jobdispatch.storage.base import (
    DEFAULT_VISIBILITY_TIMEOUT,
    JobStorage,
    UPDATABLE_FIELDS,
)

logger = logging.getLogger(__name__)

# Ready-queue score is -priority * PRIORITY_SPAN + seq, so higher priorities
# sort first and equal priorities stay FIFO.
PRIORITY_SPAN = 2**32

_ENQUEUE_SCRIPT = """
    local job_key = KEYS[1]
    local queue_key = KEYS[2]
    local seq_key = KEYS[3]
    local state_key = KEYS[4]
    local queues_key = KEYS[5]
    local job_id = ARGV[1]
    local priority = tonumber(ARGV[2])
    local span = tonumber(ARGV[3])
    local queue_name = ARGV[4]

    if redis.call('EXISTS', job_key) == 1 then
        return 0
    end
    redis.call('HSET', job_key, unpack(ARGV, 5))
    redis.call('SADD', state_key, job_id)
    redis.call('SADD', queues_key, queue_name)
    local seq = redis.call('INCR', seq_key)
    redis.call('ZADD', queue_key, -priority * span + seq, job_id)
    return 1
"""

_RECLAIM_SCRIPT = """
    local processing_key = KEYS[1]
    local queue_key = KEYS[2]
    local seq_key = KEYS[3]
    local cutoff = tonumber(ARGV[1])
    local prefix = ARGV[2]
    local span = tonumber(ARGV[3])
    local queued_data = ARGV[4]
    local failed_data = ARGV[5]
    local updated_at = ARGV[6]
    local limit = tonumber(ARGV[7])

    local expired = redis.call('ZRANGEBYSCORE', processing_key, '-inf', cutoff, 'LIMIT', 0, limit)
    for _, job_id in ipairs(expired) do
        redis.call('ZREM', processing_key, job_id)
        local job_key = prefix .. 'job:' .. job_id
        if redis.call('EXISTS', job_key) == 1 then
            local attempt = tonumber(redis.call('HGET', job_key, 'attempt') or '0')
            local max_attempts = tonumber(redis.call('HGET', job_key, 'max_attempts') or '1')
            redis.call('SREM', prefix .. 'jobs:processing', job_id)
            if attempt >= max_attempts then
                redis.call('HSET', job_key, 'status', 'failed', 'state_data', failed_data,
                    'last_error', 'LeaseExpired: visibility timeout expired', 'updated_at', updated_at)
                redis.call('SADD', prefix .. 'jobs:failed', job_id)
            else
                redis.call('HSET', job_key, 'status', 'queued', 'state_data', queued_data,
                    'updated_at', updated_at)
                redis.call('SADD', prefix .. 'jobs:queued', job_id)
                local priority = tonumber(redis.call('HGET', job_key, 'priority') or '0')
                local seq = redis.call('INCR', seq_key)
                redis.call('ZADD', queue_key, -priority * span + seq, job_id)
            end
        end
    end
    return expired
"""

_DEQUEUE_SCRIPT = """
    local queue_key = KEYS[1]
    local delayed_key = KEYS[2]
    local processing_key = KEYS[3]
    local seq_key = KEYS[4]
    local now = tonumber(ARGV[1])
    local lease_until = tonumber(ARGV[2])
    local state_data = ARGV[3]
    local updated_at = ARGV[4]
    local prefix = ARGV[5]
    local span = tonumber(ARGV[6])

    -- Promote retries whose backoff delay has elapsed
    local due = redis.call('ZRANGEBYSCORE', delayed_key, '-inf', now)
    for _, job_id in ipairs(due) do
        redis.call('ZREM', delayed_key, job_id)
        local priority = tonumber(redis.call('HGET', prefix .. 'job:' .. job_id, 'priority') or '0')
        local seq = redis.call('INCR', seq_key)
        redis.call('ZADD', queue_key, -priority * span + seq, job_id)
    end

    while true do
        local popped = redis.call('ZPOPMIN', queue_key)
        if #popped == 0 then
            return false
        end
        local job_id = popped[1]
        local job_key = prefix .. 'job:' .. job_id
        if redis.call('HGET', job_key, 'status') == 'queued' then
            redis.call('HINCRBY', job_key, 'attempt', 1)
            redis.call('HSET', job_key, 'status', 'processing', 'state_data', state_data,
                'updated_at', updated_at)
            redis.call('SREM', prefix .. 'jobs:queued', job_id)
            redis.call('SADD', prefix .. 'jobs:processing', job_id)
            redis.call('ZADD', processing_key, lease_until, job_id)
            return job_id
        end
    end
"""

_SET_JOB_STATE_SCRIPT = """
    local job_key = KEYS[1]
    local job_id = ARGV[1]
    local new_state_name = ARGV[2]
    local new_state_data = ARGV[3]
    local expected_old_state = ARGV[4]
    local updated_at = ARGV[5]
    local prefix = ARGV[6]
    local last_error = ARGV[7]
    local ready_at = tonumber(ARGV[8])
    local now = tonumber(ARGV[9])
    local span = tonumber(ARGV[10])
    local release = ARGV[11] == "1"

    local current_state = redis.call('HGET', job_key, 'status')
    if not current_state then
        return 0
    end
    if expected_old_state ~= '' and current_state ~= expected_old_state then
        return 0
    end

    redis.call('HSET', job_key, 'status', new_state_name, 'state_data', new_state_data,
        'updated_at', updated_at)
    if release then
        local attempt = tonumber(redis.call('HGET', job_key, 'attempt') or '0')
        if attempt > 0 then
            redis.call('HINCRBY', job_key, 'attempt', -1)
        end
    end
    if last_error ~= '' then
        redis.call('HSET', job_key, 'last_error', last_error)
    end

    -- Remove from old state set and add to new one
    redis.call('SREM', prefix .. 'jobs:' .. current_state, job_id)
    redis.call('SADD', prefix .. 'jobs:' .. new_state_name, job_id)

    if new_state_name == 'queued' then
        local queue_key = prefix .. 'queue:' .. redis.call('HGET', job_key, 'queue_name')
        redis.call('ZREM', queue_key .. ':processing', job_id)
        if ready_at > now then
            redis.call('ZADD', queue_key .. ':delayed', ready_at, job_id)
        else
            local priority = tonumber(redis.call('HGET', job_key, 'priority') or '0')
            local seq = redis.call('INCR', prefix .. 'seq')
            redis.call('ZADD', queue_key, -priority * span + seq, job_id)
        end
    end
    return 1
"""


class RedisStorage(JobStorage):
    def __init__(
        self,
        connection_pool=None,
        redis_client=None,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
        prefix: str = "jobdispatch:",
        poll_interval: float = 0.1,
    ):
        super().__init__(visibility_timeout)
        if redis_client:
            self.redis_client = redis_client
            if not redis_client.get_connection_kwargs().get("decode_responses", False):
                self.redis_client = redis.Redis(
                    connection_pool=self.redis_client.connection_pool,
                    decode_responses=True,
                )
        elif connection_pool:
            self.redis_client = redis.Redis(
                connection_pool=connection_pool, decode_responses=True
            )
        else:
            self.redis_client = redis.Redis(
                host="localhost", port=6379, db=0, decode_responses=True
            )

        self.prefix = prefix
        self.poll_interval = poll_interval
        self.serializer = JsonSerializer()

        self.enqueue_script = self.redis_client.register_script(_ENQUEUE_SCRIPT)
        self.reclaim_script = self.redis_client.register_script(_RECLAIM_SCRIPT)
        self.dequeue_script = self.redis_client.register_script(_DEQUEUE_SCRIPT)
        self.set_job_state_script = self.redis_client.register_script(
            _SET_JOB_STATE_SCRIPT
        )

    # --- Key helpers ---

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}job:{job_id}"

    def _queue_key(self, queue_name: str) -> str:
        return f"{self.prefix}queue:{queue_name}"

    def _state_key(self, state_name: str) -> str:
        return f"{self.prefix}jobs:{state_name}"

    def _serialize_job_for_storage(self, job: Job) -> Dict[str, str]:
        job_dict = {}
        for key, value in self.serializer.job_to_dict(job).items():
            if isinstance(value, (dict, list)):
                job_dict[key] = json.dumps(value, default=str)
            elif value is None:
                job_dict[key] = ""
            else:
                job_dict[key] = str(value)
        return job_dict

    def _deserialize_job_from_storage(self, job_data: dict) -> Job:
        job_dict: Dict[str, Any] = {}
        for key, value in job_data.items():
            if key in ("payload", "backoff", "state_data"):
                job_dict[key] = self.serializer.deserialize_state_data(value)
            elif key in ("attempt", "max_attempts", "priority"):
                job_dict[key] = int(value)
            elif key == "last_error":
                job_dict[key] = value or None
            else:
                job_dict[key] = value
        return self.serializer.job_from_dict(job_dict)

    # --- Broker operations ---

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.exceptions.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    def close(self) -> None:
        self.redis_client.close()

    def enqueue(self, job: Job) -> str:
        fields = self._serialize_job_for_storage(job)
        args = [job.id, job.priority, PRIORITY_SPAN, job.queue_name]
        for key, value in fields.items():
            args.extend([key, value])
        try:
            self.enqueue_script(
                keys=[
                    self._job_key(job.id),
                    self._queue_key(job.queue_name),
                    f"{self.prefix}seq",
                    self._state_key(QueuedState.NAME),
                    f"{self.prefix}queues",
                ],
                args=args,
            )
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
            raise BrokerUnavailableError(f"Could not enqueue job {job.id}: {e}") from e
        return job.id

    def _reclaim(self, queue_name: str, cutoff: float, limit: int) -> List[str]:
        queue_key = self._queue_key(queue_name)
        return self.reclaim_script(
            keys=[f"{queue_key}:processing", queue_key, f"{self.prefix}seq"],
            args=[
                cutoff,
                self.prefix,
                PRIORITY_SPAN,
                json.dumps(QueuedState(reason="Lease expired").serialize_data()),
                json.dumps(
                    FailedState("LeaseExpired", "visibility timeout expired").serialize_data()
                ),
                datetime.now(UTC).isoformat(),
                limit,
            ],
        )

    def dequeue(
        self, queue_name: str, timeout_seconds: float, worker_id: str
    ) -> Optional[Job]:
        queue_key = self._queue_key(queue_name)
        deadline = time.monotonic() + timeout_seconds
        while True:
            now = time.time()
            self._reclaim(queue_name, now, 100)
            job_id = self.dequeue_script(
                keys=[
                    queue_key,
                    f"{queue_key}:delayed",
                    f"{queue_key}:processing",
                    f"{self.prefix}seq",
                ],
                args=[
                    now,
                    now + self.visibility_timeout,
                    json.dumps(ProcessingState(worker_id).serialize_data()),
                    datetime.now(UTC).isoformat(),
                    self.prefix,
                    PRIORITY_SPAN,
                ],
            )
            if job_id:
                return self.get_job_data(job_id)
            if time.monotonic() >= deadline:
                return None
            time.sleep(self.poll_interval)

    def recover_stuck_jobs(
        self, max_age_seconds: Optional[float] = None, limit: int = 100
    ) -> List[str]:
        now = time.time()
        cutoff = now
        if max_age_seconds is not None:
            cutoff = now - max_age_seconds + self.visibility_timeout
        recovered: List[str] = []
        for queue_name in sorted(self.redis_client.smembers(f"{self.prefix}queues")):
            if len(recovered) >= limit:
                break
            recovered.extend(self._reclaim(queue_name, cutoff, limit - len(recovered)))
        return recovered

    def set_job_state(
        self, job_id: str, state: BaseState, expected_old_state: Optional[str] = None
    ) -> bool:
        return self._set_job_state(job_id, state, expected_old_state)

    def _set_job_state(
        self,
        job_id: str,
        state: BaseState,
        expected_old_state: Optional[str] = None,
        release: bool = False,
    ) -> bool:
        now = time.time()
        ready_at = now + state.delay if isinstance(state, QueuedState) else 0
        last_error = state.error if isinstance(state, FailedState) else ""
        result = self.set_job_state_script(
            keys=[self._job_key(job_id)],
            args=[
                job_id,
                state.name,
                self.serializer.serialize_state_data(state.serialize_data()),
                expected_old_state or "",
                datetime.now(UTC).isoformat(),
                self.prefix,
                last_error,
                ready_at,
                now,
                PRIORITY_SPAN,
                "1" if release else "0",
            ],
        )
        return result == 1

    def release(self, job_id: str) -> bool:
        # The attempt is restored in the same script that requeues the job.
        return self._set_job_state(
            job_id,
            QueuedState(reason="Released by stopping worker"),
            expected_old_state=ProcessingState.NAME,
            release=True,
        )

    def acknowledge(self, job_id: str) -> None:
        job_key = self._job_key(job_id)
        queue_name, status = self.redis_client.hmget(job_key, ["queue_name", "status"])
        if not queue_name:
            return
        queue_key = self._queue_key(queue_name)
        self.redis_client.zrem(f"{queue_key}:processing", job_id)
        if status not in TERMINAL_STATES:
            return

        keep = self._retention_limit(queue_name, status)
        if keep is None:
            return
        history_key = f"{queue_key}:{status}"
        self.redis_client.lpush(history_key, job_id)
        expired = self.redis_client.lrange(history_key, keep, -1)
        with self.redis_client.pipeline() as pipe:
            if keep:
                pipe.ltrim(history_key, 0, keep - 1)
            else:
                pipe.delete(history_key)
            for old_id in expired:
                pipe.delete(self._job_key(old_id))
                pipe.srem(self._state_key(status), old_id)
            pipe.execute()

    def get_job_data(self, job_id: str) -> Optional[Job]:
        job_data = self.redis_client.hgetall(self._job_key(job_id))
        if not job_data:
            return None
        return self._deserialize_job_from_storage(job_data)

    def update_job_field(self, job_id: str, field_name: str, value: Any) -> None:
        if field_name not in UPDATABLE_FIELDS:
            raise ValueError(f"Unsupported field update: {field_name}")
        self.redis_client.hset(
            self._job_key(job_id),
            mapping={
                field_name: "" if value is None else str(value),
                "updated_at": datetime.now(UTC).isoformat(),
            },
        )

    def get_job_ids_by_state(self, state_name: str, start: int, count: int) -> List[str]:
        return self.redis_client.sort(
            self._state_key(state_name), start=start, num=count, alpha=True, desc=True
        )

    def get_state_job_count(self, state_name: str) -> int:
        return self.redis_client.scard(self._state_key(state_name))
