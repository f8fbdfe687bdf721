# jobdispatch/serialization/json_serializer.py
import json
from datetime import datetime
from typing import Any, Dict

from jobdispatch.common.backoff import BackoffPolicy
from jobdispatch.common.job import Job
from jobdispatch.serialization.base import BaseSerializer


class JsonSerializer(BaseSerializer):
    def job_to_dict(self, job: Job) -> Dict[str, Any]:
        """A JSON-safe dict of every job field."""
        return {
            "id": job.id,
            "queue_name": job.queue_name,
            "payload": job.payload,
            "max_attempts": job.max_attempts,
            "backoff": job.backoff.to_dict(),
            "priority": job.priority,
            "status": job.status,
            "attempt": job.attempt,
            "last_error": job.last_error,
            "state_data": job.state_data,
            "created_at": job.created_at.isoformat(),
            "updated_at": job.updated_at.isoformat(),
        }

    def job_from_dict(self, data: Dict[str, Any]) -> Job:
        data = dict(data)
        for key in ("created_at", "updated_at"):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        data["backoff"] = BackoffPolicy.from_value(data.get("backoff")) or BackoffPolicy()
        return Job(**data)

    def serialize_job(self, job: Job) -> str:
        return json.dumps(self.job_to_dict(job), default=str)

    def deserialize_job(self, data: str) -> Job:
        return self.job_from_dict(json.loads(data))

    def serialize_payload(self, payload: Dict[str, Any]) -> str:
        return json.dumps(payload, default=str)

    def deserialize_payload(self, payload_str: str) -> Dict[str, Any]:
        return json.loads(payload_str) if payload_str else {}

    def serialize_state_data(self, data: Dict[str, Any]) -> str:
        # Processor results may not be JSON-native; fall back to str().
        return json.dumps(data or {}, default=str)

    def deserialize_state_data(self, data_str: str) -> Dict[str, Any]:
        if not data_str:
            return {}
        try:
            return json.loads(data_str)
        except (TypeError, json.JSONDecodeError):
            return {}
