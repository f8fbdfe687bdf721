# jobdispatch/serialization/base.py
from abc import ABC, abstractmethod
from typing import Any, Dict

from jobdispatch.common.job import Job


class BaseSerializer(ABC):
    @abstractmethod
    def serialize_job(self, job: Job) -> str: ...

    @abstractmethod
    def deserialize_job(self, data: str) -> Job: ...

    @abstractmethod
    def serialize_payload(self, payload: Dict[str, Any]) -> str: ...

    @abstractmethod
    def deserialize_payload(self, payload_str: str) -> Dict[str, Any]: ...

    @abstractmethod
    def serialize_state_data(self, data: Dict[str, Any]) -> str: ...

    @abstractmethod
    def deserialize_state_data(self, data_str: str) -> Dict[str, Any]: ...
