# jobdispatch/common/states.py

from datetime import datetime, UTC
from typing import Any, Dict, Optional


class BaseState:
    NAME = "base"

    def __init__(self, reason: Optional[str] = None, created_at: datetime = None):
        self.reason = reason
        self.created_at = created_at or datetime.now(UTC)

    @property
    def name(self) -> str:
        return self.NAME

    def serialize_data(self) -> Dict[str, Any]:
        data = {"created_at": self.created_at.isoformat()}
        if self.reason:
            data["reason"] = self.reason
        return data


class QueuedState(BaseState):
    """Waiting for a worker. ``delay`` holds a retry back in the delayed set."""

    NAME = "queued"

    def __init__(self, delay: float = 0.0, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.delay = delay

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        if self.delay:
            data["delay"] = self.delay
        return data


class ProcessingState(BaseState):
    NAME = "processing"

    def __init__(self, worker_id: str, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.worker_id = worker_id

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data["worker_id"] = self.worker_id
        return data


class CompletedState(BaseState):
    NAME = "completed"

    def __init__(self, result: Any = None, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.result = result

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data["result"] = self.result
        return data


class FailedState(BaseState):
    NAME = "failed"

    def __init__(
        self,
        exception_type: str,
        exception_message: str,
        exception_details: str = "",
        *args,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.exception_type = exception_type
        self.exception_message = exception_message
        self.exception_details = exception_details

    @property
    def error(self) -> str:
        return f"{self.exception_type}: {self.exception_message}"

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data.update(
            {
                "exception_type": self.exception_type,
                "exception_message": self.exception_message,
                "exception_details": self.exception_details,
            }
        )
        return data


TERMINAL_STATES = (CompletedState.NAME, FailedState.NAME)

ALL_STATES = [
    QueuedState.NAME,
    ProcessingState.NAME,
    CompletedState.NAME,
    FailedState.NAME,
]
