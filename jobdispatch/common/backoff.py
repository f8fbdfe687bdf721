# jobdispatch/common/backoff.py
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional, Union

FIXED = "fixed"
EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Delay strategy applied between retry attempts.

    ``fixed`` waits ``base_delay`` seconds before every retry.
    ``exponential`` waits ``base_delay * factor ** (attempt - 1)`` seconds,
    capped at ``max_delay`` when one is set.
    """

    strategy: str = EXPONENTIAL
    base_delay: float = 5.0
    factor: float = 2.0
    max_delay: Optional[float] = None

    def __post_init__(self):
        if self.strategy not in (FIXED, EXPONENTIAL):
            raise ValueError(f"Unknown backoff strategy: {self.strategy}")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")

    def compute_delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        if self.strategy == FIXED:
            delay = self.base_delay
        else:
            delay = self.base_delay * self.factor ** max(attempt - 1, 0)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_value(
        cls, value: Union["BackoffPolicy", Mapping[str, Any], None]
    ) -> Optional["BackoffPolicy"]:
        if value is None or isinstance(value, BackoffPolicy):
            return value
        # Accept the camelCase keys producers send over the wire.
        aliases = {"baseDelay": "base_delay", "maxDelay": "max_delay", "type": "strategy"}
        data = {aliases.get(k, k): v for k, v in value.items()}
        return cls(**data)
