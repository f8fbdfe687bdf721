# jobdispatch/filters/base.py
from abc import ABC

from jobdispatch.server.context import ElectStateContext


class JobFilter(ABC):
    """Hook run by the job processor before a job's outcome is stored."""

    def on_state_election(self, elect_state_context: ElectStateContext) -> None:
        pass
