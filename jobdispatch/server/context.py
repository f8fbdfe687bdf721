# jobdispatch/server/context.py
from dataclasses import dataclass
from typing import Optional

from jobdispatch.common.job import Job
from jobdispatch.common.states import BaseState


@dataclass
class ElectStateContext:
    """The outcome a job is about to be given. Filters may swap ``candidate_state``."""

    job: Job
    candidate_state: BaseState
    error: Optional[BaseException] = None
