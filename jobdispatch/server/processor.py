# jobdispatch/server/processor.py
import traceback
import logging
from typing import List, Optional

from jobdispatch.common.job import Job
from jobdispatch.common.states import (
    BaseState,
    CompletedState,
    FailedState,
    ProcessingState,
    QueuedState,
)
from jobdispatch.events import EventDispatcher, JobCompleted, JobFailed
from jobdispatch.execution.performer import Processor, perform_job
from jobdispatch.filters.base import JobFilter
from jobdispatch.storage.base import JobStorage
from ..filters.builtin import RetryFilter
from .context import ElectStateContext

logger = logging.getLogger(__name__)


class JobProcessor:
    def __init__(
        self,
        job: Job,
        storage: JobStorage,
        processor: Processor,
        events: Optional[EventDispatcher] = None,
        filters: Optional[List[JobFilter]] = None,
    ):
        self.job = job
        self.storage = storage
        self.processor = processor
        self.events = events
        self.filters = filters if filters is not None else [RetryFilter()]

    def process(self) -> BaseState:
        """
        Runs the job once and records its outcome.

        Processor exceptions are converted to states here and never escape.
        Storage exceptions do escape, to be handled by the worker loop.
        """
        failed_state = None
        try:
            # 1. Perform the job
            result = perform_job(self.processor, self.job)
        except Exception as e:
            # 2. Handle failure
            logger.warning(
                f"Job {self.job.id} attempt {self.job.attempt}/{self.job.max_attempts} failed: {e}"
            )
            failed_state = FailedState(
                exception_type=type(e).__name__,
                exception_message=str(e),
                exception_details=traceback.format_exc(),
            )
            elect_state_context = ElectStateContext(
                job=self.job, candidate_state=failed_state, error=e
            )
            for f in self.filters:
                f.on_state_election(elect_state_context)
            final_state = elect_state_context.candidate_state
        else:
            final_state = CompletedState(result=result, reason="Job performed successfully")

        if isinstance(final_state, QueuedState) and failed_state is not None:
            self.storage.update_job_field(self.job.id, "last_error", failed_state.error)

        # The set_job_state method moves a retried job from processing back to its queue.
        applied = self.storage.set_job_state(
            self.job.id, final_state, expected_old_state=ProcessingState.NAME
        )
        if not applied:
            logger.warning(
                f"Job {self.job.id} is no longer processing (lease expired?); "
                f"dropping its {final_state.name} outcome"
            )
            return final_state

        if isinstance(final_state, QueuedState):
            logger.info(
                f"Job {self.job.id} will be retried in {final_state.delay:.2f}s"
            )
            return final_state

        # 3. Acknowledge completion. Only terminal states are acknowledged.
        self.storage.acknowledge(self.job.id)
        if isinstance(final_state, FailedState):
            logger.error(
                f"Job {self.job.id} failed permanently after {self.job.attempt} attempt(s).\n"
                f"{final_state.exception_details}"
            )
        if self.events is not None:
            if isinstance(final_state, CompletedState):
                self.events.publish(
                    JobCompleted(self.job.id, self.job.queue_name, final_state.result)
                )
            else:
                self.events.publish(
                    JobFailed(
                        self.job.id,
                        self.job.queue_name,
                        self.job.attempt,
                        final_state.exception_message,
                    )
                )
        return final_state
