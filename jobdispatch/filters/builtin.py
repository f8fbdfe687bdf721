# jobdispatch/filters/builtin.py
from jobdispatch.filters.base import JobFilter
from jobdispatch.common.states import QueuedState, FailedState
import logging
from jobdispatch.server.context import ElectStateContext

logger = logging.getLogger(__name__)


class RetryFilter(JobFilter):
    """
    Turns a failure into a delayed retry while the job has attempts left.

    Every processor failure is retried the same way; there is no
    non-retryable classification.
    """

    def on_state_election(self, elect_state_context: ElectStateContext):
        job = elect_state_context.job
        candidate_state = elect_state_context.candidate_state

        if not isinstance(candidate_state, FailedState):
            return

        logger.debug(
            f"RetryFilter: Job {job.id} failed. Attempt: {job.attempt}, Max attempts: {job.max_attempts}"
        )
        if job.attempt < job.max_attempts:
            delay = job.backoff.compute_delay(job.attempt)
            logger.debug(f"RetryFilter: Re-queuing job {job.id} in {delay:.2f}s")
            elect_state_context.candidate_state = QueuedState(
                delay=delay,
                reason=f"Retrying job... Attempt {job.attempt} of {job.max_attempts} failed",
            )
        else:
            logger.debug(
                f"RetryFilter: Job {job.id} retries exhausted. Moving to Failed state."
            )
