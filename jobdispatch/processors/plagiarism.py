# jobdispatch/processors/plagiarism.py
"""
``plagiarism-check`` jobs.

The originality check itself lives in the host application; this module
adapts it to the dispatcher and reports terminal failures back to it.
"""
import logging
from typing import Any, Callable, Dict, Mapping, Optional

from jobdispatch.common.job import Job
from jobdispatch.events import EventSink, JobFailed
from jobdispatch.execution.performer import run_inline
from jobdispatch.queues import QUEUE_NAMES, PlagiarismPayload

logger = logging.getLogger(__name__)

JOB_ID_PREFIX = "plag-"

CheckFunction = Callable[[PlagiarismPayload], Any]
FailureCallback = Callable[[str, str], None]


class PlagiarismCheckProcessor:
    def __init__(self, check: CheckFunction):
        self.check = check

    def __call__(self, job: Job) -> Any:
        payload = PlagiarismPayload.model_validate(job.payload)
        logger.info(
            f"Processing job {job.id} for submission {payload.submission_id}"
        )
        result = self.check(payload)
        logger.info(f"Submission {payload.submission_id} checked: {result!r}")
        return result


def submission_id_from_job_id(job_id: str) -> Optional[str]:
    if job_id.startswith(JOB_ID_PREFIX):
        return job_id[len(JOB_ID_PREFIX):]
    return None


class PlagiarismFailureSink(EventSink):
    """Marks a submission as failed once its check has exhausted its attempts."""

    def __init__(self, on_failed: FailureCallback):
        self._mark_failed = on_failed

    def on_failed(self, event: JobFailed) -> None:
        if event.queue_name != QUEUE_NAMES.PLAGIARISM:
            return
        submission_id = submission_id_from_job_id(event.job_id)
        if submission_id is None:
            logger.warning(f"Cannot map failed job {event.job_id} to a submission")
            return
        self._mark_failed(submission_id, event.error_message)


def run_check_sync(
    check: CheckFunction,
    payload: Mapping[str, Any],
    on_failed: Optional[FailureCallback] = None,
) -> Any:
    """
    Runs a check in the caller's thread, for when no broker is available.

    Returns the check's result, or None when it failed; ``on_failed`` is then
    told about it the same way a failed queued job would be.
    """
    submission_id = payload.get("submissionId") or payload.get("submission_id")
    failure: Dict[str, str] = {}

    def _process(job: Job) -> Any:
        try:
            return PlagiarismCheckProcessor(check)(job)
        except Exception as e:
            failure["error"] = str(e)
            raise

    result = run_inline(
        QUEUE_NAMES.PLAGIARISM, dict(payload), _process, job_id=f"sync-{submission_id}"
    )
    if failure and on_failed is not None:
        on_failed(str(submission_id), failure["error"])
    return result
