from jobdispatch.common.job import Job
from jobdispatch.events import JobFailed
from jobdispatch.processors.plagiarism import (
    PlagiarismCheckProcessor,
    PlagiarismFailureSink,
    run_check_sync,
    submission_id_from_job_id,
)

PAYLOAD = {
    "submissionId": "s1",
    "storageKey": "uploads/s1.pdf",
    "fileType": "application/pdf",
    "projectId": "p1",
    "chapter": 3,
}


def _check(payload):
    return {"originalityScore": 92, "chapter": payload.chapter}


def _failing_check(payload):
    raise RuntimeError("extraction failed")


def test_processor_passes_parsed_payload():
    job = Job(queue_name="plagiarism-check", payload=PAYLOAD, id="plag-s1")
    assert PlagiarismCheckProcessor(_check)(job) == {"originalityScore": 92, "chapter": 3}


def test_failure_sink_marks_submission():
    marked = []
    sink = PlagiarismFailureSink(lambda submission_id, error: marked.append((submission_id, error)))

    sink.on_failed(JobFailed("plag-s1", "plagiarism-check", 3, "extraction failed"))
    sink.on_failed(JobFailed("plag-s2", "email-dispatch", 3, "ignored"))
    sink.on_failed(JobFailed("random-id", "plagiarism-check", 3, "unmapped"))

    assert marked == [("s1", "extraction failed")]


def test_submission_id_from_job_id():
    assert submission_id_from_job_id("plag-abc") == "abc"
    assert submission_id_from_job_id("abc") is None


def test_sync_fallback_success():
    assert run_check_sync(_check, PAYLOAD)["originalityScore"] == 92


def test_sync_fallback_failure_reports_and_returns_none():
    marked = []
    result = run_check_sync(
        _failing_check, PAYLOAD, lambda submission_id, error: marked.append((submission_id, error))
    )
    assert result is None
    assert marked == [("s1", "extraction failed")]
