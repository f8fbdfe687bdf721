import pytest

from jobdispatch.common.exceptions import JobLoadError
from jobdispatch.common.job import Job
from jobdispatch.execution.performer import load_processor, perform_job, run_inline
from tests.test_tasks import async_success_processor, failure_processor, success_processor


def _job(**payload):
    return Job(queue_name="default", payload=payload)


def test_perform_job_runs_sync_processor():
    assert perform_job(success_processor, _job(x=1, y=2)) == 3


def test_perform_job_runs_async_processor():
    assert perform_job(async_success_processor, _job(x=3, y=4)) == 12


def test_perform_job_propagates_errors():
    with pytest.raises(ValueError):
        perform_job(failure_processor, _job())


@pytest.mark.parametrize(
    "path", ["tests.test_tasks:success_processor", "tests.test_tasks.success_processor"]
)
def test_load_processor(path):
    assert load_processor(path) is success_processor


@pytest.mark.parametrize(
    "path", ["tests.test_tasks:missing", "no_such_module:processor", "nodots"]
)
def test_load_processor_errors(path):
    with pytest.raises(JobLoadError):
        load_processor(path)


def test_run_inline_returns_result_or_none():
    assert run_inline("default", {"x": 1, "y": 1}, success_processor) == 2
    assert run_inline("default", {}, failure_processor) is None
