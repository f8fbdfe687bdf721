import time

import pytest

from jobdispatch.broker import BrokerConnectionManager
from jobdispatch.common.exceptions import BrokerUnavailableError, UnknownQueueError
from jobdispatch.config import Settings
from jobdispatch.events import CallbackSink
from jobdispatch.lifecycle import JobDispatcher, create_dispatcher
from jobdispatch.processors.email import SmtpTransport
from jobdispatch.queues import QUEUE_NAMES, enqueue_email, enqueue_plagiarism_check
from jobdispatch.storage.memory_storage import MemoryStorage
from tests.test_tasks import success_processor

MEMORY = Settings(backend="memory")


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TrackingResource:
    def __init__(self):
        self.entered = False
        self.exited = False

    def __enter__(self):
        self.entered = True
        return self

    def __exit__(self, exc_type, exc, tb):
        self.exited = True


def test_dispatcher_runs_registered_pools():
    completed = []
    resource = TrackingResource()
    dispatcher = JobDispatcher(MEMORY, sinks=[CallbackSink(on_completed=completed.append)])
    dispatcher.register("reports", success_processor, concurrency=2, resources=[resource])

    assert dispatcher.start()
    assert dispatcher.start()
    assert dispatcher.status == "running"
    assert resource.entered
    assert len(dispatcher.pool("reports")._threads) == 2

    job_id = dispatcher.queue.enqueue("reports", {"x": 1, "y": 1})
    assert _wait_for(lambda: completed)
    assert completed[0].job_id == job_id

    assert dispatcher.stop(timeout=5)
    assert dispatcher.status == "stopped"
    assert resource.exited
    assert not dispatcher.broker.is_available()


def test_register_twice_is_rejected():
    dispatcher = JobDispatcher(MEMORY)
    dispatcher.register("reports", success_processor)
    with pytest.raises(ValueError):
        dispatcher.register("reports", success_processor)


def test_unavailable_broker_disables_dispatcher(caplog):
    broker = BrokerConnectionManager(MEMORY)
    broker._build_storage = lambda: _closed_storage()
    dispatcher = JobDispatcher(MEMORY, broker=broker)
    dispatcher.register("reports", success_processor)

    assert not dispatcher.start()
    assert not dispatcher.start()
    assert dispatcher.status == "disabled"
    assert dispatcher.pool("reports") is None
    assert caplog.text.count("broker not available") == 1
    with pytest.raises(BrokerUnavailableError):
        dispatcher.queue.enqueue("reports", {})
    assert dispatcher.stop()


def _closed_storage():
    storage = MemoryStorage()
    storage.close()
    return storage


def test_context_manager_starts_and_stops():
    with JobDispatcher(MEMORY) as dispatcher:
        assert dispatcher.status == "running"
    assert dispatcher.status == "stopped"


def test_create_dispatcher_wires_email_and_plagiarism(monkeypatch):
    sent = []
    monkeypatch.setattr(SmtpTransport, "send", lambda self, message: sent.append(message) or {})
    failures = []
    completed = []

    dispatcher = create_dispatcher(
        MEMORY,
        sinks=[CallbackSink(on_completed=completed.append)],
        plagiarism_check=lambda payload: {"originalityScore": 100},
        on_plagiarism_failed=lambda submission_id, error: failures.append(submission_id),
    )
    assert dispatcher.start()
    try:
        enqueue_email(
            dispatcher.queue,
            {"to": "a@example.com", "subject": "Welcome", "html": "<p>Hi</p>"},
        )
        enqueue_plagiarism_check(
            dispatcher.queue,
            {
                "submissionId": "s1",
                "storageKey": "k",
                "fileType": "application/pdf",
                "projectId": "p1",
                "chapter": 1,
            },
        )
        assert _wait_for(lambda: len(completed) == 2)
    finally:
        assert dispatcher.stop(timeout=5)

    assert sent[0]["To"] == "a@example.com"
    assert sent[0]["From"] == MEMORY.email_from
    assert {event.queue_name for event in completed} == {
        QUEUE_NAMES.EMAIL,
        QUEUE_NAMES.PLAGIARISM,
    }
    assert failures == []
    assert len(dispatcher.pool(QUEUE_NAMES.EMAIL)._threads) == 5


def test_exhausted_plagiarism_check_marks_submission_failed(monkeypatch):
    monkeypatch.setattr(SmtpTransport, "send", lambda self, message: {})
    failures = []

    def scanner_down(payload):
        raise RuntimeError("scanner offline")

    dispatcher = create_dispatcher(
        MEMORY,
        plagiarism_check=scanner_down,
        on_plagiarism_failed=lambda submission_id, error: failures.append(
            (submission_id, error)
        ),
    )
    assert dispatcher.start()
    try:
        dispatcher.queue.enqueue(
            QUEUE_NAMES.PLAGIARISM,
            {
                "submissionId": "s1",
                "storageKey": "k",
                "fileType": "application/pdf",
                "projectId": "p1",
                "chapter": 1,
            },
            max_attempts=1,
            job_id="plag-s1",
        )
        assert _wait_for(lambda: failures)
    finally:
        assert dispatcher.stop(timeout=5)

    assert len(failures) == 1
    submission_id, error = failures[0]
    assert submission_id == "s1"
    assert "scanner offline" in error


def test_create_dispatcher_without_plagiarism_check():
    dispatcher = create_dispatcher(MEMORY)
    assert set(dispatcher._registrations) == {QUEUE_NAMES.EMAIL}


def test_pool_lookup_for_unregistered_queue():
    dispatcher = JobDispatcher(MEMORY)
    dispatcher.register("reports", success_processor)
    assert dispatcher.pool("reports") is None
    with pytest.raises(UnknownQueueError):
        dispatcher.pool("emails")
