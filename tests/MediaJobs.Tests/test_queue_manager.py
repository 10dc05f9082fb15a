"""Tests for the queue manager, workers and the in-memory broker."""
import threading
import time

import pytest

from config import DATABASE_BACKUP, IMAGE_PROCESSING, STORAGE_MIGRATION
from taskqueue.errors import (
    BrokerUnavailableError,
    JobFailedError,
    JobStalledError,
    JobTimeoutError,
    JobValidationError,
    QueueNotReadyError,
    UnknownJobTypeError,
    UnknownQueueError,
)
from taskqueue.manager import QueueManager
from taskqueue.memory import InMemoryBroker
from taskqueue.processors import process_batch_image_upload
from taskqueue.types import JobState


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class FailingPingBroker(InMemoryBroker):
    def ping(self):
        raise ConnectionError("connection refused")


def test_initialize_creates_named_queues_and_is_idempotent(make_manager):
    manager = make_manager()
    manager.initialize()

    assert set(manager.queues) == {IMAGE_PROCESSING, DATABASE_BACKUP, STORAGE_MIGRATION}
    assert manager.queue("imageProcessing").name == IMAGE_PROCESSING


def test_initialize_fails_loudly_when_broker_is_down():
    manager = QueueManager(FailingPingBroker(), worker_config={"backend": "memory"})

    with pytest.raises(BrokerUnavailableError):
        manager.initialize()
    assert not manager.initialized


def test_submit_before_initialize_is_rejected():
    manager = QueueManager(InMemoryBroker(), worker_config={"backend": "memory"})

    with pytest.raises(QueueNotReadyError):
        manager.submit(IMAGE_PROCESSING, "upload", {})


def test_submit_unknown_queue_or_type(make_manager):
    manager = make_manager()

    with pytest.raises(UnknownQueueError):
        manager.submit("no-such-queue", "upload", {})
    with pytest.raises(UnknownJobTypeError):
        manager.submit(IMAGE_PROCESSING, "nope", {})


def test_job_completes_and_status_is_stable(make_manager):
    manager = make_manager()
    manager.register(IMAGE_PROCESSING, "echo", 2, lambda job: {"echo": job.data["value"]})

    handle = manager.submit(IMAGE_PROCESSING, "echo", {"value": 42})
    assert manager.wait_for(handle["queue"], handle["jobId"], timeout=5) == {"echo": 42}

    first = manager.get_status(IMAGE_PROCESSING, handle["jobId"])
    second = manager.get_status(IMAGE_PROCESSING, handle["jobId"])
    assert first == second
    assert first["state"] == "completed"
    assert first["progress"] == 100
    assert first["result"] == {"echo": 42}
    assert first["attemptsMade"] == 1


def test_unknown_job_status_does_not_raise(make_manager):
    manager = make_manager()

    assert manager.get_status(IMAGE_PROCESSING, "job-missing") == {"exists": False, "message": "job not found"}


def always_broken(job):
    raise RuntimeError("always broken")


def test_always_failing_job_runs_every_attempt(make_manager):
    manager = make_manager()
    active = []
    failed = []
    manager.register(IMAGE_PROCESSING, "boom", 1, always_broken)
    queue = manager.queue(IMAGE_PROCESSING)
    queue.on("active", lambda job: active.append(job.attempts_made))
    queue.on("failed", lambda job, exc: failed.append(job.state.value))

    handle = manager.submit(IMAGE_PROCESSING, "boom", {}, {"attempts": 3, "backoff": ("fixed", 5)})
    with pytest.raises(JobFailedError) as err:
        manager.wait_for(IMAGE_PROCESSING, handle["jobId"], timeout=5)

    assert err.value.attempts_made == 3
    assert str(err.value) == "always broken"
    assert active == [0, 1, 2]
    assert _wait_until(lambda: len(failed) == 3)
    assert failed == ["waiting", "waiting", "failed"]
    status = manager.get_status(IMAGE_PROCESSING, handle["jobId"])
    assert status["state"] == "failed"
    assert status["attemptsMade"] == 3
    assert status["failedReason"] == "always broken"


def test_flaky_job_succeeds_on_retry(make_manager):
    manager = make_manager()
    calls = []

    def flaky(job):
        calls.append(job.attempts_made)
        if len(calls) < 2:
            raise ConnectionError("storage hiccup")
        return "ok"

    manager.register(IMAGE_PROCESSING, "flaky", 1, flaky)
    handle = manager.submit(IMAGE_PROCESSING, "flaky", {})

    assert manager.wait_for(IMAGE_PROCESSING, handle["jobId"], timeout=5) == "ok"
    assert calls == [0, 1]
    assert manager.get_status(IMAGE_PROCESSING, handle["jobId"])["attemptsMade"] == 2


def test_validation_error_is_not_retried(make_manager):
    manager = make_manager()
    calls = []

    def reject(job):
        calls.append(1)
        raise JobValidationError("payload is malformed")

    manager.register(IMAGE_PROCESSING, "strict", 1, reject)
    handle = manager.submit(IMAGE_PROCESSING, "strict", {}, {"attempts": 3})

    with pytest.raises(JobFailedError):
        manager.wait_for(IMAGE_PROCESSING, handle["jobId"], timeout=5)
    assert len(calls) == 1
    assert manager.get_status(IMAGE_PROCESSING, handle["jobId"])["attemptsMade"] == 1


def test_progress_is_monotonic(make_manager):
    manager = make_manager()
    seen = []
    release = threading.Event()

    def progress_job(job):
        for value in (10, 5, 40, 40, 30, 90):
            job.progress(value)
        release.wait(2)
        return "done"

    manager.register(IMAGE_PROCESSING, "steps", 1, progress_job)
    manager.queue(IMAGE_PROCESSING).on("progress", lambda job, value: seen.append(value))
    handle = manager.submit(IMAGE_PROCESSING, "steps", {})

    assert _wait_until(lambda: manager.get_status(IMAGE_PROCESSING, handle["jobId"])["progress"] == 90)
    release.set()
    manager.wait_for(IMAGE_PROCESSING, handle["jobId"], timeout=5)

    assert seen == sorted(seen)
    assert seen[-1] == 90


def test_progress_is_clamped(make_manager):
    manager = make_manager()

    def overshoot(job):
        return job.progress(250)

    manager.register(IMAGE_PROCESSING, "overshoot", 1, overshoot)
    handle = manager.submit(IMAGE_PROCESSING, "overshoot", {})

    assert manager.wait_for(IMAGE_PROCESSING, handle["jobId"], timeout=5) == 100


def test_timeout_fails_the_attempt(make_manager):
    manager = make_manager()
    manager.register(DATABASE_BACKUP, "slow", 1, lambda job: time.sleep(1.0))

    handle = manager.submit(DATABASE_BACKUP, "slow", {}, {"timeout_ms": 50, "attempts": 1})

    with pytest.raises(JobFailedError) as err:
        manager.wait_for(DATABASE_BACKUP, handle["jobId"], timeout=5)
    assert "timed out" in str(err.value)


def test_wait_for_times_out_on_unfinished_job(make_manager):
    manager = make_manager()
    release = threading.Event()
    manager.register(IMAGE_PROCESSING, "blocked", 1, lambda job: release.wait(5))

    handle = manager.submit(IMAGE_PROCESSING, "blocked", {})
    with pytest.raises(JobTimeoutError):
        manager.wait_for(IMAGE_PROCESSING, handle["jobId"], timeout=0.05)
    release.set()


def test_priority_orders_waiting_jobs():
    broker = InMemoryBroker()
    manager = QueueManager(broker, worker_config={"backend": "memory"}, start_workers=False)
    manager.initialize()
    manager.register(IMAGE_PROCESSING, "upload", 1, lambda job: None)

    low = manager.submit(IMAGE_PROCESSING, "upload", {}, {"priority": 2})
    high = manager.submit(IMAGE_PROCESSING, "upload", {}, {"priority": 1})

    assert broker.claim(IMAGE_PROCESSING, ["upload"]).id == high["jobId"]
    assert broker.claim(IMAGE_PROCESSING, ["upload"]).id == low["jobId"]
    manager.shutdown()


def test_delayed_jobs_are_counted_separately():
    manager = QueueManager(InMemoryBroker(), worker_config={"backend": "memory"}, start_workers=False)
    manager.initialize()
    manager.register(IMAGE_PROCESSING, "upload", 1, lambda job: None)

    manager.submit(IMAGE_PROCESSING, "upload", {})
    delayed = manager.submit(IMAGE_PROCESSING, "upload", {}, {"delay_ms": 60_000})

    stats = manager.get_queue_stats(IMAGE_PROCESSING)
    assert stats == {"waiting": 1, "active": 0, "completed": 0, "failed": 0, "delayed": 1, "total": 2}
    assert manager.get_status(IMAGE_PROCESSING, delayed["jobId"])["state"] == "waiting"
    manager.shutdown()


def test_stalled_job_is_requeued_and_stale_reports_are_dropped():
    broker = InMemoryBroker()
    manager = QueueManager(broker, worker_config={"backend": "memory"}, start_workers=False)
    manager.initialize()
    manager.register(IMAGE_PROCESSING, "upload", 1, lambda job: None)
    stalled = []
    manager.queue(IMAGE_PROCESSING).on("stalled", lambda job: stalled.append(job.id))

    handle = manager.submit(IMAGE_PROCESSING, "upload", {})
    first = broker.claim(IMAGE_PROCESSING, ["upload"])
    time.sleep(0.01)
    requeued = manager.queue(IMAGE_PROCESSING).requeue_stalled(visibility_window=0)

    assert [j.id for j in requeued] == [handle["jobId"]]
    assert stalled == [handle["jobId"]]
    second = broker.claim(IMAGE_PROCESSING, ["upload"])
    assert second.attempts_made == first.attempts_made
    assert second.lock_token != first.lock_token

    dropped = manager.queue(IMAGE_PROCESSING).report(
        lambda: broker.complete(IMAGE_PROCESSING, first.id, first.lock_token, "late")
    )
    assert dropped is None
    broker.complete(IMAGE_PROCESSING, second.id, second.lock_token, "fresh")
    assert manager.get_status(IMAGE_PROCESSING, handle["jobId"])["result"] == "fresh"
    manager.shutdown()


def test_retention_trims_oldest_completed_jobs(make_manager):
    manager = make_manager()
    manager.register(IMAGE_PROCESSING, "tiny", 1, lambda job: job.data["n"])

    handles = [manager.submit(IMAGE_PROCESSING, "tiny", {"n": n}, {"remove_on_complete": 2}) for n in range(4)]
    assert _wait_until(lambda: manager.get_queue_stats(IMAGE_PROCESSING)["waiting"] == 0)
    assert _wait_until(lambda: manager.get_queue_stats(IMAGE_PROCESSING)["active"] == 0)

    assert manager.get_queue_stats(IMAGE_PROCESSING)["completed"] == 2
    assert manager.get_status(IMAGE_PROCESSING, handles[0]["jobId"])["exists"] is False
    assert manager.get_status(IMAGE_PROCESSING, handles[-1]["jobId"])["state"] == "completed"


def test_clean_queue_removes_terminal_jobs(make_manager):
    manager = make_manager()
    manager.register(IMAGE_PROCESSING, "tiny", 1, lambda job: None)
    handle = manager.submit(IMAGE_PROCESSING, "tiny", {})
    manager.wait_for(IMAGE_PROCESSING, handle["jobId"], timeout=5)

    outcome = manager.clean_queue(IMAGE_PROCESSING, grace_ms=0, state="completed")

    assert outcome["removed"] == 1
    assert manager.get_status(IMAGE_PROCESSING, handle["jobId"])["exists"] is False
    with pytest.raises(ValueError):
        manager.clean_queue(IMAGE_PROCESSING, state="active")


def test_shutdown_waits_for_in_flight_jobs():
    manager = QueueManager(InMemoryBroker(), worker_config={"backend": "memory", "poll_seconds": 0.01})
    manager.initialize()
    finished = threading.Event()

    def slow(job):
        time.sleep(0.1)
        finished.set()

    manager.register(STORAGE_MIGRATION, "slow", 1, slow)
    manager.submit(STORAGE_MIGRATION, "slow", {})
    assert _wait_until(lambda: any(w.busy for w in manager.workers))

    manager.shutdown(grace=2.0)

    assert finished.is_set()
    assert not manager.initialized
    with pytest.raises(QueueNotReadyError):
        manager.submit(STORAGE_MIGRATION, "slow", {})


def _register_batch(manager, upload):
    manager.register(IMAGE_PROCESSING, "upload", 2, upload)
    manager.register(
        IMAGE_PROCESSING, "batch-upload", 1, lambda job: process_batch_image_upload(job, manager), parent=True
    )


def test_shutdown_hands_an_unsettled_batch_back(make_manager):
    manager = make_manager()
    gate = threading.Event()
    started = []

    def stuck_upload(job):
        started.append(job.id)
        gate.wait(5)
        return {"success": True}

    _register_batch(manager, stuck_upload)
    files = [{"originalname": f"f{i}.png"} for i in range(8)]
    handle = manager.add_batch_image_upload_job(files, {})
    assert _wait_until(lambda: len(started) == 2)

    try:
        manager.shutdown(grace=0.3)
    finally:
        gate.set()

    parent = manager.broker.get(IMAGE_PROCESSING, handle["jobId"])
    assert parent.state == JobState.WAITING
    assert parent.attempts_made == 0
    assert parent.result is None
    assert parent.lock_token is None


def test_shutdown_lets_a_batch_finish_while_children_run(make_manager):
    manager = make_manager()

    def quick_upload(job):
        time.sleep(0.05)
        return {"success": True, "filename": job.data["fileData"]["originalname"]}

    _register_batch(manager, quick_upload)
    files = [{"originalname": f"f{i}.png"} for i in range(4)]
    handle = manager.add_batch_image_upload_job(files, {})
    assert _wait_until(lambda: manager.get_status(IMAGE_PROCESSING, handle["jobId"])["state"] == "active")

    manager.shutdown(grace=5.0)

    parent = manager.broker.get(IMAGE_PROCESSING, handle["jobId"])
    assert parent.state == JobState.COMPLETED
    assert parent.result["successCount"] == 4
    assert parent.result["errors"] == []


def test_submit_during_shutdown_is_refused(make_manager):
    manager = make_manager()
    gate = threading.Event()
    refused = []

    def parent(job):
        gate.wait(5)
        try:
            manager.submit(IMAGE_PROCESSING, "upload", {})
        except QueueNotReadyError as exc:
            refused.append(exc)
            raise

    manager.register(IMAGE_PROCESSING, "upload", 1, lambda job: None)
    manager.register(IMAGE_PROCESSING, "fan-out", 1, parent, parent=True)
    handle = manager.submit(IMAGE_PROCESSING, "fan-out", {})
    assert _wait_until(lambda: manager.get_status(IMAGE_PROCESSING, handle["jobId"])["state"] == "active")

    threading.Timer(0.3, gate.set).start()
    manager.shutdown(grace=0.1)

    assert len(refused) == 1
    assert manager.broker.get(IMAGE_PROCESSING, handle["jobId"]).state == JobState.WAITING


def test_job_stalling_past_the_limit_fails():
    broker = InMemoryBroker()
    manager = QueueManager(broker, worker_config={"backend": "memory"}, start_workers=False)
    manager.initialize()
    manager.register(IMAGE_PROCESSING, "upload", 1, lambda job: None)
    failures = []
    manager.queue(IMAGE_PROCESSING).on("failed", lambda job, exc: failures.append(exc))
    queue = manager.queue(IMAGE_PROCESSING)

    handle = manager.submit(IMAGE_PROCESSING, "upload", {})
    broker.claim(IMAGE_PROCESSING, ["upload"])
    time.sleep(0.01)
    assert queue.requeue_stalled(visibility_window=0, max_stalled=1)[0].state == JobState.WAITING
    broker.claim(IMAGE_PROCESSING, ["upload"])
    time.sleep(0.01)
    again = queue.requeue_stalled(visibility_window=0, max_stalled=1)

    assert again[0].state == JobState.FAILED
    assert again[0].stalled_count == 2
    status = manager.get_status(IMAGE_PROCESSING, handle["jobId"])
    assert status["state"] == "failed"
    assert status["failedReason"] == "job stalled more than 1 time(s)"
    assert status["attemptsMade"] == 1
    assert len(failures) == 1 and isinstance(failures[0], JobStalledError)
    manager.shutdown()
