import threading
import time

import pytest

from manga_worker.adapters.memory_adapter import InMemoryMetadataStore, InMemoryChapterStatusBridge
from manga_worker.errors import CorruptArchive, StorageUnavailable, ProcessingCancelled
from manga_worker.models import (
    UploadedFile, FileStatus, QueueState, ProcessingResult, MangaMetadata, ContainerFormat,
)
from manga_worker.pool import WorkerPool


def ok_result(file_id):
    return ProcessingResult(file_id=file_id, metadata=MangaMetadata(), pages=[])


class ScriptedOrchestrator:
    """Plays back a list of outcomes per file id; the last one repeats"""

    def __init__(self, script=None, delay=0.0):
        self.script = script or {}
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()
        self._running = 0
        self.max_running = 0

    def execute_attempt(self, file, cancel_event=None):
        with self._lock:
            self.calls.append(file.id)
            self._running += 1
            self.max_running = max(self.max_running, self._running)
            outcomes = self.script.get(file.id, [None])
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        try:
            if self.delay:
                time.sleep(self.delay)
            if isinstance(outcome, BaseException):
                raise outcome
            return ok_result(file.id)
        finally:
            with self._lock:
                self._running -= 1


@pytest.fixture
def store():
    return InMemoryMetadataStore()


@pytest.fixture
def bridge():
    return InMemoryChapterStatusBridge()


@pytest.fixture
def make_pool(config, store, bridge):
    pools = []

    def _make(orchestrator):
        pool = WorkerPool(config, orchestrator, store, bridge)
        pools.append(pool)
        return pool

    yield _make
    for pool in pools:
        pool.stop(grace_sec=0.5)


def add(store, file_id, chapter_id=None):
    store.add_file(UploadedFile(id=file_id, original_filename=f"{file_id}.cbz",
                                container_format=ContainerFormat.CBZ, chapter_id=chapter_id))


def test_success_marks_file_processed(make_pool, store, bridge):
    add(store, "a", chapter_id="ch-1")
    pool = make_pool(ScriptedOrchestrator())
    pool.start()

    assert pool.enqueue("a")
    assert pool.wait_idle(5)

    record = store.get_file("a")
    assert record.status == FileStatus.PROCESSED
    assert record.processing_attempts == 1
    assert "a" in store.results
    assert bridge.events == [("ch-1", "processing"), ("ch-1", "ready")]


def test_transient_failures_are_retried_until_success(make_pool, store):
    add(store, "a")
    orchestrator = ScriptedOrchestrator({"a": [StorageUnavailable("down"), StorageUnavailable("down"), None]})
    pool = make_pool(orchestrator)
    pool.start()

    pool.enqueue("a")
    assert pool.wait_idle(5)

    record = store.get_file("a")
    assert record.status == FileStatus.PROCESSED
    assert record.processing_attempts == 3
    assert pool.get_stats()['retries'] == 2


def test_retries_stop_at_max_attempts(make_pool, store, bridge):
    add(store, "a", chapter_id="ch-1")
    pool = make_pool(ScriptedOrchestrator({"a": [StorageUnavailable("bucket unreachable")]}))
    pool.start()

    pool.enqueue("a")
    assert pool.wait_idle(5)

    record = store.get_file("a")
    assert record.status == FileStatus.ERROR
    assert record.processing_attempts == 3
    assert record.error_message == "bucket unreachable"
    assert bridge.events == [("ch-1", "processing")] * 3 + [("ch-1", "error")]


def test_non_retryable_error_fails_immediately(make_pool, store):
    add(store, "a")
    orchestrator = ScriptedOrchestrator({"a": [CorruptArchive("bad central directory")]})
    pool = make_pool(orchestrator)
    pool.start()

    pool.enqueue("a")
    assert pool.wait_idle(5)

    record = store.get_file("a")
    assert record.status == FileStatus.ERROR
    assert record.processing_attempts == 1
    assert orchestrator.calls == ["a"]


def test_unknown_exceptions_are_treated_as_transient(make_pool, store):
    add(store, "a")
    orchestrator = ScriptedOrchestrator({"a": [RuntimeError("boom"), None]})
    pool = make_pool(orchestrator)
    pool.start()

    pool.enqueue("a")
    assert pool.wait_idle(5)

    assert store.get_file("a").status == FileStatus.PROCESSED
    assert orchestrator.calls == ["a", "a"]


def test_duplicate_enqueue_is_ignored(make_pool, store):
    add(store, "a")
    pool = make_pool(ScriptedOrchestrator())

    assert pool.enqueue("a")
    assert not pool.enqueue("a")
    assert pool.get_status("a").queue_state == QueueState.QUEUED
    assert pool.get_stats()['queue_depth'] == 1


def test_concurrency_is_bounded(make_pool, store, config):
    for i in range(6):
        add(store, f"f{i}")
    orchestrator = ScriptedOrchestrator(delay=0.05)
    pool = make_pool(orchestrator)
    pool.start()

    for i in range(6):
        pool.enqueue(f"f{i}")
    assert pool.wait_idle(10)

    assert orchestrator.max_running <= config.MAX_CONCURRENT_WORKERS
    assert pool.get_stats()['max_in_flight'] <= config.MAX_CONCURRENT_WORKERS
    assert sorted(orchestrator.calls) == [f"f{i}" for i in range(6)]


def test_start_seeds_pending_files(make_pool, store):
    add(store, "old")
    add(store, "new")
    add(store, "done")
    store.mark_processing("done")
    store.mark_processed("done", ok_result("done"))
    orchestrator = ScriptedOrchestrator()
    pool = make_pool(orchestrator)

    pool.start()
    assert pool.wait_idle(5)

    assert sorted(orchestrator.calls) == ["new", "old"]


def test_missing_file_fails_without_attempt(make_pool, store):
    orchestrator = ScriptedOrchestrator()
    pool = make_pool(orchestrator)
    pool.start()

    pool.enqueue("ghost")
    assert pool.wait_idle(5)

    snapshot = pool.get_status("ghost")
    assert snapshot.queue_state == QueueState.FAILED
    assert snapshot.error_message == "File not found"
    assert orchestrator.calls == []


def test_terminal_file_can_start_a_new_round(make_pool, store):
    add(store, "a")
    orchestrator = ScriptedOrchestrator({"a": [CorruptArchive("truncated"), None]})
    pool = make_pool(orchestrator)
    pool.start()

    pool.enqueue("a")
    assert pool.wait_idle(5)
    assert store.get_file("a").status == FileStatus.ERROR

    assert pool.enqueue("a")
    assert pool.wait_idle(5)

    record = store.get_file("a")
    assert record.status == FileStatus.PROCESSED
    assert record.processing_attempts == 2


def test_get_status(make_pool, store):
    add(store, "a")
    pool = make_pool(ScriptedOrchestrator())
    pool.start()

    assert pool.get_status("unknown") is None
    pool.enqueue("a")
    assert pool.wait_idle(5)

    snapshot = pool.get_status("a")
    assert snapshot.status == FileStatus.PROCESSED
    assert snapshot.attempts == 1
    assert snapshot.queue_state == QueueState.SUCCEEDED


class BlockingOrchestrator:
    """Runs until cancelled, like an attempt stuck on a large archive"""

    def __init__(self):
        self.started = threading.Event()

    def execute_attempt(self, file, cancel_event=None):
        self.started.set()
        cancel_event.wait(5)
        raise ProcessingCancelled("Processing cancelled at entry 001.jpg")


def test_shutdown_cancels_in_flight_and_releases_file(config, store):
    add(store, "a")
    orchestrator = BlockingOrchestrator()
    pool = WorkerPool(config, orchestrator, store)
    pool.start()
    pool.enqueue("a")
    assert orchestrator.started.wait(5)

    pool.stop(grace_sec=0.1)

    record = store.get_file("a")
    assert record.status == FileStatus.UPLOADED
    assert record.processing_attempts == 1
    assert pool.get_stats()['cancelled'] == 1
    assert not pool.get_stats()['running']


def test_draining_pool_refuses_new_work(config, store):
    add(store, "a")
    pool = WorkerPool(config, ScriptedOrchestrator(), store)
    pool.start()
    pool.stop()

    assert not pool.enqueue("a")


def test_queued_items_are_dropped_on_shutdown(config, store):
    add(store, "a")
    add(store, "b")
    orchestrator = BlockingOrchestrator()
    config.MAX_CONCURRENT_WORKERS = 1
    pool = WorkerPool(config, orchestrator, store)
    pool.start()
    assert orchestrator.started.wait(5)

    pool.stop(grace_sec=0.1)

    statuses = {store.get_file("a").status, store.get_file("b").status}
    assert statuses == {FileStatus.UPLOADED}
    assert pool.get_status("a").queue_state is None
    assert pool.get_status("b").queue_state is None


class FlakyStore(InMemoryMetadataStore):
    """Fails the named calls a set number of times before behaving"""

    def __init__(self):
        super().__init__()
        self.failures = {}

    def _maybe_fail(self, name):
        if self.failures.get(name, 0) > 0:
            self.failures[name] -= 1
            raise StorageUnavailable(f"{name} blip")

    def get_file(self, file_id):
        self._maybe_fail("get_file")
        return super().get_file(file_id)

    def mark_pending(self, file_id):
        self._maybe_fail("mark_pending")
        super().mark_pending(file_id)


def test_store_read_failure_is_retried(config):
    store = FlakyStore()
    orchestrator = ScriptedOrchestrator()
    pool = WorkerPool(config, orchestrator, store)
    pool.start()
    add(store, "a")

    store.failures["get_file"] = 1
    pool.enqueue("a")
    try:
        assert pool.wait_idle(5)
    finally:
        pool.stop(grace_sec=0.5)

    record = store.get_file("a")
    assert record.status == FileStatus.PROCESSED
    assert record.processing_attempts == 1
    assert orchestrator.calls == ["a"]
    assert pool.get_stats()['retries'] == 1


def test_store_read_failures_end_in_persisted_error(config):
    store = FlakyStore()
    orchestrator = ScriptedOrchestrator()
    pool = WorkerPool(config, orchestrator, store)
    pool.start()
    add(store, "a")

    store.failures["get_file"] = config.MAX_ATTEMPTS
    pool.enqueue("a")
    try:
        assert pool.wait_idle(5)
    finally:
        pool.stop(grace_sec=0.5)

    record = store.get_file("a")
    assert record.status == FileStatus.ERROR
    assert record.error_message == "get_file blip"
    assert orchestrator.calls == []


def test_retry_goes_ahead_when_release_to_uploaded_fails(config):
    store = FlakyStore()
    orchestrator = ScriptedOrchestrator({"a": [StorageUnavailable("down"), None]})
    pool = WorkerPool(config, orchestrator, store)
    pool.start()
    add(store, "a")
    store.failures["mark_pending"] = 1

    pool.enqueue("a")
    try:
        assert pool.wait_idle(5)
    finally:
        pool.stop(grace_sec=0.5)

    record = store.get_file("a")
    assert record.status == FileStatus.PROCESSED
    assert record.processing_attempts == 2
    assert orchestrator.calls == ["a", "a"]


def test_seeded_file_keeps_attempts_made_before_restart(make_pool, store, config):
    store.add_file(UploadedFile(id="a", original_filename="a.cbz", container_format=ContainerFormat.CBZ,
                                processing_attempts=2))
    orchestrator = ScriptedOrchestrator({"a": [StorageUnavailable("down")]})
    pool = make_pool(orchestrator)

    pool.start()
    assert pool.wait_idle(5)

    record = store.get_file("a")
    assert record.status == FileStatus.ERROR
    assert record.processing_attempts == config.MAX_ATTEMPTS
    assert orchestrator.calls == ["a"]


def test_seeded_file_past_the_limit_gets_one_attempt(make_pool, store, config):
    store.add_file(UploadedFile(id="a", original_filename="a.cbz", container_format=ContainerFormat.CBZ,
                                processing_attempts=7))
    orchestrator = ScriptedOrchestrator({"a": [StorageUnavailable("down")]})
    pool = make_pool(orchestrator)

    pool.start()
    assert pool.wait_idle(5)

    assert store.get_file("a").processing_attempts == 8
    assert orchestrator.calls == ["a"]
