import threading
import time
import pytest
from queuectl.models.errors import ExecutionError, StoreCorruption
from queuectl.models.job import JobState
from queuectl.storage.config import ConfigRepository
from queuectl.storage.lock import FileLock
from queuectl.storage.repository import JobRepository
from queuectl.workers.worker import StopSignal, Worker, WorkerManager, execute_command, request_stop


def wait_for(predicate, timeout=10.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def run_pool(manager, count=1, poll_interval=0.01):
    errors = []

    def _run():
        try:
            manager.start_workers(count, poll_interval)
        except Exception as e:
            errors.append(e)

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()
    return thread, errors


@pytest.fixture
def stop_signal(config):
    return StopSignal(config)


def test_execute_command_exit_codes():
    assert execute_command("exit 0") == 0
    assert execute_command("exit 3") == 3


def test_process_successful_job(repo, stop_signal):
    job = repo.create({"command": "echo test"})
    worker = Worker(1, repo, stop_signal, executor=lambda command: 0)

    assert worker.process_job(repo.claim()) == JobState.COMPLETED
    processed = repo.get_by_id(job.id)
    assert processed.state == JobState.COMPLETED
    assert processed.attempts == 0
    assert worker.current_job is None


def test_process_failed_job(repo, stop_signal):
    job = repo.create({"command": "invalid_command", "max_retries": 1})
    worker = Worker(1, repo, stop_signal, executor=lambda command: 127)

    assert worker.process_job(repo.claim()) == JobState.FAILED
    processed = repo.get_by_id(job.id)
    assert processed.attempts == 1
    assert processed.last_error == "Exit code 127"


def test_execution_error_is_recorded(repo, stop_signal):
    job = repo.create({"command": "whatever", "max_retries": 0})

    def _broken(command):
        raise ExecutionError("No such file or directory")

    worker = Worker(1, repo, stop_signal, executor=_broken)
    assert worker.process_job(repo.claim()) == JobState.DEAD
    assert repo.get_by_id(job.id).last_error == "No such file or directory"


def test_worker_exits_when_stop_already_requested(repo, stop_signal):
    repo.create({"command": "true"})
    stop_signal.request()
    calls = []
    Worker(1, repo, stop_signal, executor=calls.append).run()
    assert calls == []
    assert repo.list()[0].state == JobState.PENDING


def test_stop_signal_sees_remote_flag(store, stop_signal):
    assert not stop_signal.is_set()
    request_stop(store)
    assert stop_signal.is_set()
    stop_signal.clear()
    assert not stop_signal.is_set()


def test_local_stop_does_not_touch_file(config, stop_signal):
    stop_signal.request_local()
    assert stop_signal.is_set()
    assert config.get("workers_stop") == "0"


def test_pool_runs_job_to_dead_letter(store, repo, config):
    config.set("backoff_base", 0)
    job = repo.create({"command": "exit 1", "max_retries": 1})
    seen = []

    def _recording(command):
        current = repo.get_by_id(job.id)
        seen.append((current.state, current.attempts))
        return execute_command(command)

    manager = WorkerManager(store, executor=_recording)
    thread, errors = run_pool(manager)

    assert wait_for(lambda: repo.get_by_id(job.id).state == JobState.DEAD)
    manager.stop_workers()
    thread.join(5)
    assert not thread.is_alive()
    assert errors == []

    assert seen == [(JobState.PROCESSING, 0), (JobState.PROCESSING, 1)]
    dead = repo.get_by_id(job.id)
    assert dead.attempts == 2
    assert dead.last_error == "Exit code 1"


def test_pool_drains_many_jobs(store, repo):
    for i in range(10):
        repo.create({"id": f"job-{i}", "command": "true"})
    executed = []
    executed_lock = threading.Lock()

    def _executor(command):
        with executed_lock:
            executed.append(command)
        return 0

    manager = WorkerManager(store, executor=_executor)
    thread, errors = run_pool(manager, count=3)

    assert wait_for(lambda: repo.state_counts()["completed"] == 10)
    # Stop from "another process": only the shared flag is set
    request_stop(store)
    thread.join(5)
    assert not thread.is_alive()
    assert errors == []
    assert len(executed) == 10


def test_pool_startup_recovers_orphaned_jobs(store, repo):
    job = repo.create({"command": "true"})
    repo.claim()
    done = threading.Event()

    def _executor(command):
        done.set()
        return 0

    manager = WorkerManager(store, executor=_executor)
    thread, errors = run_pool(manager)

    assert done.wait(5)
    assert wait_for(lambda: repo.get_by_id(job.id).state == JobState.COMPLETED)
    manager.stop_workers()
    thread.join(5)
    assert not thread.is_alive()


def test_pool_clears_stale_stop_flag(store, repo, config):
    config.set("workers_stop", "1")
    job = repo.create({"command": "true"})

    manager = WorkerManager(store, executor=lambda command: 0)
    thread, errors = run_pool(manager)

    assert wait_for(lambda: repo.get_by_id(job.id).state == JobState.COMPLETED)
    manager.stop_workers()
    thread.join(5)
    assert ConfigRepository(store).get("workers_stop") == "1"


def test_pool_surfaces_store_corruption(store):
    manager = WorkerManager(store, executor=lambda command: 0)
    thread, errors = run_pool(manager, count=2)

    assert wait_for(lambda: manager.get_active_workers_count() == 2)
    # Hold the lock so no in-flight claim rewrites the file afterwards
    with FileLock(store.lock_path):
        with open(store.path, "w") as f:
            f.write("{not json")

    thread.join(5)
    assert not thread.is_alive()
    assert len(errors) == 1
    assert isinstance(errors[0], StoreCorruption)


def test_start_workers_rejects_zero(store):
    with pytest.raises(ValueError):
        WorkerManager(store).start_workers(0)


def test_execute_command_rejects_null_byte():
    with pytest.raises(ExecutionError):
        execute_command("echo a\x00b")


def test_unexpected_executor_error_is_recorded(repo, stop_signal):
    job = repo.create({"command": "whatever", "max_retries": 1})

    def _broken(command):
        raise ValueError("bad argument")

    worker = Worker(1, repo, stop_signal, executor=_broken)
    assert worker.process_job(repo.claim()) == JobState.FAILED
    failed = repo.get_by_id(job.id)
    assert failed.attempts == 1
    assert failed.last_error == "bad argument"


class FlakyClaimRepository(JobRepository):
    """Raises on the first claim, then behaves normally"""

    def __init__(self, store):
        super().__init__(store)
        self.failures = 0

    def claim(self):
        if self.failures == 0:
            self.failures += 1
            raise RuntimeError("transient failure")
        return super().claim()


def test_worker_survives_unexpected_error(store, repo, stop_signal):
    job = repo.create({"command": "true"})
    flaky = FlakyClaimRepository(store)
    worker = Worker(1, flaky, stop_signal, poll_interval=0.01, executor=lambda command: 0)

    thread = threading.Thread(target=worker.start, daemon=True)
    thread.start()
    assert wait_for(lambda: repo.get_by_id(job.id).state == JobState.COMPLETED)
    assert thread.is_alive()

    stop_signal.request_local()
    thread.join(5)
    assert not thread.is_alive()
    assert flaky.failures == 1
    assert worker.error is None


def test_pool_dead_letters_unrunnable_command(store, repo):
    job = repo.create({"command": "echo a\x00b", "max_retries": 0})

    manager = WorkerManager(store)
    thread, errors = run_pool(manager)

    assert wait_for(lambda: repo.get_by_id(job.id).state == JobState.DEAD)
    assert "null byte" in repo.get_by_id(job.id).last_error
    assert manager.get_active_workers_count() == 1

    manager.stop_workers()
    thread.join(5)
    assert not thread.is_alive()
    assert errors == []


def test_pool_keeps_running_when_backoff_overflows(store, repo, config):
    config.set("backoff_base", "1000000000000")
    job = repo.create({"command": "exit 1", "max_retries": 3})

    manager = WorkerManager(store, executor=lambda command: 1)
    thread, errors = run_pool(manager)

    assert wait_for(lambda: repo.get_by_id(job.id).state == JobState.FAILED)
    assert repo.get_by_id(job.id).run_at.year == 9999
    assert manager.get_active_workers_count() == 1

    manager.stop_workers()
    thread.join(5)
    assert not thread.is_alive()
    assert errors == []
