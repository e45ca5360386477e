import subprocess
import threading
import signal
import logging
from typing import Callable, List, Optional

from ..models.errors import ExecutionError, LockTimeout, StoreCorruption
from ..models.job import Job, JobState
from ..storage.config import ConfigRepository
from ..storage.repository import JobRepository
from ..storage.store import Store

logger = logging.getLogger(__name__)

STOP_KEY = "workers_stop"
DEFAULT_POLL_INTERVAL = 0.5

Executor = Callable[[str], int]


def execute_command(command: str) -> int:
    """Run a shell command to completion and return its exit code"""
    try:
        completed = subprocess.run(
            command,
            shell=True,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except (OSError, ValueError) as e:
        # ValueError: arguments the OS cannot take, e.g. an embedded NUL
        raise ExecutionError(str(e)) from e
    return completed.returncode


class StopSignal:
    """Cooperative stop request shared by every worker.

    Set locally by the process running the pool, or remotely through the
    `workers_stop` flag in the queue file.
    """

    def __init__(self, config: ConfigRepository):
        self.config = config
        self._event = threading.Event()

    def request(self):
        self._event.set()
        self.config.set(STOP_KEY, "1")

    def request_local(self):
        self._event.set()

    def clear(self):
        self._event.clear()
        self.config.set(STOP_KEY, "0")

    def is_set(self) -> bool:
        if self._event.is_set():
            return True
        return self.config.get_bool(STOP_KEY, False)

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds, waking early on a local stop"""
        return self._event.wait(timeout)


def request_stop(store: Store):
    """Ask running workers in any process to stop after their current job"""
    ConfigRepository(store).set(STOP_KEY, "1")


class Worker:
    def __init__(
        self,
        worker_id: int,
        repository: JobRepository,
        stop_signal: StopSignal,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        executor: Executor = execute_command,
    ):
        self.worker_id = worker_id
        self.repository = repository
        self.stop_signal = stop_signal
        self.poll_interval = poll_interval
        self.executor = executor
        self.current_job: Optional[Job] = None
        self.error: Optional[BaseException] = None
        self.logger = logging.getLogger(f"queuectl.worker.{worker_id}")

    def start(self):
        """Thread entry point: run until stopped, keeping any fatal error"""
        try:
            self.run()
        except StoreCorruption as e:
            self.error = e
            self.logger.error(f"Stopping: {e}")
            # Let the other workers drain; the manager re-raises
            self.stop_signal.request_local()

    def run(self):
        """Main worker loop"""
        self.logger.info("Worker started")
        while not self.stop_signal.is_set():
            try:
                job = self.repository.claim()
                if job is None:
                    # No jobs available, sleep for a short time
                    self.stop_signal.wait(self.poll_interval)
                    continue

                self.process_job(job)
            except StoreCorruption:
                raise
            except LockTimeout as e:
                self.logger.warning(f"Could not claim a job: {e}")
                self.stop_signal.wait(self.poll_interval)
            except Exception as e:
                self.logger.exception(f"Worker error: {e}")
                # Prevent tight loop on persistent errors
                self.stop_signal.wait(self.poll_interval)
        self.logger.info("Worker stopping gracefully")

    def process_job(self, job: Job) -> Optional[JobState]:
        """Execute a claimed job and record the outcome"""
        self.current_job = job
        self.logger.info(f"Picked job {job.id}: {job.command}")
        try:
            try:
                exit_code = self.executor(job.command)
            except Exception as e:
                state = self.repository.report_failure(job.id, str(e) or type(e).__name__)
                self.logger.error(f"Error running job {job.id}: {e}, state now: {state.value if state else None}")
                return state

            if exit_code == 0:
                self.repository.complete(job.id)
                self.logger.info(f"Completed job {job.id}")
                return JobState.COMPLETED

            state = self.repository.report_failure(job.id, f"Exit code {exit_code}")
            self.logger.warning(
                f"Job {job.id} failed with exit code {exit_code}, state now: {state.value if state else None}"
            )
            return state
        except LockTimeout as e:
            # The job stays processing until the next pool startup recovers it
            self.logger.error(f"Could not record outcome of job {job.id}: {e}")
            return None
        finally:
            self.current_job = None


class WorkerManager:
    def __init__(self, store: Store, executor: Executor = execute_command):
        self.store = store
        self.executor = executor
        self.repository = JobRepository(store)
        self.stop_signal = StopSignal(ConfigRepository(store))
        self.workers = {}
        self._lock = threading.Lock()

    def start_workers(self, count: int = 1, poll_interval: float = DEFAULT_POLL_INTERVAL):
        """Run `count` workers and block until all of them have drained"""
        if count < 1:
            raise ValueError("count must be at least 1")

        self.stop_signal.clear()
        self.store.recover_processing_jobs()
        previous_handlers = self._install_signal_handlers()

        try:
            with self._lock:
                for i in range(count):
                    worker_id = len(self.workers) + 1
                    worker = Worker(worker_id, self.repository, self.stop_signal, poll_interval, self.executor)
                    thread = threading.Thread(target=worker.start, name=f"worker-{worker_id}", daemon=True)
                    self.workers[worker_id] = (worker, thread)
                    thread.start()
            logger.info(f"Started {count} worker(s)")

            # Wait for all workers to finish their current jobs
            for worker, thread in list(self.workers.values()):
                while thread.is_alive():
                    thread.join(0.5)
        finally:
            self._restore_signal_handlers(previous_handlers)

        errors: List[BaseException] = [w.error for w, _ in self.workers.values() if w.error is not None]
        with self._lock:
            self.workers.clear()
        logger.info("All workers stopped")
        if errors:
            raise errors[0]

    def stop_workers(self):
        """Request a graceful stop; returns without waiting for the drain"""
        self.stop_signal.request()

    def handle_shutdown(self, signum, frame):
        logger.info(f"Received signal {signum}, requesting workers to stop")
        try:
            self.stop_signal.request()
        except LockTimeout:
            self.stop_signal.request_local()

    def _install_signal_handlers(self):
        # signal.signal only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, self.handle_shutdown)
        return previous

    def _restore_signal_handlers(self, previous):
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)

    def get_active_workers_count(self):
        """Get the count of currently running workers"""
        with self._lock:
            return sum(1 for _, thread in self.workers.values() if thread.is_alive())
