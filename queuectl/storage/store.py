import os
import json
import logging
import tempfile
from typing import Callable, TypeVar
from pydantic import ValidationError

from ..models.errors import StoreCorruption
from ..models.job import JobState, QueueDocument, utcnow
from .lock import FileLock

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONFIG = {
    "max_retries": "3",
    "backoff_base": "2",
    "workers_stop": "0",
}


def default_store_path() -> str:
    return os.path.join(os.path.expanduser("~"), ".queuectl", "queue.json")


class Store:
    """The queue file: every job and config entry in one JSON document.

    Readers take unlocked snapshots. Writers go through `mutate`, which holds
    the file lock for the whole read-modify-write and replaces the file
    atomically, so readers never see a half-written document.
    """

    def __init__(self, path: str = None, lock_retries: int = 50, lock_delay: float = 0.01):
        if not path:
            path = default_store_path()
        self.path = path
        self.lock_path = path + ".lock"
        self.lock_retries = lock_retries
        self.lock_delay = lock_delay

        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        self.init()

    def init(self):
        """Create the queue file with default config if it does not exist yet"""
        if os.path.exists(self.path):
            return
        with self._lock():
            # Another process may have created it while we waited
            if not os.path.exists(self.path):
                self._write(QueueDocument(config=dict(DEFAULT_CONFIG)))
                logger.info(f"Initialized new queue file at {self.path}")

    def _lock(self) -> FileLock:
        return FileLock(self.lock_path, retries=self.lock_retries, delay=self.lock_delay)

    def _load(self) -> QueueDocument:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            # Removed behind our back; the next write recreates it
            return QueueDocument(config=dict(DEFAULT_CONFIG))

        try:
            data = json.loads(raw or "{}")
        except json.JSONDecodeError as e:
            raise StoreCorruption(self.path, str(e)) from e
        if not isinstance(data, dict):
            raise StoreCorruption(self.path, "top-level value is not an object")

        try:
            return QueueDocument.model_validate(data)
        except ValidationError as e:
            raise StoreCorruption(self.path, str(e)) from e

    def _write(self, document: QueueDocument):
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".queue-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(document.model_dump_json(indent=2))
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def read(self) -> QueueDocument:
        """Snapshot of the whole document, taken without the lock"""
        return self._load()

    def mutate(self, fn: Callable[[QueueDocument], T]) -> T:
        """Apply `fn` to the current document under the lock and persist it.

        Nothing is written if `fn` raises; the exception propagates.
        """
        with self._lock():
            document = self._load()
            result = fn(document)
            self._write(document)
            return result

    def recover_processing_jobs(self) -> int:
        """Put jobs orphaned in `processing` by a dead worker back to `pending`"""

        def _recover(document: QueueDocument) -> int:
            now = utcnow()
            changed = 0
            for job in document.jobs:
                if job.state == JobState.PROCESSING:
                    job.state = JobState.PENDING
                    job.updated_at = now
                    changed += 1
            return changed

        changed = self.mutate(_recover)
        if changed:
            logger.info(f"Recovered {changed} processing job(s) back to pending")
        return changed
