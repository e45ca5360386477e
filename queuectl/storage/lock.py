import os
import time
import logging
from typing import Optional

from ..models.errors import LockTimeout

logger = logging.getLogger(__name__)


class FileLock:
    """Cooperative mutex shared by every process using the same queue file.

    The lock is held while the sentinel file exists. Acquisition creates it
    with O_EXCL and retries on contention, giving up with LockTimeout.
    """

    def __init__(self, path: str, retries: int = 50, delay: float = 0.01):
        self.path = path
        self.retries = retries
        self.delay = delay
        self._fd: Optional[int] = None

    def acquire(self):
        for _ in range(self.retries):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                time.sleep(self.delay)
                continue
            os.write(fd, str(os.getpid()).encode())
            self._fd = fd
            return
        logger.warning(f"Lock {self.path} still held after {self.retries} attempts")
        raise LockTimeout(self.path, self.retries)

    def release(self):
        if self._fd is None:
            return
        try:
            os.close(self._fd)
        finally:
            self._fd = None
            try:
                os.unlink(self.path)
            except FileNotFoundError:
                pass

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
