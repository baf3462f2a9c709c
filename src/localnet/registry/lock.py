"""Single-writer locking for the node registry."""

import fcntl
import logging
import os
from pathlib import Path
from types import TracebackType

from localnet.error_handling import RegistryLockedError

logger = logging.getLogger(__name__)


class RegistryLock:
    """Exclusive lock held while a command loads and mutates the registry."""

    def __init__(self, lock_file: Path) -> None:
        self.lock_file = lock_file
        self.lock_fd: int | None = None

    def acquire(self) -> bool:
        """Try to acquire exclusive lock. Returns True if successful."""
        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            self.lock_fd = os.open(str(self.lock_file), os.O_CREAT | os.O_WRONLY)
            fcntl.flock(self.lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            # Holder's PID, for whoever inspects the file
            os.ftruncate(self.lock_fd, 0)
            os.write(self.lock_fd, str(os.getpid()).encode())
            os.fsync(self.lock_fd)
            return True
        except OSError:
            if self.lock_fd is not None:
                os.close(self.lock_fd)
                self.lock_fd = None
            return False

    def release(self) -> None:
        """Release the lock."""
        if self.lock_fd is not None:
            try:
                fcntl.flock(self.lock_fd, fcntl.LOCK_UN)
                os.close(self.lock_fd)
            except OSError:
                logger.debug("Registry lock %s was already released", self.lock_file)
            finally:
                self.lock_fd = None

    def __enter__(self) -> "RegistryLock":
        if not self.acquire():
            raise RegistryLockedError(self.lock_file)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
