# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
State Lock

Single responsibility: Exclusive advisory lock over the state directory,
held from resolution through commit.
"""

import fcntl
import logging
import os
from pathlib import Path
from typing import Optional

from pkgmgr.core.errors import StateLockedError

logger = logging.getLogger(__name__)


class StateLock:
    """Non-blocking exclusive flock on the state lock file"""

    def __init__(self, lock_file: Path):
        self.lock_file = Path(lock_file)
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self):
        """
        Acquire the lock.

        Raises:
            StateLockedError: If another process holds it
        """
        if self._fd is not None:
            return
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise StateLockedError(
                f"Another transaction holds {self.lock_file}",
                details={"lock_file": str(self.lock_file)}
            )
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        logger.debug(f"Acquired state lock {self.lock_file}")

    def release(self):
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Released state lock {self.lock_file}")

    def __enter__(self) -> "StateLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
