"""Per-app deployment lock.

Only one deployment, rollback or recovery of an app may touch its
directories at a time. The lock is an exclusive ``flock`` on
``<base>/.<app>.deploy.lock``; the kernel drops it when the holding process
exits, so there is nothing stale to reclaim.
"""

from __future__ import annotations

import asyncio
import fcntl
import os
import socket
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from unideploy.errors import LockTimeoutError
from unideploy.logging import get_logger

POLL_INTERVAL_SECONDS = 0.2

logger = get_logger(__name__)


def _try_lock(fd: int) -> bool:
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


@asynccontextmanager
async def app_deployment_lock(path: Path, timeout_seconds: float) -> AsyncIterator[Path]:
    """Hold the exclusive deployment lock of one app.

    Args:
        path: Lock file path
        timeout_seconds: Maximum time to wait for another holder

    Raises:
        LockTimeoutError: If the lock is still held after the timeout
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        deadline = time.monotonic() + timeout_seconds
        while not _try_lock(fd):
            if time.monotonic() >= deadline:
                holder = os.pread(fd, 256, 0).decode("utf-8", errors="replace").strip() or None
                logger.error("app_lock_timeout", path=str(path), holder=holder)
                raise LockTimeoutError(str(path), timeout_seconds, holder)
            await asyncio.sleep(POLL_INTERVAL_SECONDS)

        os.ftruncate(fd, 0)
        os.pwrite(fd, f"{os.getpid()}:{socket.gethostname()}:{int(time.time())}".encode(), 0)
        logger.debug("app_lock_acquired", path=str(path))
        try:
            yield path
        finally:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("app_lock_released", path=str(path))
    finally:
        os.close(fd)
