"""Directory-based lock manager guarding the service registry.

A lock is a directory next to the registry file; its presence means the
lock is held. ``mkdir`` is atomic on POSIX filesystems, so exactly one
acquirer wins a race. Every successful acquire writes an ``info`` file
containing ``pid:hostname:timestamp`` which is used for diagnosis and for
staleness checks.

Lock semantics:
- **Write lock** (``<registry>.lock``): exclusive. Contended acquirers poll
  with capped, jittered exponential backoff until the timeout elapses.
- **Read lock** (``<registry>.read.lock``): waits while a write lock is
  present, then takes its own short-lived directory. Readers yield to
  writers; writers never wait for readers because registry writes are
  atomic renames.
- **Staleness**: a lock is stale when its owner PID no longer exists on
  this host, or its age exceeds ``stale_lock_seconds``. Stale locks are
  removed and acquisition is retried immediately.

Example:
    >>> manager = LockManager(Path("/opt/unideploy/service-registry.json"), config)
    >>> async with manager.locked(LockKind.WRITE):
    ...     ...  # mutate the registry
"""

from __future__ import annotations

import asyncio
import os
import shutil
import socket
import time
import uuid
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import AsyncIterator

import structlog
from pydantic import BaseModel, Field

from unideploy.backoff import BackoffConfig, ExponentialBackoff
from unideploy.config import RegistryConfig
from unideploy.errors import ErrorKind, LockTimeoutError, OperationError

logger = structlog.get_logger(__name__)

INFO_FILE = "info"


class LockKind(str, Enum):
    """Registry lock flavours."""

    WRITE = "write"
    READ = "read"


class LockInfo(BaseModel):
    """Owner information stored inside a lock directory.

    Attributes:
        pid: Process ID of the owner
        hostname: Host the owner runs on
        timestamp: Acquisition time as a Unix timestamp
    """

    pid: int
    hostname: str
    timestamp: float

    @classmethod
    def current(cls) -> LockInfo:
        return cls(pid=os.getpid(), hostname=socket.gethostname(), timestamp=time.time())

    @classmethod
    def parse(cls, raw: str) -> LockInfo | None:
        """Parse ``pid:hostname:timestamp``; returns None when malformed."""
        parts = raw.strip().split(":")
        if len(parts) != 3:
            return None
        try:
            return cls(pid=int(parts[0]), hostname=parts[1], timestamp=float(parts[2]))
        except ValueError:
            return None

    def format(self) -> str:
        return f"{self.pid}:{self.hostname}:{self.timestamp:.6f}"

    def age(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp


class LockResult(BaseModel):
    """Outcome of a lock acquisition attempt.

    Attributes:
        success: Whether the lock is now held
        kind: Which lock was requested
        path: Lock directory path
        waited_seconds: Time spent waiting
        attempts: Number of mkdir attempts
        stale_reclaimed: Number of stale locks removed while waiting
        error: Failure description when success is False
    """

    success: bool
    kind: LockKind
    path: str
    waited_seconds: float = Field(default=0.0, ge=0.0)
    attempts: int = Field(default=0, ge=0)
    stale_reclaimed: int = Field(default=0, ge=0)
    error: OperationError | None = None


def pid_alive(pid: int) -> bool:
    """Return True if a process with this PID exists on this host."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


class LockManager:
    """Directory locks for one registry file.

    Attributes:
        registry_path: Registry document the locks protect
        config: Registry configuration (timeouts, staleness, polling)
    """

    def __init__(self, registry_path: Path, config: RegistryConfig | None = None) -> None:
        self.registry_path = registry_path
        self.config = config or RegistryConfig(path=registry_path)
        self._hostname = socket.gethostname()
        self._held: dict[LockKind, str] = {}
        self._backoff = ExponentialBackoff(
            BackoffConfig(
                initial_delay_seconds=self.config.initial_poll_seconds,
                max_delay_seconds=self.config.max_poll_seconds,
                multiplier=2.0,
                jitter=True,
            )
        )
        self._logger = logger.bind(component="LockManager")

    def lock_path(self, kind: LockKind) -> Path:
        suffix = ".lock" if kind is LockKind.WRITE else ".read.lock"
        return self.registry_path.with_name(self.registry_path.name + suffix)

    def default_timeout(self, kind: LockKind) -> float:
        if kind is LockKind.WRITE:
            return self.config.write_lock_timeout_seconds
        return self.config.read_lock_timeout_seconds

    def read_info(self, path: Path) -> LockInfo | None:
        try:
            return LockInfo.parse((path / INFO_FILE).read_text(encoding="utf-8"))
        except (FileNotFoundError, NotADirectoryError):
            return None

    def is_stale(self, path: Path) -> bool:
        """Decide whether the lock directory at ``path`` is abandoned.

        A lock without a readable info file is judged by the directory's
        mtime only, since the owner may be between mkdir and writing info.
        """
        info = self.read_info(path)
        now = time.time()
        if info is None:
            try:
                age = now - path.stat().st_mtime
            except FileNotFoundError:
                return False
            return age > self.config.stale_lock_seconds

        if info.hostname == self._hostname and not pid_alive(info.pid):
            return True
        return info.age(now) > self.config.stale_lock_seconds

    def _reclaim(self, path: Path) -> bool:
        """Remove a stale lock directory. Returns True if this call removed it."""
        judged = self.read_info(path)
        tombstone = path.with_name(f"{path.name}.stale-{uuid.uuid4().hex[:8]}")
        try:
            os.rename(path, tombstone)
        except FileNotFoundError:
            return False

        # Someone may have reclaimed and re-acquired between our check and rename
        current = self.read_info(tombstone)
        if judged is not None and current is not None and current != judged:
            try:
                os.rename(tombstone, path)
            except OSError:
                self._logger.warning("stale_lock_restore_failed", path=str(path))
            return False

        shutil.rmtree(tombstone, ignore_errors=True)
        self._logger.warning(
            "stale_lock_reclaimed",
            path=str(path),
            owner_pid=judged.pid if judged else None,
            owner_host=judged.hostname if judged else None,
            age_seconds=round(judged.age(), 1) if judged else None,
        )
        return True

    def _try_mkdir(self, kind: LockKind, path: Path) -> bool:
        try:
            path.mkdir()
        except FileExistsError:
            return False
        info = LockInfo.current().format()
        (path / INFO_FILE).write_text(info, encoding="utf-8")
        self._held[kind] = info
        return True

    async def acquire(self, kind: LockKind, timeout: float | None = None) -> LockResult:
        """Acquire a registry lock.

        Timeouts are reported in the result rather than raised.

        Args:
            kind: WRITE or READ
            timeout: Maximum wait in seconds (defaults per kind from config)

        Returns:
            LockResult describing the outcome
        """
        timeout = self.default_timeout(kind) if timeout is None else timeout
        path = self.lock_path(kind)
        write_path = self.lock_path(LockKind.WRITE)
        path.parent.mkdir(parents=True, exist_ok=True)

        start = time.monotonic()
        attempts = 0
        reclaimed = 0
        backoff_step = 0

        while True:
            # Readers yield to a present writer
            blocked_by_writer = kind is LockKind.READ and write_path.exists()
            if blocked_by_writer and self.is_stale(write_path):
                if self._reclaim(write_path):
                    reclaimed += 1
                continue

            if not blocked_by_writer:
                attempts += 1
                if self._try_mkdir(kind, path):
                    waited = time.monotonic() - start
                    self._logger.debug(
                        "registry_lock_acquired",
                        kind=kind.value,
                        path=str(path),
                        waited_seconds=round(waited, 3),
                        attempts=attempts,
                    )
                    return LockResult(
                        success=True,
                        kind=kind,
                        path=str(path),
                        waited_seconds=waited,
                        attempts=attempts,
                        stale_reclaimed=reclaimed,
                    )
                if self.is_stale(path):
                    if self._reclaim(path):
                        reclaimed += 1
                    continue

            elapsed = time.monotonic() - start
            remaining = timeout - elapsed
            if remaining <= 0:
                holder = self.read_info(write_path if blocked_by_writer else path)
                error = LockTimeoutError(
                    str(path), timeout, holder.format() if holder else None
                )
                self._logger.warning(
                    "registry_lock_timeout",
                    kind=kind.value,
                    path=str(path),
                    timeout_seconds=timeout,
                    holder=error.holder,
                )
                return LockResult(
                    success=False,
                    kind=kind,
                    path=str(path),
                    waited_seconds=elapsed,
                    attempts=attempts,
                    stale_reclaimed=reclaimed,
                    error=OperationError(
                        kind=ErrorKind.LOCK,
                        message=str(error),
                        details={"holder": error.holder, "retryable": True},
                    ),
                )

            await self._backoff.wait(backoff_step, limit=remaining)
            backoff_step += 1

    def release(self, kind: LockKind) -> bool:
        """Release a lock held by this manager.

        Only removes the directory if its info file is the one written by
        our own acquire, so a lock reclaimed and re-taken by someone else
        is left alone.

        Returns:
            True if the lock directory was removed
        """
        path = self.lock_path(kind)
        expected = self._held.pop(kind, None)
        if expected is None:
            return False

        try:
            current = (path / INFO_FILE).read_text(encoding="utf-8")
        except (FileNotFoundError, NotADirectoryError):
            self._logger.warning("registry_lock_vanished", kind=kind.value, path=str(path))
            return False

        if current != expected:
            self._logger.warning(
                "registry_lock_owner_changed",
                kind=kind.value,
                path=str(path),
                owner=current,
            )
            return False

        shutil.rmtree(path, ignore_errors=True)
        self._logger.debug("registry_lock_released", kind=kind.value, path=str(path))
        return True

    @asynccontextmanager
    async def locked(
        self, kind: LockKind, timeout: float | None = None
    ) -> AsyncIterator[LockResult]:
        """Hold a lock for the duration of the block.

        Raises:
            LockTimeoutError: If the lock could not be acquired in time
        """
        result = await self.acquire(kind, timeout)
        if not result.success:
            holder = result.error.details.get("holder") if result.error else None
            raise LockTimeoutError(
                result.path,
                self.default_timeout(kind) if timeout is None else timeout,
                holder,
            )
        try:
            yield result
        finally:
            self.release(kind)
