"""Unit tests for the registry lock manager.

Tests cover:
- Write lock acquisition and release
- Timeout reporting for contended locks
- Readers yielding to a present writer
- Stale lock reclamation (dead owner PID, excessive age)
- Release safety when the lock changed owner
"""

from __future__ import annotations

import os
import socket
import time
from pathlib import Path

import pytest

from unideploy.backoff import BackoffConfig, ExponentialBackoff
from unideploy.config import RegistryConfig
from unideploy.errors import ErrorKind, LockTimeoutError
from unideploy.registry.lock import INFO_FILE, LockInfo, LockKind, LockManager, pid_alive

# Above the Linux pid_max ceiling, so never a live process
DEAD_PID = 4_194_305


@pytest.fixture
def registry_path(tmp_path: Path) -> Path:
    return tmp_path / "service-registry.json"


def _manager(registry_path: Path, **overrides) -> LockManager:
    config = RegistryConfig(
        path=registry_path,
        initial_poll_seconds=0.01,
        max_poll_seconds=0.02,
        **overrides,
    )
    return LockManager(registry_path, config)


def _plant_lock(path: Path, info: LockInfo) -> None:
    path.mkdir(parents=True)
    (path / INFO_FILE).write_text(info.format(), encoding="utf-8")


class TestLockInfo:
    def test_format_parse(self) -> None:
        info = LockInfo(pid=42, hostname="web-1", timestamp=1700000000.5)
        parsed = LockInfo.parse(info.format())
        assert parsed == info

    @pytest.mark.parametrize("raw", ["", "42", "abc:host:1.0", "1:host", "1:host:x"])
    def test_malformed(self, raw: str) -> None:
        assert LockInfo.parse(raw) is None

    def test_pid_alive(self) -> None:
        assert pid_alive(os.getpid()) is True
        assert pid_alive(DEAD_PID) is False
        assert pid_alive(0) is False


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_write_lock_roundtrip(self, registry_path: Path) -> None:
        manager = _manager(registry_path)

        result = await manager.acquire(LockKind.WRITE)

        lock_dir = registry_path.with_name("service-registry.json.lock")
        assert result.success is True
        assert result.path == str(lock_dir)
        info = LockInfo.parse((lock_dir / INFO_FILE).read_text())
        assert info is not None and info.pid == os.getpid()

        assert manager.release(LockKind.WRITE) is True
        assert not lock_dir.exists()

    def test_read_lock_path(self, registry_path: Path) -> None:
        manager = _manager(registry_path)
        assert manager.lock_path(LockKind.READ).name == "service-registry.json.read.lock"

    @pytest.mark.asyncio
    async def test_contended_write_lock_times_out(self, registry_path: Path) -> None:
        holder = _manager(registry_path)
        waiter = _manager(registry_path)
        assert (await holder.acquire(LockKind.WRITE)).success

        result = await waiter.acquire(LockKind.WRITE, timeout=0.1)

        assert result.success is False
        assert result.error is not None
        assert result.error.kind is ErrorKind.LOCK
        assert result.error.details["holder"].startswith(f"{os.getpid()}:")
        assert result.attempts >= 1
        assert result.waited_seconds >= 0.1
        holder.release(LockKind.WRITE)

    @pytest.mark.asyncio
    async def test_reader_yields_to_writer(self, registry_path: Path) -> None:
        writer = _manager(registry_path)
        reader = _manager(registry_path)
        await writer.acquire(LockKind.WRITE)

        blocked = await reader.acquire(LockKind.READ, timeout=0.05)
        assert blocked.success is False
        assert not reader.lock_path(LockKind.READ).exists()

        writer.release(LockKind.WRITE)
        granted = await reader.acquire(LockKind.READ, timeout=0.5)
        assert granted.success is True
        reader.release(LockKind.READ)

    @pytest.mark.asyncio
    async def test_locked_raises_on_timeout(self, registry_path: Path) -> None:
        holder = _manager(registry_path)
        await holder.acquire(LockKind.WRITE)

        with pytest.raises(LockTimeoutError) as exc_info:
            async with _manager(registry_path).locked(LockKind.WRITE, timeout=0.05):
                pass

        assert exc_info.value.timeout_seconds == 0.05
        holder.release(LockKind.WRITE)

    @pytest.mark.asyncio
    async def test_locked_releases_on_exit(self, registry_path: Path) -> None:
        manager = _manager(registry_path)
        async with manager.locked(LockKind.WRITE):
            assert manager.lock_path(LockKind.WRITE).exists()
        assert not manager.lock_path(LockKind.WRITE).exists()

    @pytest.mark.asyncio
    async def test_release_leaves_foreign_lock(self, registry_path: Path) -> None:
        """A lock reclaimed and re-taken by another owner is not removed."""
        manager = _manager(registry_path)
        await manager.acquire(LockKind.WRITE)
        lock_dir = manager.lock_path(LockKind.WRITE)
        (lock_dir / INFO_FILE).write_text(
            LockInfo(pid=1, hostname="other-host", timestamp=time.time()).format()
        )

        assert manager.release(LockKind.WRITE) is False
        assert lock_dir.exists()

    def test_release_without_acquire(self, registry_path: Path) -> None:
        assert _manager(registry_path).release(LockKind.WRITE) is False


class TestStaleLocks:
    @pytest.mark.asyncio
    async def test_dead_owner_is_reclaimed(self, registry_path: Path) -> None:
        manager = _manager(registry_path)
        _plant_lock(
            manager.lock_path(LockKind.WRITE),
            LockInfo(pid=DEAD_PID, hostname=socket.gethostname(), timestamp=time.time()),
        )

        result = await manager.acquire(LockKind.WRITE, timeout=1.0)

        assert result.success is True
        assert result.stale_reclaimed == 1
        manager.release(LockKind.WRITE)

    @pytest.mark.asyncio
    async def test_old_lock_from_other_host_is_reclaimed(self, registry_path: Path) -> None:
        manager = _manager(registry_path, stale_lock_seconds=60.0)
        _plant_lock(
            manager.lock_path(LockKind.WRITE),
            LockInfo(pid=1, hostname="elsewhere", timestamp=time.time() - 600),
        )

        result = await manager.acquire(LockKind.WRITE, timeout=1.0)

        assert result.success is True
        assert result.stale_reclaimed == 1

    def test_fresh_foreign_lock_is_not_stale(self, registry_path: Path) -> None:
        manager = _manager(registry_path)
        path = manager.lock_path(LockKind.WRITE)
        _plant_lock(path, LockInfo(pid=1, hostname="elsewhere", timestamp=time.time()))

        assert manager.is_stale(path) is False

    @pytest.mark.asyncio
    async def test_reader_reclaims_stale_writer(self, registry_path: Path) -> None:
        manager = _manager(registry_path)
        _plant_lock(
            manager.lock_path(LockKind.WRITE),
            LockInfo(pid=DEAD_PID, hostname=socket.gethostname(), timestamp=time.time()),
        )

        result = await manager.acquire(LockKind.READ, timeout=1.0)

        assert result.success is True
        assert not manager.lock_path(LockKind.WRITE).exists()


class TestBackoff:
    def test_delays_grow_and_cap(self) -> None:
        backoff = ExponentialBackoff(
            BackoffConfig(initial_delay_seconds=0.1, max_delay_seconds=0.5, jitter=False)
        )

        assert [backoff.next_delay(n) for n in range(4)] == pytest.approx([0.1, 0.2, 0.4, 0.5])

    def test_jitter_stays_within_half(self) -> None:
        backoff = ExponentialBackoff(BackoffConfig(initial_delay_seconds=1.0))

        for _ in range(20):
            assert 0.5 <= backoff.next_delay(0) <= 1.0

    @pytest.mark.asyncio
    async def test_wait_respects_limit(self) -> None:
        backoff = ExponentialBackoff(BackoffConfig(initial_delay_seconds=5.0, jitter=False))

        assert await backoff.wait(0, limit=0.01) == 0.01
        assert await backoff.wait(0, limit=-1.0) == 0.0
