"""Unit tests for the cutover manager.

Tests cover:
- Directory swap with and without an existing production directory
- Promotion failure handling
- Backup restore
- Backup pruning by age
- Recovery of interrupted swaps from the journal
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from unideploy.errors import ErrorKind
from unideploy.orchestrator.cutover import (
    TIMESTAMP_FORMAT,
    CutoverJournal,
    CutoverManager,
    CutoverPhase,
    RecoveryAction,
    parse_timestamp,
)


@pytest.fixture
def manager(tmp_path: Path) -> CutoverManager:
    return CutoverManager(tmp_path / "apps")


def _version_dir(path: Path, version: str) -> Path:
    path.mkdir(parents=True)
    (path / "VERSION").write_text(version)
    return path


def _version(path: Path) -> str:
    return (path / "VERSION").read_text()


def _aged(seconds: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(seconds=seconds)).strftime(TIMESTAMP_FORMAT)


class TestLayout:
    def test_paths(self, manager: CutoverManager) -> None:
        assert manager.production_dir("shop") == manager.base_dir / "shop"
        assert manager.journal_path("shop").name == ".shop.cutover.json"
        assert manager.lock_path("shop").name == ".shop.deploy.lock"
        assert manager.new_staging_dir("shop").name.startswith("shop_staging_")
        assert manager.new_backup_dir("shop").name.startswith("shop_backup_")

    def test_unique_names(self, manager: CutoverManager) -> None:
        first = manager.new_staging_dir("shop")
        first.mkdir(parents=True)
        second = manager.new_staging_dir("shop")

        assert second != first
        assert parse_timestamp(second.name[len("shop_staging_"):]) is not None

    def test_backups_sorted_and_scoped(self, manager: CutoverManager) -> None:
        newer = _version_dir(manager.base_dir / f"shop_backup_{_aged(10)}", "v2")
        older = _version_dir(manager.base_dir / f"shop_backup_{_aged(100)}", "v1")
        _version_dir(manager.base_dir / f"api_backup_{_aged(5)}", "x")
        _version_dir(manager.base_dir / "shop_backup_garbage", "x")

        assert manager.backups("shop") == [older, newer]


class TestCutover:
    def test_first_deployment(self, manager: CutoverManager) -> None:
        staging = _version_dir(manager.new_staging_dir("shop"), "v1")

        result = manager.cutover("shop", staging)

        assert result.success is True
        assert result.backup is None
        assert _version(manager.production_dir("shop")) == "v1"
        assert not staging.exists()

    def test_swap_keeps_backup(self, manager: CutoverManager) -> None:
        _version_dir(manager.production_dir("shop"), "v1")
        staging = _version_dir(manager.new_staging_dir("shop"), "v2")

        result = manager.cutover("shop", staging)

        assert result.success is True
        assert result.backup is not None
        assert _version(result.backup) == "v1"
        assert _version(manager.production_dir("shop")) == "v2"
        journal = manager.read_journal("shop")
        assert journal is not None and journal.phase is CutoverPhase.PROMOTED

    def test_promotion_failure_restores_production(self, manager: CutoverManager) -> None:
        _version_dir(manager.production_dir("shop"), "v1")
        missing_staging = manager.base_dir / "shop_staging_vanished"

        result = manager.cutover("shop", missing_staging)

        assert result.success is False
        assert result.critical is False
        assert result.error is not None and result.error.kind is ErrorKind.DEPLOYMENT
        assert _version(manager.production_dir("shop")) == "v1"
        assert manager.backups("shop") == []
        assert manager.read_journal("shop") is None


class TestRestoreAndPrune:
    def test_restore_replaces_production(self, manager: CutoverManager) -> None:
        _version_dir(manager.production_dir("shop"), "v1")
        staging = _version_dir(manager.new_staging_dir("shop"), "v2")
        swapped = manager.cutover("shop", staging)
        assert swapped.backup is not None

        restored = manager.restore("shop", swapped.backup)

        assert restored.success is True
        assert _version(manager.production_dir("shop")) == "v1"
        assert not swapped.backup.exists()
        assert [p.name for p in manager.base_dir.iterdir() if "_failed_" in p.name] == []
        assert manager.read_journal("shop") is None

    def test_restore_missing_backup_is_critical(self, manager: CutoverManager) -> None:
        _version_dir(manager.production_dir("shop"), "v2")

        result = manager.restore("shop", manager.base_dir / "shop_backup_20000101000000")

        assert result.success is False
        assert result.critical is True
        assert result.error is not None and result.error.kind is ErrorKind.ROLLBACK
        assert "discarded" in result.error.details
        assert manager.read_journal("shop") is not None

    def test_prune_by_age(self, manager: CutoverManager) -> None:
        old = _version_dir(manager.base_dir / f"shop_backup_{_aged(600)}", "v1")
        kept_by_arg = _version_dir(manager.base_dir / f"shop_backup_{_aged(500)}", "v2")
        fresh = _version_dir(manager.base_dir / f"shop_backup_{_aged(5)}", "v3")

        removed = manager.prune_backups("shop", older_than_seconds=300, keep=kept_by_arg)

        assert removed == [old]
        assert manager.backups("shop") == [kept_by_arg, fresh]


class TestRecover:
    def _journal(
        self, manager: CutoverManager, phase: CutoverPhase, backup: Path | None, staging: Path | None
    ) -> None:
        manager.write_journal(
            CutoverJournal(
                app_name="shop",
                phase=phase,
                production=manager.production_dir("shop"),
                staging=staging,
                backup=backup,
            )
        )

    def test_nothing_to_do(self, manager: CutoverManager) -> None:
        _version_dir(manager.production_dir("shop"), "v1")

        result = manager.recover("shop")

        assert result.success is True
        assert result.action is RecoveryAction.NOTHING

    def test_crash_after_backup_rename(self, manager: CutoverManager) -> None:
        """Production moved away, staging not yet promoted: the backup comes back."""
        backup = _version_dir(manager.base_dir / f"shop_backup_{_aged(1)}", "v1")
        staging = _version_dir(manager.base_dir / f"shop_staging_{_aged(2)}", "v2")
        self._journal(manager, CutoverPhase.BACKING_UP, backup, staging)

        result = manager.recover("shop")

        assert result.success is True
        assert result.action is RecoveryAction.RESTORED
        assert result.phase is CutoverPhase.BACKING_UP
        assert result.restored_from == backup
        assert _version(manager.production_dir("shop")) == "v1"
        assert result.removed == [staging]
        assert manager.read_journal("shop") is None

    def test_crash_while_promoting(self, manager: CutoverManager) -> None:
        """An unverified promoted version is replaced by the backup."""
        _version_dir(manager.production_dir("shop"), "v2")
        backup = _version_dir(manager.base_dir / f"shop_backup_{_aged(1)}", "v1")
        self._journal(manager, CutoverPhase.PROMOTING, backup, None)

        result = manager.recover("shop")

        assert result.action is RecoveryAction.RESTORED
        assert _version(manager.production_dir("shop")) == "v1"

    def test_promoted_swap_is_kept(self, manager: CutoverManager) -> None:
        _version_dir(manager.production_dir("shop"), "v2")
        backup = _version_dir(manager.base_dir / f"shop_backup_{_aged(1)}", "v1")
        self._journal(manager, CutoverPhase.PROMOTED, backup, None)

        result = manager.recover("shop")

        assert result.action is RecoveryAction.CLEARED
        assert _version(manager.production_dir("shop")) == "v2"
        assert backup.exists()
        assert manager.read_journal("shop") is None

    def test_missing_production_without_journal_uses_newest_backup(
        self, manager: CutoverManager
    ) -> None:
        _version_dir(manager.base_dir / f"shop_backup_{_aged(100)}", "v1")
        newest = _version_dir(manager.base_dir / f"shop_backup_{_aged(10)}", "v2")

        result = manager.recover("shop")

        assert result.action is RecoveryAction.RESTORED
        assert result.restored_from == newest
        assert _version(manager.production_dir("shop")) == "v2"

    def test_unrecoverable(self, manager: CutoverManager) -> None:
        staging = _version_dir(manager.base_dir / f"shop_staging_{_aged(1)}", "v2")
        self._journal(manager, CutoverPhase.BACKING_UP, manager.base_dir / "gone", staging)

        result = manager.recover("shop")

        assert result.success is False
        assert result.action is RecoveryAction.UNRECOVERABLE
        assert result.error is not None and result.error.kind is ErrorKind.ROLLBACK
        # Evidence is preserved for the operator
        assert staging.exists()
        assert manager.read_journal("shop") is not None

    def test_corrupt_journal_is_ignored(self, manager: CutoverManager) -> None:
        _version_dir(manager.production_dir("shop"), "v1")
        manager.journal_path("shop").write_text("{broken")

        assert manager.read_journal("shop") is None
        assert manager.recover("shop").action is RecoveryAction.NOTHING


def test_journal_survives_reload(manager: CutoverManager) -> None:
    manager.write_journal(
        CutoverJournal(
            app_name="shop",
            phase=CutoverPhase.PROMOTING,
            production=manager.production_dir("shop"),
        )
    )

    assert os.path.exists(manager.journal_path("shop"))
    journal = manager.read_journal("shop")
    assert journal is not None
    assert journal.phase is CutoverPhase.PROMOTING
    assert journal.production == manager.production_dir("shop")
