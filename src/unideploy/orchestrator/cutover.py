"""Staging, cutover and restore of per-app deployment directories.

A multi-stage deployment builds the new version in a staging directory next
to production, then swaps it in with two renames:

    production -> <app>_backup_<ts>      (phase: backing_up)
    staging    -> production             (phase: promoting)
                                         (phase: promoted)

Before each rename the intended step is written to a journal file
``<base>/.<app>.cutover.json``. A crash between the renames leaves the
journal behind, and ``recover`` uses it together with the directories that
exist to restore a consistent production directory.

All directories of an app live under the same base directory, so every
rename stays on one filesystem and is atomic.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from unideploy.errors import ErrorKind, OperationError
from unideploy.logging import get_logger
from unideploy.models import utc_now_iso

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


class CutoverPhase(str, Enum):
    """Journal phases of a directory swap."""

    BACKING_UP = "backing_up"
    PROMOTING = "promoting"
    PROMOTED = "promoted"
    RESTORING = "restoring"


class CutoverJournal(BaseModel):
    """Write-ahead record of an in-flight directory swap.

    Attributes:
        app_name: App being swapped
        phase: Step about to run or last completed
        production: Production directory
        staging: Staging directory being promoted
        backup: Backup directory the old production moves to
        started_at: When the swap began
    """

    app_name: str
    phase: CutoverPhase
    production: Path
    staging: Path | None = None
    backup: Path | None = None
    started_at: str = Field(default_factory=utc_now_iso)


class CutoverResult(BaseModel):
    """Outcome of a cutover or restore.

    Attributes:
        success: Whether the swap completed
        production: Production directory
        backup: Backup directory holding the previous version, if any
        critical: Production may be missing; operator intervention required
        error: Structured error on failure
    """

    success: bool
    production: Path
    backup: Path | None = None
    critical: bool = False
    error: OperationError | None = None


class RecoveryAction(str, Enum):
    NOTHING = "nothing"
    CLEARED = "cleared"
    RESTORED = "restored"
    UNRECOVERABLE = "unrecoverable"


class RecoveryResult(BaseModel):
    """Outcome of a recovery pass.

    Attributes:
        success: Production directory is consistent afterwards
        action: What recovery did
        phase: Journal phase found, if a journal existed
        production: Production directory
        restored_from: Backup moved back into production
        removed: Leftover directories that were deleted
        error: Structured error when production could not be restored
    """

    success: bool
    action: RecoveryAction
    phase: CutoverPhase | None = None
    production: Path
    restored_from: Path | None = None
    removed: list[Path] = Field(default_factory=list)
    error: OperationError | None = None


def timestamp() -> str:
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime | None:
    try:
        return datetime.strptime(value.split("-", 1)[0], TIMESTAMP_FORMAT).replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        return None


class CutoverManager:
    """Owns the directory layout of every app under ``base_dir``.

    Attributes:
        base_dir: Directory holding production, staging and backup directories
    """

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir
        self._logger = get_logger(__name__).bind(component="CutoverManager")

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def production_dir(self, app_name: str) -> Path:
        return self.base_dir / app_name

    def _unique(self, prefix: str) -> Path:
        path = self.base_dir / f"{prefix}{timestamp()}"
        counter = 1
        candidate = path
        while candidate.exists():
            candidate = path.with_name(f"{path.name}-{counter}")
            counter += 1
        return candidate

    def new_staging_dir(self, app_name: str) -> Path:
        return self._unique(f"{app_name}_staging_")

    def new_backup_dir(self, app_name: str) -> Path:
        return self._unique(f"{app_name}_backup_")

    def journal_path(self, app_name: str) -> Path:
        return self.base_dir / f".{app_name}.cutover.json"

    def lock_path(self, app_name: str) -> Path:
        return self.base_dir / f".{app_name}.deploy.lock"

    def _siblings(self, app_name: str, kind: str) -> list[tuple[datetime, Path]]:
        prefix = f"{app_name}_{kind}_"
        found = []
        if not self.base_dir.is_dir():
            return found
        for entry in self.base_dir.iterdir():
            if not entry.is_dir() or not entry.name.startswith(prefix):
                continue
            created = parse_timestamp(entry.name[len(prefix):])
            if created is not None:
                found.append((created, entry))
        return sorted(found)

    def backups(self, app_name: str) -> list[Path]:
        """Backup directories of an app, oldest first."""
        return [path for _, path in self._siblings(app_name, "backup")]

    def staging_dirs(self, app_name: str) -> list[Path]:
        return [path for _, path in self._siblings(app_name, "staging")]

    # ------------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------------

    def read_journal(self, app_name: str) -> CutoverJournal | None:
        path = self.journal_path(app_name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return CutoverJournal.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            self._logger.warning("cutover_journal_unreadable", path=str(path), error=str(e))
            return None

    def write_journal(self, journal: CutoverJournal) -> None:
        path = self.journal_path(journal.app_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(journal.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        self._logger.debug("cutover_journal_written", app_name=journal.app_name, phase=journal.phase.value)

    def clear_journal(self, app_name: str) -> None:
        self.journal_path(app_name).unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Swaps
    # ------------------------------------------------------------------

    def remove_dir(self, path: Path | None) -> bool:
        if path is None or not path.exists():
            return False
        shutil.rmtree(path)
        self._logger.debug("directory_removed", path=str(path))
        return True

    def cutover(self, app_name: str, staging: Path) -> CutoverResult:
        """Swap ``staging`` into the production path, keeping the old one as backup.

        On failure the staging directory is removed and, when the old
        production was already moved, it is moved back. If that also fails
        the result is critical and the journal stays for ``recover``.
        """
        production = self.production_dir(app_name)
        backup = self.new_backup_dir(app_name) if production.exists() else None
        journal = CutoverJournal(
            app_name=app_name,
            phase=CutoverPhase.BACKING_UP,
            production=production,
            staging=staging,
            backup=backup,
        )
        self.write_journal(journal)

        if backup is not None:
            try:
                os.rename(production, backup)
            except OSError as e:
                self._logger.error("cutover_backup_failed", app_name=app_name, error=str(e))
                self.remove_dir(staging)
                self.clear_journal(app_name)
                return CutoverResult(
                    success=False,
                    production=production,
                    error=OperationError(
                        kind=ErrorKind.DEPLOYMENT,
                        message=f"Cannot back up {production}: {e}",
                    ),
                )
            self._logger.info("production_backed_up", app_name=app_name, backup=str(backup))

        journal.phase = CutoverPhase.PROMOTING
        self.write_journal(journal)

        try:
            os.rename(staging, production)
        except OSError as e:
            self._logger.error("cutover_promote_failed", app_name=app_name, error=str(e))
            if backup is not None:
                try:
                    os.rename(backup, production)
                except OSError as restore_error:
                    self._logger.critical(
                        "cutover_restore_failed",
                        app_name=app_name,
                        backup=str(backup),
                        error=str(restore_error),
                    )
                    return CutoverResult(
                        success=False,
                        production=production,
                        backup=backup,
                        critical=True,
                        error=OperationError(
                            kind=ErrorKind.ROLLBACK,
                            message=(
                                f"Cutover failed and {backup} could not be restored to "
                                f"{production}: {restore_error}"
                            ),
                            details={"backup": str(backup), "staging": str(staging)},
                        ),
                    )
            self.remove_dir(staging)
            self.clear_journal(app_name)
            return CutoverResult(
                success=False,
                production=production,
                error=OperationError(
                    kind=ErrorKind.DEPLOYMENT,
                    message=f"Cannot move {staging} to {production}: {e}",
                ),
            )

        journal.phase = CutoverPhase.PROMOTED
        self.write_journal(journal)
        self._logger.info("cutover_completed", app_name=app_name, production=str(production))
        return CutoverResult(success=True, production=production, backup=backup)

    def restore(self, app_name: str, backup: Path) -> CutoverResult:
        """Put ``backup`` back into the production path.

        The current production directory is moved aside first and only
        deleted once the backup is in place. A failed restore keeps every
        directory and the journal for manual recovery.
        """
        production = self.production_dir(app_name)
        self.write_journal(
            CutoverJournal(
                app_name=app_name,
                phase=CutoverPhase.RESTORING,
                production=production,
                backup=backup,
            )
        )

        discarded: Path | None = None
        try:
            if production.exists():
                discarded = self._unique(f"{app_name}_failed_")
                os.rename(production, discarded)
            os.rename(backup, production)
        except OSError as e:
            self._logger.critical(
                "restore_failed",
                app_name=app_name,
                backup=str(backup),
                discarded=str(discarded) if discarded else None,
                error=str(e),
            )
            details = {"backup": str(backup)}
            if discarded is not None:
                details["discarded"] = str(discarded)
            return CutoverResult(
                success=False,
                production=production,
                backup=backup,
                critical=True,
                error=OperationError(
                    kind=ErrorKind.ROLLBACK,
                    message=f"Cannot restore {backup} to {production}: {e}",
                    details=details,
                ),
            )

        self.remove_dir(discarded)
        self.clear_journal(app_name)
        self._logger.info("backup_restored", app_name=app_name, backup=str(backup))
        return CutoverResult(success=True, production=production)

    def prune_backups(self, app_name: str, older_than_seconds: float, keep: Path | None = None) -> list[Path]:
        """Delete backups older than the grace period, except ``keep``."""
        now = datetime.now(timezone.utc)
        removed = []
        for created, path in self._siblings(app_name, "backup"):
            if path == keep or (now - created).total_seconds() < older_than_seconds:
                continue
            self.remove_dir(path)
            removed.append(path)
        if removed:
            self._logger.info("backups_pruned", app_name=app_name, removed=[str(p) for p in removed])
        return removed

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover(self, app_name: str) -> RecoveryResult:
        """Bring an interrupted swap to a consistent state.

        Rules, applied in order:
        - production absent, backup present: restore the backup
        - production present and the journal was mid-swap (promoting or
          restoring) with the backup still present: production holds an
          unverified version, restore the backup over it
        - production present otherwise: keep it
        - production and backup absent: unrecoverable
        Staging leftovers and the journal are removed afterwards.
        """
        start = time.monotonic()
        journal = self.read_journal(app_name)
        production = self.production_dir(app_name)
        phase = journal.phase if journal else None

        backup: Path | None = None
        if journal is not None and journal.backup is not None and journal.backup.exists():
            backup = journal.backup
        elif journal is None and not production.exists():
            existing = self.backups(app_name)
            backup = existing[-1] if existing else None

        result = RecoveryResult(
            success=True,
            action=RecoveryAction.NOTHING,
            phase=phase,
            production=production,
        )

        mid_swap = phase in (CutoverPhase.PROMOTING, CutoverPhase.RESTORING)
        if backup is not None and (not production.exists() or mid_swap):
            restored = self.restore(app_name, backup)
            if not restored.success:
                result.success = False
                result.action = RecoveryAction.UNRECOVERABLE
                result.error = restored.error
                return result
            result.action = RecoveryAction.RESTORED
            result.restored_from = backup
        elif not production.exists():
            if journal is not None or self.staging_dirs(app_name):
                result.success = False
                result.action = RecoveryAction.UNRECOVERABLE
                result.error = OperationError(
                    kind=ErrorKind.ROLLBACK,
                    message=f"{production} is missing and no backup is available",
                )
        elif journal is not None:
            result.action = RecoveryAction.CLEARED

        leftovers = set(self.staging_dirs(app_name))
        if journal is not None and journal.staging is not None:
            leftovers.add(journal.staging)
        if result.success:
            for path in sorted(leftovers):
                if self.remove_dir(path):
                    result.removed.append(path)
            self.clear_journal(app_name)

        self._logger.info(
            "cutover_recovery_finished",
            app_name=app_name,
            action=result.action.value,
            phase=phase.value if phase else None,
            removed=[str(p) for p in result.removed],
            duration_seconds=round(time.monotonic() - start, 3),
        )
        return result
