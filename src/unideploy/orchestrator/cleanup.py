"""Operator-initiated cleanup of a deployed app.

Removes everything a deployment left on the host: the compose project,
the proxy route, the app's production, staging and backup directories,
its persistent data directory and its registry record. Persistent
services are refused unless forced.

Example:
    >>> cleanup = CleanupService(orchestrator)
    >>> result = await cleanup.cleanup("shop", keep_data=True)
    >>> result.success
    True
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field

from unideploy.errors import ErrorKind, LockTimeoutError, OperationError
from unideploy.logging import get_logger
from unideploy.models import DeploymentContext, HookEvent, ServiceRecord
from unideploy.orchestrator.app_lock import app_deployment_lock
from unideploy.orchestrator.deployer import DeploymentOrchestrator
from unideploy.orchestrator.rollback import context_from_record


class CleanupResult(BaseModel):
    """Outcome of an app cleanup.

    Attributes:
        app_name: App that was cleaned up
        success: Every cleanup step succeeded
        dry_run: Nothing was changed; ``removed`` lists what would go
        stopped: The compose project was taken down
        route_removed: The proxy route was removed
        unregistered: The registry record was removed
        removed: Directories and files that were deleted
        kept_data: Data directory that was left in place
        warnings: Non-fatal problems (proxy reload, hooks)
        error: Why the cleanup was refused or failed
    """

    app_name: str
    success: bool
    dry_run: bool = False
    stopped: bool = False
    route_removed: bool = False
    unregistered: bool = False
    removed: list[Path] = Field(default_factory=list)
    kept_data: Path | None = None
    warnings: list[str] = Field(default_factory=list)
    error: OperationError | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


class CleanupService:
    """Removes a deployed app from the host on operator request."""

    def __init__(self, orchestrator: DeploymentOrchestrator) -> None:
        self.orchestrator = orchestrator
        self._logger = get_logger(__name__).bind(component="CleanupService")

    def data_dir(self, app_name: str) -> Path:
        return self.orchestrator.config.deploy.data_dir / app_name

    def targets(self, app_name: str, keep_data: bool = False) -> list[Path]:
        """Existing paths a cleanup of ``app_name`` deletes."""
        cutover = self.orchestrator.cutover
        candidates = [
            cutover.production_dir(app_name),
            *cutover.staging_dirs(app_name),
            *cutover.backups(app_name),
            cutover.journal_path(app_name),
        ]
        if not keep_data:
            candidates.append(self.data_dir(app_name))
        return [path for path in candidates if path.exists()]

    async def cleanup(
        self,
        app_name: str,
        force: bool = False,
        keep_data: bool = False,
        dry_run: bool = False,
    ) -> CleanupResult:
        """Stop and remove ``app_name`` under its deployment lock.

        Args:
            app_name: App to remove
            force: Also remove services registered as persistent
            keep_data: Leave the app's data directory in place
            dry_run: Report what would be removed without changing anything

        Returns:
            CleanupResult listing what was removed
        """
        result = CleanupResult(app_name=app_name, success=False, dry_run=dry_run)
        try:
            async with app_deployment_lock(
                self.orchestrator.cutover.lock_path(app_name),
                self.orchestrator.config.deploy.deploy_lock_timeout_seconds,
            ):
                await self._cleanup(result, force, keep_data)
        except LockTimeoutError as e:
            result.error = e.to_error(lock_path=e.lock_path)
        return result

    async def _cleanup(self, result: CleanupResult, force: bool, keep_data: bool) -> None:
        orchestrator = self.orchestrator
        app_name = result.app_name
        record = await orchestrator.registry.get(app_name)
        production = orchestrator.cutover.production_dir(app_name)

        if record is None and not production.exists():
            result.error = OperationError(
                kind=ErrorKind.VALIDATION, message=f"Service not found: {app_name}"
            )
            return
        if record is not None and record.is_persistent and not force:
            self._logger.warning("cleanup_refused_persistent", app_name=app_name)
            result.error = OperationError(
                kind=ErrorKind.VALIDATION,
                message=f"{app_name} is a persistent service; use --force to remove it",
            )
            return

        if keep_data and self.data_dir(app_name).exists():
            result.kept_data = self.data_dir(app_name)
        if result.dry_run:
            result.removed = self.targets(app_name, keep_data)
            result.success = True
            return

        ctx = self._context(record)
        await orchestrator.plugins.activate(orchestrator.config.plugins.enabled)
        self._logger.info("cleanup_started", app_name=app_name, force=force, keep_data=keep_data)

        pre = await orchestrator.dispatcher.execute(
            HookEvent.PRE_CLEANUP, ctx, app_name=app_name, app_dir=str(production)
        )
        result.warnings.extend(str(error) for error in pre.errors)
        if pre.vetoed:
            result.error = OperationError(
                kind=ErrorKind.PLUGIN,
                message=f"Cleanup vetoed by {', '.join(pre.vetoes)}",
                details={"vetoes": pre.vetoes},
            )
            return

        stopped = await orchestrator.runtime.stop(app_name)
        if not stopped.success:
            result.error = OperationError(
                kind=ErrorKind.DEPLOYMENT,
                message=f"Cannot stop containers: {stopped.error}",
            )
            return
        result.stopped = True

        route = await orchestrator.proxy.remove_route(app_name)
        if route.success:
            result.route_removed = True
            reload = await orchestrator.proxy.reload()
            if not reload.success and reload.error is not None:
                result.warnings.append(reload.error.message)
        elif route.error is not None:
            result.warnings.append(f"Cannot remove proxy route: {route.error.message}")

        for path in self.targets(app_name, keep_data):
            try:
                if path.is_dir():
                    orchestrator.cutover.remove_dir(path)
                else:
                    path.unlink(missing_ok=True)
            except OSError as e:
                result.error = OperationError(
                    kind=ErrorKind.DEPLOYMENT,
                    message=f"Cannot remove {path}: {e}",
                    details={"path": str(path)},
                )
                return
            result.removed.append(path)
            self._logger.info("cleanup_path_removed", app_name=app_name, path=str(path))

        if record is not None:
            unregistered = await orchestrator.registry.unregister(app_name)
            if not unregistered.success:
                result.error = unregistered.error
                return
            result.unregistered = True

        post = await orchestrator.dispatcher.execute(
            HookEvent.POST_CLEANUP, ctx, app_name=app_name, removed=[str(p) for p in result.removed]
        )
        result.warnings.extend(str(error) for error in post.errors)

        result.success = True
        self._logger.info(
            "cleanup_finished",
            app_name=app_name,
            removed=len(result.removed),
            kept_data=result.kept_data is not None,
        )

    @staticmethod
    def _context(record: ServiceRecord | None) -> DeploymentContext | None:
        if record is None or not record.image:
            return None
        return context_from_record(record)
