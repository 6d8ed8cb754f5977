"""Deployment orchestrator.

Drives one deployment through the state machine:

    validating -> preparing -> deploying -> [cutting_over] -> verifying -> done

Failures branch to ``rolling_back -> rolled_back`` (a successful recovery)
or ``failed``. Plugin hooks are dispatched at every transition, in plugin
dependency order.

Two rollback strategies exist:
- multi-stage: the previous production directory was kept as a backup and
  is moved back, then its containers are restarted
- single-stage: there is no backup; the last good (image, tag) from the
  service registry is redeployed in place

Example usage:
    >>> orchestrator = DeploymentOrchestrator(config, registry, plugins, runtime, proxy)
    >>> result = await orchestrator.deploy(DeploymentContext.from_file(Path("deploy.json")))
    >>> result.state
    <DeploymentState.DONE: 'done'>
    >>> await orchestrator.shutdown()
"""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from unideploy.config import UnideployConfig
from unideploy.errors import ErrorKind, LockTimeoutError, OperationError
from unideploy.logging import bind_deployment_context, clear_deployment_context, get_logger
from unideploy.models import (
    DeploymentContext,
    DeploymentState,
    HookEvent,
    ServiceRecord,
    VersionEntry,
    utc_now_iso,
)
from unideploy.orchestrator.app_lock import app_deployment_lock
from unideploy.orchestrator.cutover import (
    CutoverManager,
    RecoveryAction,
    RecoveryResult,
    timestamp,
)
from unideploy.orchestrator.state_machine import DeploymentStateMachine, StateChange
from unideploy.pipeline.certificates import CertificateManager
from unideploy.pipeline.compose import COMPOSE_FILENAME, ComposeWriter
from unideploy.pipeline.container import ContainerRuntime
from unideploy.pipeline.dependencies import DependencyWaiter
from unideploy.pipeline.health import HealthChecker, HealthResult
from unideploy.pipeline.preflight import PreflightChecker
from unideploy.pipeline.proxy import ProxyConfigurator, RouteSpec
from unideploy.plugins.dispatcher import DispatchResult, HookDispatcher
from unideploy.plugins.registry import PluginRegistry
from unideploy.registry.service_registry import ServiceRegistry, service_url

SINGLE_STAGE_VERIFY_ATTEMPTS = 5


class DeploymentResult(BaseModel):
    """Final outcome of a deployment run.

    Attributes:
        app_name: Deployed app
        deployment_id: Identifier of this run
        state: Final state (done, rolled_back or failed)
        success: The app is serving a healthy version (done or rolled_back)
        critical: A restore failed; production may be missing
        dry_run: Run stopped after preparing
        error: Error that ended the run, or caused the rollback
        image: Image that was deployed
        tag: Tag that was deployed
        port: Port the app publishes
        url: Public URL when the app is routed
        backup_dir: Backup of the previous production directory
        restored_version: Version restored by a rollback
        warnings: Non-fatal problems (registry, proxy reload, hooks)
        transitions: Recorded state changes
        duration_seconds: Total run time
    """

    app_name: str
    deployment_id: str
    state: DeploymentState
    success: bool
    critical: bool = False
    dry_run: bool = False
    error: OperationError | None = None
    image: str = ""
    tag: str = ""
    port: int | None = None
    url: str | None = None
    backup_dir: Path | None = None
    restored_version: str | None = None
    warnings: list[str] = Field(default_factory=list)
    transitions: list[StateChange] = Field(default_factory=list)
    duration_seconds: float = Field(default=0.0, ge=0.0)

    @property
    def exit_code(self) -> int:
        if self.success:
            return 0
        return 2 if self.critical else 1


class _Run:
    """Mutable bookkeeping of one deployment run."""

    def __init__(self, ctx: DeploymentContext) -> None:
        self.ctx = ctx
        self.machine = DeploymentStateMachine(ctx)
        self.started = time.monotonic()
        self.error: OperationError | None = None
        self.critical = False
        self.backup: Path | None = None
        self.previous_route: str | None = None
        self.route_written = False
        self.restored_version: str | None = None
        self.warnings: list[str] = []

    def fail(self, error: OperationError, critical: bool = False) -> None:
        self.error = error
        self.critical = self.critical or critical
        self.machine.transition(DeploymentState.FAILED, error.message)


class DeploymentOrchestrator:
    """Runs deployments against the runtime, proxy, registry and plugins.

    Attributes:
        config: Root configuration
        registry: Service registry
        plugins: Plugin registry
        dispatcher: Hook dispatcher over the plugin registry
        runtime: Container runtime
        proxy: Reverse-proxy configurator
        certificates: Certificate manager for TLS routes
        health: Health checker
        waiter: Service dependency waiter
        cutover: Directory layout and swap manager
    """

    def __init__(
        self,
        config: UnideployConfig,
        registry: ServiceRegistry,
        plugins: PluginRegistry,
        runtime: ContainerRuntime,
        proxy: ProxyConfigurator,
        certificates: CertificateManager | None = None,
        health: HealthChecker | None = None,
        waiter: DependencyWaiter | None = None,
        cutover: CutoverManager | None = None,
        dispatcher: HookDispatcher | None = None,
        compose: ComposeWriter | None = None,
        preflight: PreflightChecker | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.plugins = plugins
        self.runtime = runtime
        self.proxy = proxy
        self.certificates = certificates or CertificateManager(config.proxy)
        self.health = health or HealthChecker(config.health, runtime)
        self.waiter = waiter or DependencyWaiter(registry, self.health, config.dependencies)
        self.cutover = cutover or CutoverManager(config.deploy.base_dir)
        self.dispatcher = dispatcher or HookDispatcher(
            plugins,
            max_attempts=config.deploy.hook_max_attempts,
            retry_delay_seconds=config.deploy.hook_retry_delay_seconds,
        )
        self.compose = compose or ComposeWriter()
        self.preflight = preflight or PreflightChecker(config.deploy, runtime)
        self._cleanup_tasks: set[asyncio.Task[None]] = set()
        self._logger = get_logger(__name__).bind(component="DeploymentOrchestrator")

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def deploy(self, ctx: DeploymentContext) -> DeploymentResult:
        """Deploy an app and return the final state; never raises for deployment failures.

        Args:
            ctx: Validated deployment context

        Returns:
            DeploymentResult describing the final state
        """
        if not ctx.deployment_id:
            ctx.deployment_id = f"{ctx.app_name}-{timestamp()}-{uuid.uuid4().hex[:6]}"
        bind_deployment_context(ctx.app_name, ctx.deployment_id)
        run = _Run(ctx)

        self._logger.info(
            "deployment_started",
            image=ctx.image,
            tag=ctx.tag,
            multi_stage=ctx.multi_stage,
            dry_run=ctx.dry_run,
        )
        try:
            async with app_deployment_lock(
                self.cutover.lock_path(ctx.app_name),
                self.config.deploy.deploy_lock_timeout_seconds,
            ):
                await self._execute(run)
        except LockTimeoutError as e:
            run.fail(e.to_error(lock_path=e.lock_path))
        finally:
            clear_deployment_context()

        return self._result(run)

    async def recover(self, app_name: str, restart: bool = True) -> RecoveryResult:
        """Settle an interrupted cutover of ``app_name`` under its deployment lock.

        When a backup was moved back into production, the restored version's
        containers are started again unless ``restart`` is False.
        """
        async with app_deployment_lock(
            self.cutover.lock_path(app_name),
            self.config.deploy.deploy_lock_timeout_seconds,
        ):
            result = self.cutover.recover(app_name)
            if not (restart and result.action is RecoveryAction.RESTORED):
                return result

            compose_path = self.cutover.production_dir(app_name) / COMPOSE_FILENAME
            if compose_path.exists():
                started = await self.runtime.start(compose_path, app_name)
                if not started.success:
                    result.success = False
                    result.error = OperationError(
                        kind=ErrorKind.ROLLBACK,
                        message=f"Backup restored but containers failed to start: {started.error}",
                        details={"production": str(result.production)},
                    )
            return result

    async def shutdown(self) -> None:
        """Cancel pending backup cleanups. Backups left behind are pruned by the next deployment."""
        for task in list(self._cleanup_tasks):
            task.cancel()
        if self._cleanup_tasks:
            await asyncio.gather(*self._cleanup_tasks, return_exceptions=True)
        self._cleanup_tasks.clear()

    async def wait_for_cleanups(self) -> None:
        if self._cleanup_tasks:
            await asyncio.gather(*self._cleanup_tasks, return_exceptions=True)

    def _result(self, run: _Run) -> DeploymentResult:
        ctx = run.ctx
        state = ctx.state
        url = None
        if ctx.domain and state is DeploymentState.DONE:
            url = service_url(
                ServiceRecord(
                    name=ctx.app_name, domain=ctx.domain, route_type=ctx.route_type, route=ctx.route
                ),
                ssl=ctx.ssl,
            )
        result = DeploymentResult(
            app_name=ctx.app_name,
            deployment_id=ctx.deployment_id,
            state=state,
            success=state in (DeploymentState.DONE, DeploymentState.ROLLED_BACK),
            critical=run.critical,
            dry_run=ctx.dry_run,
            error=run.error,
            image=ctx.image,
            tag=ctx.tag,
            port=ctx.port,
            url=url,
            backup_dir=run.backup,
            restored_version=run.restored_version,
            warnings=run.warnings,
            transitions=list(run.machine.history),
            duration_seconds=time.monotonic() - run.started,
        )
        log = self._logger.info if result.success else self._logger.error
        log(
            "deployment_finished",
            app_name=ctx.app_name,
            deployment_id=ctx.deployment_id,
            state=state.value,
            critical=result.critical,
            error=str(result.error) if result.error else None,
            duration_seconds=round(result.duration_seconds, 2),
        )
        return result

    async def _dispatch(self, run: _Run, event: HookEvent, **payload: Any) -> DispatchResult:
        result = await self.dispatcher.execute(event, run.ctx, **payload)
        for error in result.errors:
            run.warnings.append(str(error))
        return result

    # ------------------------------------------------------------------
    # State sequence
    # ------------------------------------------------------------------

    async def _execute(self, run: _Run) -> None:
        ctx = run.ctx
        ctx.app_dir = self.cutover.production_dir(ctx.app_name)

        enabled = [*self.config.plugins.enabled, *ctx.plugins]
        self.plugins.set_arg_overrides(ctx.plugin_args)
        activation = await self.plugins.activate(enabled)
        run.warnings.extend(str(e) for e in activation.errors)
        await self._dispatch(run, HookEvent.CONFIG_LOADED)

        if not await self._recover_interrupted(run):
            return
        if not self.config.deploy.keep_backup:
            self.cutover.prune_backups(ctx.app_name, self.config.deploy.backup_grace_seconds)

        if not await self._validate(run):
            return
        run.machine.transition(DeploymentState.PREPARING)
        if not await self._prepare(run):
            return
        if ctx.dry_run:
            await self._discard_preparation(run)
            run.machine.transition(DeploymentState.DONE, "dry run")
            return

        run.machine.transition(DeploymentState.DEPLOYING)
        if not await self._start(run):
            return

        if ctx.multi_stage:
            run.machine.transition(DeploymentState.CUTTING_OVER)
            if not await self._cut_over(run):
                return

        run.machine.transition(DeploymentState.VERIFYING)
        if not await self._verify(run):
            return

        await self._finish(run)

    async def _recover_interrupted(self, run: _Run) -> bool:
        """Settle a swap interrupted by an earlier crash before deploying again."""
        ctx = run.ctx
        if self.cutover.read_journal(ctx.app_name) is None:
            return True
        self._logger.warning("interrupted_cutover_found", app_name=ctx.app_name)
        recovery = self.cutover.recover(ctx.app_name)
        if recovery.success:
            return True
        run.fail(
            recovery.error
            or OperationError(kind=ErrorKind.ROLLBACK, message="Interrupted cutover cannot be recovered"),
            critical=True,
        )
        return False

    async def _validate(self, run: _Run) -> bool:
        ctx = run.ctx
        preflight = await self.preflight.run(ctx)
        if not preflight.success:
            run.fail(preflight.error or OperationError(kind=ErrorKind.VALIDATION, message="Preflight failed"))
            return False
        if preflight.port is not None and preflight.port != ctx.port:
            run.warnings.append(f"Port {ctx.port} in use, using {preflight.port}")
            ctx.port = preflight.port

        if ctx.check_dependencies and ctx.dependencies:
            waited = await self.waiter.wait_for(ctx.app_name, ctx.dependencies)
            if not waited.success:
                run.fail(
                    waited.error
                    or OperationError(kind=ErrorKind.VALIDATION, message="Dependencies unavailable")
                )
                return False
        return True

    async def _prepare(self, run: _Run) -> bool:
        ctx = run.ctx
        await self._dispatch(run, HookEvent.PRE_SETUP)

        # Production is untouched until Deploying; single-stage moves the file in then
        ctx.staging_dir = self.cutover.new_staging_dir(ctx.app_name)
        try:
            ctx.compose_path = self.compose.write(ctx, ctx.staging_dir)
        except OSError as e:
            await self._discard_preparation(run)
            run.fail(OperationError(kind=ErrorKind.PREPARATION, message=f"Cannot write compose file: {e}"))
            return False

        if ctx.domain:
            route = RouteSpec(
                app_name=ctx.app_name,
                domain=ctx.domain,
                route_type=ctx.route_type,
                route=ctx.route,
                port=ctx.port,
                ssl=ctx.ssl,
            )
            if ctx.ssl:
                cert = await self.certificates.ensure(route.server_name, ctx.ssl_email)
                if not cert.success:
                    await self._discard_preparation(run)
                    run.fail(cert.error or OperationError(kind=ErrorKind.PREPARATION, message="No certificate"))
                    return False
            written = await self.proxy.write_route(route)
            if not written.success:
                await self._discard_preparation(run)
                run.fail(written.error or OperationError(kind=ErrorKind.PREPARATION, message="Route not written"))
                return False
            run.previous_route = written.previous
            run.route_written = True

        await self._dispatch(run, HookEvent.POST_SETUP)

        gate = await self._dispatch(run, HookEvent.PRE_DEPLOY, image=ctx.image, tag=ctx.tag)
        if gate.vetoed:
            await self._discard_preparation(run)
            run.fail(
                OperationError(
                    kind=ErrorKind.PREPARATION,
                    message=f"pre_deploy vetoed by {', '.join(gate.vetoes)}",
                    details={"vetoes": gate.vetoes},
                )
            )
            return False
        return True

    async def _discard_preparation(self, run: _Run) -> None:
        ctx = run.ctx
        if ctx.staging_dir is not None:
            self.cutover.remove_dir(ctx.staging_dir)
        if run.route_written:
            await self.proxy.restore_route(ctx.app_name, run.previous_route)
            run.route_written = False

    def _profiles(self, ctx: DeploymentContext) -> list[str]:
        return ["app"] if ctx.use_profiles else []

    def _install_compose(self, ctx: DeploymentContext) -> Path:
        """Move a single-stage compose file from its staging dir into production.

        Raises:
            OSError: If the production directory or file cannot be written
        """
        production = self.cutover.production_dir(ctx.app_name)
        production.mkdir(parents=True, exist_ok=True)
        os.chmod(production, 0o700)
        target = production / COMPOSE_FILENAME
        os.replace(ctx.compose_path, target)
        self.cutover.remove_dir(ctx.staging_dir)
        ctx.staging_dir = None
        self._logger.debug("compose_file_installed", target=str(target))
        return target

    async def _start(self, run: _Run) -> bool:
        ctx = run.ctx
        if ctx.compose_path is None:
            run.fail(OperationError(kind=ErrorKind.DEPLOYMENT, message="No compose file was prepared"))
            return False

        if not ctx.multi_stage:
            try:
                ctx.compose_path = self._install_compose(ctx)
            except OSError as e:
                await self._discard_preparation(run)
                run.fail(
                    OperationError(kind=ErrorKind.DEPLOYMENT, message=f"Cannot install compose file: {e}")
                )
                return False

        await self._dispatch(run, HookEvent.PRE_START)

        started = await self.runtime.start(ctx.compose_path, ctx.app_name, self._profiles(ctx))
        if started.success:
            await self._dispatch(run, HookEvent.POST_START)
            return True

        error = OperationError(
            kind=ErrorKind.DEPLOYMENT,
            message=f"Containers failed to start: {started.error}",
            details={"logs": await self.runtime.logs(ctx.container_name, self.config.health.max_log_lines)},
        )

        if ctx.multi_stage:
            await self.runtime.stop(ctx.app_name)
            await self._discard_preparation(run)
            production_compose = self.cutover.production_dir(ctx.app_name) / COMPOSE_FILENAME
            if production_compose.exists():
                restarted = await self.runtime.start(production_compose, ctx.app_name, self._profiles(ctx))
                if not restarted.success:
                    run.warnings.append(f"Previous containers not restarted: {restarted.error}")
            run.fail(error)
            return False

        return await self._rollback_or_fail(run, error)

    async def _cut_over(self, run: _Run) -> bool:
        ctx = run.ctx
        if ctx.staging_dir is None:
            run.fail(OperationError(kind=ErrorKind.DEPLOYMENT, message="No staging directory to cut over"))
            return False
        production = self.cutover.production_dir(ctx.app_name)
        swap = self.cutover.cutover(ctx.app_name, ctx.staging_dir)
        error = swap.error or OperationError(kind=ErrorKind.DEPLOYMENT, message="Cutover failed")

        if swap.critical:
            run.backup = swap.backup
            run.fail(error, critical=True)
            return False
        if not swap.success:
            await self.runtime.stop(ctx.app_name)
            ctx.staging_dir = None
            if not (production / COMPOSE_FILENAME).exists():
                await self._restore_route(run)
                run.fail(error)
                return False
            # The old production directory is back in place; its containers were replaced
            run.error = error
            run.machine.transition(DeploymentState.ROLLING_BACK, error.message)
            await self._restart_production(run, restored=True)
            return False

        run.backup = swap.backup
        ctx.backup_dir = swap.backup
        ctx.staging_dir = None
        ctx.compose_path = production / COMPOSE_FILENAME
        await self._dispatch(run, HookEvent.POST_CUTOVER, backup_dir=str(swap.backup) if swap.backup else None)
        return True

    async def _verify(self, run: _Run) -> bool:
        ctx = run.ctx
        spec = ctx.health_spec
        if ctx.multi_stage:
            result = await self.health.check_with_retry(
                ctx.app_name,
                ctx.port,
                spec,
                max_attempts=self.config.health.verify_attempts,
                timeout_seconds=ctx.health_check_timeout * 2,
            )
        else:
            result = await self.health.check_with_retry(
                ctx.app_name,
                ctx.port,
                spec,
                max_attempts=SINGLE_STAGE_VERIFY_ATTEMPTS,
                timeout_seconds=ctx.health_check_timeout,
            )
        if result.healthy:
            return True

        await self._dispatch(
            run,
            HookEvent.HEALTH_CHECK_FAILED,
            message=result.message,
            logs=result.diagnostics.logs if result.diagnostics else "",
            status=result.diagnostics.status if result.diagnostics else None,
        )
        return await self._rollback_or_fail(run, self._verification_error(result))

    @staticmethod
    def _verification_error(result: HealthResult) -> OperationError:
        error = result.error or OperationError(kind=ErrorKind.VERIFICATION, message=result.message)
        if result.diagnostics is not None:
            error.details.setdefault("container_status", result.diagnostics.status)
            error.details.setdefault("exit_code", result.diagnostics.exit_code)
            error.details.setdefault("logs", result.diagnostics.logs)
        return error

    async def _finish(self, run: _Run) -> None:
        ctx = run.ctx
        record = ServiceRecord(
            name=ctx.app_name,
            domain=ctx.domain,
            route_type=ctx.route_type,
            route=ctx.route,
            port=ctx.port,
            image=ctx.image,
            tag=ctx.tag,
            is_persistent=ctx.persistent,
            deployed_at=utc_now_iso(),
            health_check=ctx.health_check,
            health_check_type=ctx.health_check_type,
            health_check_timeout=ctx.health_check_timeout,
        )
        registered = await self.registry.register(record, track_versions=ctx.version_tracking)
        if not registered.success:
            run.warnings.append(f"Registry not updated: {registered.error}")

        if ctx.domain:
            reloaded = await self.proxy.reload()
            if not reloaded.success:
                run.warnings.append(f"Proxy not reloaded: {reloaded.error}")

        self.cutover.clear_journal(ctx.app_name)
        run.machine.transition(DeploymentState.DONE)

        url = None
        if ctx.domain:
            url = service_url(record, ssl=ctx.ssl)
        await self._dispatch(run, HookEvent.POST_DEPLOY, url=url, image=ctx.image, tag=ctx.tag)

        if run.backup is not None:
            if self.config.deploy.keep_backup:
                self._logger.info("backup_kept", backup=str(run.backup))
            else:
                self._schedule_backup_cleanup(run, run.backup)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def _rollback_target(self, ctx: DeploymentContext) -> VersionEntry | None:
        """Last good version: the registered version, else the newest differing history entry."""
        record = await self.registry.get(ctx.app_name)
        if record is None:
            return None
        candidates = [
            VersionEntry(image=record.image, tag=record.tag, deployed_at=record.deployed_at),
            *reversed(record.version_history),
        ]
        for entry in candidates:
            if entry.image and (entry.image, entry.tag) != (ctx.image, ctx.tag):
                return entry
        return None

    async def _rollback_or_fail(self, run: _Run, error: OperationError) -> bool:
        ctx = run.ctx
        if not self.config.deploy.auto_rollback:
            self._logger.warning("auto_rollback_disabled")
            await self._restore_route(run)
            run.fail(error)
            return False

        if ctx.multi_stage:
            if run.backup is None:
                self._logger.error("no_backup_for_rollback")
                await self._restore_route(run)
                run.fail(error)
                return False
            run.error = error
            run.machine.transition(DeploymentState.ROLLING_BACK, error.message)
            await self._restore_backup(run)
            return False

        target = await self._rollback_target(ctx)
        if target is None:
            self._logger.error("no_previous_version_for_rollback")
            await self._restore_route(run)
            run.fail(error)
            return False
        run.error = error
        run.machine.transition(DeploymentState.ROLLING_BACK, error.message)
        await self._redeploy_previous(run, target)
        return False

    async def _restore_backup(self, run: _Run) -> None:
        ctx = run.ctx
        backup = run.backup
        if backup is None:
            run.fail(OperationError(kind=ErrorKind.ROLLBACK, message="No backup to restore"))
            return
        await self._dispatch(run, HookEvent.PRE_ROLLBACK, backup_dir=str(backup))

        stopped = await self.runtime.stop(ctx.app_name)
        if not stopped.success:
            run.warnings.append(f"New containers not stopped cleanly: {stopped.error}")

        restored = self.cutover.restore(ctx.app_name, backup)
        if not restored.success:
            run.fail(
                restored.error or OperationError(kind=ErrorKind.ROLLBACK, message="Restore failed"),
                critical=True,
            )
            return
        run.backup = None
        ctx.backup_dir = None
        await self._restart_production(run, restored=False)

    async def _restart_production(self, run: _Run, restored: bool) -> None:
        """Start the previous version from the production directory and settle the rollback."""
        ctx = run.ctx
        production = self.cutover.production_dir(ctx.app_name)
        if restored:
            await self._dispatch(run, HookEvent.PRE_ROLLBACK)

        started = await self.runtime.start(
            production / COMPOSE_FILENAME, ctx.app_name, self._profiles(ctx)
        )
        if not started.success:
            run.fail(
                OperationError(
                    kind=ErrorKind.ROLLBACK,
                    message=f"Previous version restored on disk but failed to start: {started.error}",
                    details={"production": str(production)},
                ),
                critical=True,
            )
            return

        await self._restore_route(run)
        record = await self.registry.get(ctx.app_name)
        run.restored_version = record.image_ref if record is not None else None
        await self._dispatch(run, HookEvent.POST_ROLLBACK, restored_version=run.restored_version)
        run.machine.transition(DeploymentState.ROLLED_BACK)

    async def _redeploy_previous(self, run: _Run, target: VersionEntry) -> None:
        ctx = run.ctx
        production = self.cutover.production_dir(ctx.app_name)
        version = f"{target.image}:{target.tag}"
        await self._dispatch(run, HookEvent.PRE_ROLLBACK, restored_version=version)
        self._logger.info("redeploying_previous_version", version=version)

        previous = ctx.model_copy(update={"image": target.image, "tag": target.tag})
        try:
            compose_path = self.compose.write(previous, production)
        except OSError as e:
            run.fail(
                OperationError(kind=ErrorKind.ROLLBACK, message=f"Cannot write compose file: {e}"),
                critical=True,
            )
            return

        started = await self.runtime.start(compose_path, ctx.app_name, self._profiles(ctx))
        if not started.success:
            run.fail(
                OperationError(
                    kind=ErrorKind.ROLLBACK,
                    message=f"Previous version {version} failed to start: {started.error}",
                ),
                critical=True,
            )
            return

        health = await self.health.check(ctx.app_name, ctx.port, previous.health_spec)
        if not health.healthy:
            run.fail(
                OperationError(
                    kind=ErrorKind.ROLLBACK,
                    message=f"Previous version {version} is unhealthy: {health.message}",
                ),
                critical=True,
            )
            return

        await self._restore_route(run)
        run.restored_version = version
        await self._dispatch(run, HookEvent.POST_ROLLBACK, restored_version=version)
        run.machine.transition(DeploymentState.ROLLED_BACK)

    async def _restore_route(self, run: _Run) -> None:
        if not run.route_written:
            return
        restored = await self.proxy.restore_route(run.ctx.app_name, run.previous_route)
        if restored.success:
            reloaded = await self.proxy.reload()
            if not reloaded.success:
                run.warnings.append(f"Proxy not reloaded: {reloaded.error}")
        else:
            run.warnings.append(f"Proxy route not restored: {restored.error}")
        run.route_written = False

    # ------------------------------------------------------------------
    # Backup cleanup
    # ------------------------------------------------------------------

    def _schedule_backup_cleanup(self, run: _Run, backup: Path) -> None:
        ctx = run.ctx.model_copy()
        task = asyncio.create_task(self._cleanup_backup_later(ctx, backup))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)
        self._logger.info(
            "backup_cleanup_scheduled",
            backup=str(backup),
            delay_seconds=self.config.deploy.backup_grace_seconds,
        )

    async def _cleanup_backup_later(self, ctx: DeploymentContext, backup: Path) -> None:
        await asyncio.sleep(self.config.deploy.backup_grace_seconds)
        await self.dispatcher.execute(HookEvent.PRE_CLEANUP, ctx, backup_dir=str(backup))
        try:
            async with app_deployment_lock(
                self.cutover.lock_path(ctx.app_name),
                self.config.deploy.deploy_lock_timeout_seconds,
            ):
                removed = self.cutover.remove_dir(backup)
        except (LockTimeoutError, OSError) as e:
            self._logger.warning("backup_cleanup_failed", backup=str(backup), error=str(e))
            return
        self._logger.info("backup_removed", backup=str(backup), removed=removed)
        await self.dispatcher.execute(HookEvent.POST_CLEANUP, ctx, backup_dir=str(backup))
