"""Operator-initiated rollback.

Redeploys an earlier version of an app through the regular deployment
flow, so the rollback is validated, verified and recorded in the registry
like any other deployment. Without an explicit version the newest entry of
the app's version history is used.

Example:
    >>> rollback = RollbackService(orchestrator)
    >>> result = await rollback.rollback("shop")
    >>> result.target
    'acme/shop:v1'
"""

from __future__ import annotations

from pydantic import BaseModel

from unideploy.errors import ErrorKind, OperationError
from unideploy.logging import get_logger
from unideploy.models import (
    DeploymentContext,
    DeploymentState,
    HookEvent,
    ServiceRecord,
    VersionEntry,
)
from unideploy.orchestrator.deployer import DeploymentOrchestrator, DeploymentResult


class RollbackResult(BaseModel):
    """Outcome of an operator rollback.

    Attributes:
        app_name: App that was rolled back
        success: The target version is deployed and healthy
        target: image:tag that was redeployed
        deployment: Result of the redeployment, absent when no target was found
        error: Why the rollback did not happen or failed
    """

    app_name: str
    success: bool
    target: str | None = None
    deployment: DeploymentResult | None = None
    error: OperationError | None = None

    @property
    def exit_code(self) -> int:
        if self.success:
            return 0
        return 2 if self.deployment is not None and self.deployment.critical else 1


def context_from_record(record: ServiceRecord) -> DeploymentContext:
    """Rebuild a deployment document from what the registry knows about an app."""
    data = {
        "app_name": record.name,
        "image": record.image,
        "tag": record.tag,
        "domain": record.domain,
        "route_type": record.route_type,
        "route": record.route,
        "port": record.port,
        "persistent": record.is_persistent,
        "health_check": record.health_check,
        "health_check_type": record.health_check_type,
    }
    if record.health_check_timeout is not None:
        data["health_check_timeout"] = record.health_check_timeout
    return DeploymentContext.model_validate(data)


def select_version(
    record: ServiceRecord, history: list[VersionEntry], version: str | None
) -> VersionEntry | None:
    """Resolve the version to redeploy.

    ``version`` may be a tag or a full ``image:tag``. A tag that is not in
    the history is taken as a tag of the current image.
    """
    if version is None:
        return history[-1] if history else None

    image, sep, tag = version.rpartition(":")
    if not sep or "/" in tag:
        image, tag = "", version
    for entry in reversed(history):
        if entry.tag == tag and (not image or entry.image == image):
            return entry
    return VersionEntry(image=image or record.image, tag=tag, deployed_at=record.deployed_at)


class RollbackService:
    """Rolls apps back to an earlier version on operator request."""

    def __init__(self, orchestrator: DeploymentOrchestrator) -> None:
        self.orchestrator = orchestrator
        self._logger = get_logger(__name__).bind(component="RollbackService")

    async def rollback(
        self,
        app_name: str,
        version: str | None = None,
        context: DeploymentContext | None = None,
    ) -> RollbackResult:
        """Redeploy a previous version of ``app_name``.

        Args:
            app_name: Registered app
            version: Tag or image:tag to restore; defaults to the previous version
            context: Deployment document to reuse; rebuilt from the registry if omitted

        Returns:
            RollbackResult with the redeployment outcome
        """
        registry = self.orchestrator.registry
        record = await registry.get(app_name)
        if record is None:
            return RollbackResult(
                app_name=app_name,
                success=False,
                error=OperationError(kind=ErrorKind.ROLLBACK, message=f"Service not found: {app_name}"),
            )

        target = select_version(record, list(record.version_history), version)
        if target is None:
            return RollbackResult(
                app_name=app_name,
                success=False,
                error=OperationError(
                    kind=ErrorKind.ROLLBACK, message=f"No previous version recorded for {app_name}"
                ),
            )
        target_ref = f"{target.image}:{target.tag}"
        if (target.image, target.tag) == record.version:
            return RollbackResult(
                app_name=app_name,
                success=False,
                target=target_ref,
                error=OperationError(
                    kind=ErrorKind.ROLLBACK, message=f"{target_ref} is already deployed"
                ),
            )

        base = context if context is not None else context_from_record(record)
        ctx = base.model_copy(update={"image": target.image, "tag": target.tag, "deployment_id": ""})

        self._logger.info(
            "operator_rollback_started",
            app_name=app_name,
            current=record.image_ref,
            target=target_ref,
        )
        self.orchestrator.plugins.set_arg_overrides(ctx.plugin_args)
        await self.orchestrator.plugins.activate(
            [*self.orchestrator.config.plugins.enabled, *ctx.plugins]
        )
        await self.orchestrator.dispatcher.execute(
            HookEvent.PRE_ROLLBACK, ctx, restored_version=target_ref, operator=True
        )
        deployment = await self.orchestrator.deploy(ctx)
        succeeded = deployment.state is DeploymentState.DONE
        if succeeded:
            await self.orchestrator.dispatcher.execute(
                HookEvent.POST_ROLLBACK, ctx, restored_version=target_ref, operator=True
            )

        self._logger.info(
            "operator_rollback_finished",
            app_name=app_name,
            target=target_ref,
            state=deployment.state.value,
        )
        return RollbackResult(
            app_name=app_name,
            success=succeeded,
            target=target_ref,
            deployment=deployment,
            error=None if succeeded else deployment.error,
        )
