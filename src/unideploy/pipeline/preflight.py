"""Preflight checks run while a deployment is Validating.

Nothing on disk or in the container runtime is changed by these checks,
apart from pulling images. A failed check fails the deployment before any
mutation.
"""

from __future__ import annotations

import os
import shutil
import time
from pathlib import Path

from pydantic import BaseModel, Field

from unideploy.config import DeployConfig
from unideploy.errors import ContainerRuntimeError, ErrorKind, OperationError
from unideploy.logging import get_logger
from unideploy.models import DeploymentContext
from unideploy.pipeline.container import ContainerRuntime
from unideploy.pipeline.ports import PortResolution, resolve_port


class PreflightCheck(BaseModel):
    """Outcome of one preflight check."""

    name: str
    passed: bool
    message: str = ""


class PreflightResult(BaseModel):
    """Aggregated preflight outcome.

    Attributes:
        success: Every check passed
        checks: Individual check outcomes in execution order
        port: Port the deployment should publish
        error: Structured error describing the failed checks
        duration_seconds: Time spent on preflight
    """

    success: bool
    checks: list[PreflightCheck] = Field(default_factory=list)
    port: int | None = None
    error: OperationError | None = None
    duration_seconds: float = Field(default=0.0, ge=0.0)

    @property
    def failed(self) -> list[PreflightCheck]:
        return [c for c in self.checks if not c.passed]


def existing_parent(path: Path) -> Path:
    """Closest existing ancestor of ``path`` (the path itself if it exists)."""
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path("/")


class PreflightChecker:
    """Runs the Validating-state checks for a deployment."""

    def __init__(self, config: DeployConfig, runtime: ContainerRuntime) -> None:
        self.config = config
        self.runtime = runtime
        self._logger = get_logger(__name__).bind(component="PreflightChecker")

    def check_disk(self) -> PreflightCheck:
        target = existing_parent(self.config.base_dir)
        free_mb = shutil.disk_usage(target).free // (1024 * 1024)
        if free_mb < self.config.min_free_disk_mb:
            return PreflightCheck(
                name="disk",
                passed=False,
                message=f"{free_mb} MB free on {target}, {self.config.min_free_disk_mb} MB required",
            )
        return PreflightCheck(name="disk", passed=True, message=f"{free_mb} MB free")

    def check_writable(self) -> PreflightCheck:
        target = existing_parent(self.config.base_dir)
        if not os.access(target, os.W_OK):
            return PreflightCheck(name="writable", passed=False, message=f"{target} is not writable")
        return PreflightCheck(name="writable", passed=True)

    async def check_images(self, ctx: DeploymentContext) -> list[PreflightCheck]:
        checks = []
        for image in ctx.images:
            ref = f"{image}:{ctx.tag}"
            action = await self.runtime.pull(ref)
            checks.append(
                PreflightCheck(
                    name=f"image:{ref}",
                    passed=action.success,
                    message=action.error or "available",
                )
            )
        return checks

    @staticmethod
    def _port_check(ctx: DeploymentContext, resolution: PortResolution) -> PreflightCheck:
        if resolution.port is None:
            message = f"Port {ctx.port} is in use"
            if resolution.owner:
                message += f" by {resolution.owner}"
            return PreflightCheck(name="port", passed=False, message=message)
        return PreflightCheck(
            name="port",
            passed=True,
            message=f"reassigned from {resolution.requested}" if resolution.reassigned else "available",
        )

    async def run(self, ctx: DeploymentContext) -> PreflightResult:
        """Run all checks; returns a result, never raises for a failed check."""
        start = time.monotonic()
        checks: list[PreflightCheck] = []

        docker_ok = await self.runtime.ping()
        checks.append(
            PreflightCheck(
                name="docker",
                passed=docker_ok,
                message="" if docker_ok else "Docker daemon is not reachable",
            )
        )
        checks.append(self.check_disk())
        checks.append(self.check_writable())

        if docker_ok and ctx.compose_file is None:
            checks.extend(await self.check_images(ctx))

        resolved_port: int | None = None
        try:
            resolution = await resolve_port(
                ctx.app_name,
                ctx.port,
                self.runtime if docker_ok else None,
                auto_assign=ctx.port_auto_assign,
            )
        except ContainerRuntimeError as e:
            checks.append(PreflightCheck(name="port", passed=False, message=str(e)))
        else:
            resolved_port = resolution.port
            checks.append(self._port_check(ctx, resolution))

        result = PreflightResult(
            success=all(c.passed for c in checks),
            checks=checks,
            port=resolved_port,
            duration_seconds=time.monotonic() - start,
        )
        if not result.success:
            result.error = OperationError(
                kind=ErrorKind.VALIDATION,
                message="; ".join(f"{c.name}: {c.message}" for c in result.failed),
                details={"failed_checks": [c.name for c in result.failed]},
            )
            self._logger.error(
                "preflight_failed",
                app_name=ctx.app_name,
                failed=[c.name for c in result.failed],
            )
        else:
            self._logger.info(
                "preflight_passed",
                app_name=ctx.app_name,
                port=result.port,
                duration_seconds=round(result.duration_seconds, 2),
            )
        return result
