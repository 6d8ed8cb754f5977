"""Dependency-aware service waiter.

Before an app starts, the services it depends on (databases, caches, other
deployed apps) must be up. Service dependencies live in their own namespace,
separate from plugin dependencies. Each dependency is looked up in the
service registry and probed with the health checker using the port and
health-check settings recorded for it.

Example usage:
    >>> waiter = DependencyWaiter(registry, checker, DependencyConfig())
    >>> waiter.register_dependency("shop", "postgres")
    >>> waiter.register_dependency("shop", "redis", optional=True)
    >>> result = await waiter.wait_for("shop", timeout_seconds=120)
    >>> result.failed_optional
    ['redis']
"""

from __future__ import annotations

import asyncio
import time
from typing import Iterable

from pydantic import BaseModel, Field

from unideploy.config import DependencyConfig
from unideploy.errors import ErrorKind, OperationError
from unideploy.logging import get_logger
from unideploy.models import HealthCheckSpec, ServiceDependency
from unideploy.pipeline.health import HealthChecker
from unideploy.registry.service_registry import ServiceRegistry


class DependencyStatus(BaseModel):
    """Probe outcome for one dependency.

    Attributes:
        name: Dependency service name
        optional: Whether the dependency is optional
        healthy: Whether the dependency was available
        cached: Result came from the per-run cache
        message: Reason when unavailable
    """

    name: str
    optional: bool = False
    healthy: bool = False
    cached: bool = False
    message: str = ""


class WaitResult(BaseModel):
    """Aggregated outcome of waiting for a service's dependencies.

    Attributes:
        success: All required dependencies are available
        service: Service whose dependencies were checked
        healthy: Dependencies found available
        failed_required: Required dependencies that were unavailable
        failed_optional: Optional dependencies that were unavailable
        statuses: Per-dependency probe outcomes
        error: Structured error when a required dependency failed
        duration_seconds: Time spent waiting
    """

    success: bool
    service: str
    healthy: list[str] = Field(default_factory=list)
    failed_required: list[str] = Field(default_factory=list)
    failed_optional: list[str] = Field(default_factory=list)
    statuses: dict[str, DependencyStatus] = Field(default_factory=dict)
    error: OperationError | None = None
    duration_seconds: float = Field(default=0.0, ge=0.0)


class DependencyWaiter:
    """Waits for declared service dependencies to become healthy.

    Attributes:
        registry: Service registry used to resolve dependencies
        checker: Health checker used to probe them
        config: Waiting configuration
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        checker: HealthChecker,
        config: DependencyConfig | None = None,
    ) -> None:
        self.registry = registry
        self.checker = checker
        self.config = config or DependencyConfig()
        self._dependencies: dict[str, list[ServiceDependency]] = {}
        self._required_by: dict[str, list[str]] = {}
        self._healthy_cache: set[str] = set()
        self._logger = get_logger(__name__).bind(component="DependencyWaiter")

    # ------------------------------------------------------------------
    # Dependency map
    # ------------------------------------------------------------------

    def register_dependency(self, service: str, dependency: str, optional: bool = False) -> None:
        """Declare that ``service`` needs ``dependency``.

        Raises:
            ValueError: If a name is empty or the service depends on itself
        """
        if not service or not dependency:
            raise ValueError("Service and dependency names must be provided")
        if service == dependency:
            raise ValueError(f"Service {service} cannot depend on itself")

        deps = self._dependencies.setdefault(service, [])
        if any(d.name == dependency for d in deps):
            return
        deps.append(ServiceDependency(name=dependency, optional=optional))
        self._required_by.setdefault(dependency, []).append(service)
        self._logger.debug(
            "service_dependency_registered",
            service=service,
            dependency=dependency,
            optional=optional,
        )

    def register_all(
        self, service: str, dependencies: Iterable[ServiceDependency | str]
    ) -> None:
        for entry in dependencies:
            dep = ServiceDependency.model_validate(entry)
            self.register_dependency(service, dep.name, dep.optional)

    def dependencies_of(self, service: str) -> list[ServiceDependency]:
        return list(self._dependencies.get(service, []))

    def required_by(self, dependency: str) -> list[str]:
        return list(self._required_by.get(dependency, []))

    def startup_order(self, services: Iterable[str]) -> list[str]:
        """Order services so each comes after the services it depends on.

        Services caught in a dependency loop keep their input position
        relative to each other and a warning is logged.
        """
        ordered: list[str] = []
        done: set[str] = set()
        in_progress: set[str] = set()

        def visit(service: str) -> None:
            if service in done:
                return
            if service in in_progress:
                self._logger.warning("service_dependency_cycle", service=service)
                return
            in_progress.add(service)
            for dep in self._dependencies.get(service, []):
                visit(dep.name)
            in_progress.discard(service)
            done.add(service)
            ordered.append(service)

        for service in services:
            visit(service)
        return ordered

    def clear_cache(self) -> None:
        self._healthy_cache.clear()

    def forget(self, service: str) -> None:
        """Drop every dependency declared for ``service``."""
        for dep in self._dependencies.pop(service, []):
            dependents = self._required_by.get(dep.name, [])
            if service in dependents:
                dependents.remove(service)
            if not dependents:
                self._required_by.pop(dep.name, None)

    # ------------------------------------------------------------------
    # Checking
    # ------------------------------------------------------------------

    async def check_dependency(
        self, dependency: ServiceDependency, timeout_seconds: float
    ) -> DependencyStatus:
        """Resolve one dependency in the registry and probe it."""
        if dependency.name in self._healthy_cache:
            self._logger.debug("dependency_cache_hit", dependency=dependency.name)
            return DependencyStatus(
                name=dependency.name, optional=dependency.optional, healthy=True, cached=True
            )

        record = await self.registry.get(dependency.name)
        if record is None:
            self._logger.warning("dependency_not_registered", dependency=dependency.name)
            return DependencyStatus(
                name=dependency.name,
                optional=dependency.optional,
                message=f"Service {dependency.name} not found in registry",
            )

        timeout = timeout_seconds
        if record.health_check_timeout:
            timeout = min(timeout, record.health_check_timeout)

        spec = HealthCheckSpec(
            endpoint=record.health_check,
            type=record.health_check_type,
            timeout_seconds=max(timeout, 0.1),
            container=f"{record.name}-app",
            image=record.image_ref,
        )
        result = await self.checker.check(
            record.name, record.port, spec, collect_diagnostics=False
        )
        if result.healthy:
            self._healthy_cache.add(dependency.name)

        return DependencyStatus(
            name=dependency.name,
            optional=dependency.optional,
            healthy=result.healthy,
            message=result.message,
        )

    async def wait_for(
        self,
        service: str,
        dependencies: Iterable[ServiceDependency | str] | None = None,
        timeout_seconds: float | None = None,
        use_cache: bool = False,
    ) -> WaitResult:
        """Wait until the dependencies of ``service`` are available.

        Each call is one run: the healthy cache starts empty unless
        ``use_cache`` continues the previous run. A failed required
        dependency stops the wait; checks still running are cancelled. Failed
        optional dependencies are recorded only.

        Args:
            service: Service whose dependencies are checked
            dependencies: Replaces the dependencies declared for the service
            timeout_seconds: Overall budget; defaults to the configured timeout
            use_cache: Keep dependencies found healthy by earlier calls

        Returns:
            WaitResult; never raises on timeout
        """
        if not use_cache:
            self.clear_cache()
        if dependencies is not None:
            self.forget(service)
            self.register_all(service, dependencies)

        deps = self.dependencies_of(service)
        result = WaitResult(success=True, service=service)
        if not deps:
            self._logger.debug("no_service_dependencies", service=service)
            return result

        timeout = timeout_seconds if timeout_seconds is not None else self.config.timeout_seconds
        start = time.monotonic()
        self._logger.info(
            "waiting_for_dependencies",
            service=service,
            dependencies=[d.name for d in deps],
            parallel=self.config.parallel,
        )

        if self.config.parallel and len(deps) > 1:
            await self._check_parallel(deps, timeout, result)
        else:
            for dep in deps:
                remaining = timeout - (time.monotonic() - start)
                status = await self.check_dependency(dep, max(remaining, 0.1))
                if not self._record(status, result):
                    break

        result.duration_seconds = time.monotonic() - start
        if result.failed_required:
            result.success = False
            result.error = OperationError(
                kind=ErrorKind.VALIDATION,
                message=(
                    f"Required dependencies unavailable for {service}: "
                    f"{', '.join(result.failed_required)}"
                ),
                details={"failed_optional": result.failed_optional},
            )
            self._logger.error(
                "dependencies_unavailable",
                service=service,
                failed_required=result.failed_required,
                failed_optional=result.failed_optional,
            )
        else:
            self._logger.info(
                "dependencies_ready",
                service=service,
                healthy=result.healthy,
                failed_optional=result.failed_optional,
                duration_seconds=round(result.duration_seconds, 2),
            )
        return result

    def _record(self, status: DependencyStatus, result: WaitResult) -> bool:
        """Add a status to the result. Returns False when the wait must stop."""
        result.statuses[status.name] = status
        if status.healthy:
            result.healthy.append(status.name)
            return True
        if status.optional:
            self._logger.warning("optional_dependency_unavailable", dependency=status.name)
            result.failed_optional.append(status.name)
            return True
        result.failed_required.append(status.name)
        return False

    async def _check_parallel(
        self, deps: list[ServiceDependency], timeout: float, result: WaitResult
    ) -> None:
        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        deadline = time.monotonic() + timeout

        async def bounded(dep: ServiceDependency) -> DependencyStatus:
            async with semaphore:
                remaining = deadline - time.monotonic()
                return await self.check_dependency(dep, max(remaining, 0.1))

        tasks = [asyncio.create_task(bounded(dep)) for dep in deps]
        try:
            for finished in asyncio.as_completed(tasks):
                status = await finished
                if not self._record(status, result):
                    break
        finally:
            pending = [t for t in tasks if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
