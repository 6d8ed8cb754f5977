"""Shared pytest fixtures.

Provides a configuration rooted in a temporary directory and in-memory
stand-ins for the container runtime, the reverse proxy and the health
checker. The fakes implement the same protocols the orchestrator depends
on, so no Docker daemon or nginx is needed.
"""

from __future__ import annotations

import re
import socket
from pathlib import Path
from typing import Sequence

import pytest

from unideploy.config import (
    DeployConfig,
    DependencyConfig,
    HealthConfig,
    ProxyConfig,
    RegistryConfig,
    UnideployConfig,
)
from unideploy.errors import ErrorKind, OperationError
from unideploy.models import HealthCheckSpec, HealthCheckType
from unideploy.pipeline.container import ContainerState, ContainerStatus, RuntimeAction
from unideploy.pipeline.health import HealthDiagnostics, HealthResult
from unideploy.pipeline.proxy import ProxyResult, RouteSpec
from unideploy.registry.service_registry import ServiceRegistry

IMAGE_LINE = re.compile(r"^\s+image:\s+(\S+)\s*$", re.MULTILINE)


def free_port() -> int:
    """Ask the kernel for a port that is currently unused."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class FakeRuntime:
    """ContainerRuntime keeping compose projects in memory.

    ``running`` maps a project name to the image references of its compose
    file. Images listed in ``failing_images`` fail to start and images in
    ``missing_images`` cannot be pulled.
    """

    def __init__(self) -> None:
        self.available = True
        self.missing_images: set[str] = set()
        self.failing_images: set[str] = set()
        self.running: dict[str, list[str]] = {}
        self.started: list[tuple[str, list[str]]] = []
        self.stopped: list[str] = []
        self.pulled: list[str] = []
        self.port_owners: dict[int, str] = {}
        self.container_logs = "starting\nlistening on :3000\nfatal: database unreachable"

    async def ping(self) -> bool:
        return self.available

    async def pull(self, image_ref: str) -> RuntimeAction:
        self.pulled.append(image_ref)
        if image_ref in self.missing_images:
            return RuntimeAction(
                success=False, action="pull", target=image_ref, error="manifest unknown"
            )
        return RuntimeAction(success=True, action="pull", target=image_ref)

    async def start(
        self, compose_file: Path, project: str, profiles: Sequence[str] = ()
    ) -> RuntimeAction:
        images = IMAGE_LINE.findall(Path(compose_file).read_text(encoding="utf-8"))
        self.started.append((project, images))
        failing = [i for i in images if i in self.failing_images]
        if failing:
            self.running.pop(project, None)
            return RuntimeAction(
                success=False,
                action="up",
                target=project,
                error=f"container for {failing[0]} exited with code 1",
            )
        self.running[project] = images
        return RuntimeAction(success=True, action="up", target=project)

    async def stop(self, project: str) -> RuntimeAction:
        self.stopped.append(project)
        self.running.pop(project, None)
        return RuntimeAction(success=True, action="down", target=project)

    async def inspect(self, container_ref: str) -> ContainerState:
        project = container_ref.rsplit("-", 1)[0]
        images = self.running.get(project)
        if images is None:
            return ContainerState(ref=container_ref)
        return ContainerState(
            ref=container_ref,
            exists=True,
            status=ContainerStatus.RUNNING,
            image=images[0],
        )

    async def logs(self, container_ref: str, max_lines: int = 20) -> str:
        return "\n".join(self.container_logs.splitlines()[-max_lines:])

    async def port_owner(self, port: int) -> str | None:
        return self.port_owners.get(port)


class FakeProxy:
    """ProxyConfigurator keeping routes in a dict."""

    def __init__(self) -> None:
        self.routes: dict[str, str] = {}
        self.reloads = 0
        self.fail_reload = False

    async def write_route(self, route: RouteSpec) -> ProxyResult:
        previous = self.routes.get(route.app_name)
        self.routes[route.app_name] = f"{route.server_name}{route.location} -> {route.port}"
        return ProxyResult(success=True, previous=previous)

    async def restore_route(self, app_name: str, previous: str | None) -> ProxyResult:
        if previous is None:
            self.routes.pop(app_name, None)
        else:
            self.routes[app_name] = previous
        return ProxyResult(success=True)

    async def remove_route(self, app_name: str) -> ProxyResult:
        self.routes.pop(app_name, None)
        return ProxyResult(success=True)

    async def reload(self) -> ProxyResult:
        if self.fail_reload:
            return ProxyResult(
                success=False,
                error=OperationError(kind=ErrorKind.DEPLOYMENT, message="nginx not running"),
            )
        self.reloads += 1
        return ProxyResult(success=True)


class FakeHealth:
    """Health checker that reports a project healthy unless it runs a bad image."""

    def __init__(self, runtime: FakeRuntime) -> None:
        self.runtime = runtime
        self.unhealthy_images: set[str] = set()
        self.checked: list[tuple[str, int]] = []

    def _result(self, app_name: str, spec: HealthCheckSpec) -> HealthResult:
        images = self.runtime.running.get(app_name, [])
        healthy = bool(images) and not any(i in self.unhealthy_images for i in images)
        if healthy:
            return HealthResult(healthy=True, check_type=HealthCheckType.HTTP, attempts=1)

        return HealthResult(
            healthy=False,
            check_type=HealthCheckType.HTTP,
            attempts=3,
            message="HTTP status 503",
            diagnostics=HealthDiagnostics(
                container=spec.container or f"{app_name}-app",
                exists=bool(images),
                status="running" if images else None,
                logs=self.runtime.container_logs,
            ),
            error=OperationError(
                kind=ErrorKind.VERIFICATION, message=f"Health check failed for {app_name}"
            ),
        )

    async def check(self, app_name, port, spec, timeout_seconds=None, **kwargs) -> HealthResult:
        self.checked.append((app_name, port))
        return self._result(app_name, spec)

    async def check_with_retry(
        self, app_name, port, spec, max_attempts=5, timeout_seconds=60.0
    ) -> HealthResult:
        self.checked.append((app_name, port))
        return self._result(app_name, spec)


@pytest.fixture
def config(tmp_path: Path) -> UnideployConfig:
    """Configuration with every path under tmp_path and short timeouts."""
    return UnideployConfig(
        registry=RegistryConfig(
            path=tmp_path / "registry" / "service-registry.json",
            write_lock_timeout_seconds=5.0,
            read_lock_timeout_seconds=5.0,
            initial_poll_seconds=0.01,
            max_poll_seconds=0.05,
        ),
        deploy=DeployConfig(
            base_dir=tmp_path / "apps",
            data_dir=tmp_path / "data",
            min_free_disk_mb=0,
            backup_grace_seconds=300.0,
            hook_retry_delay_seconds=0.0,
            deploy_lock_timeout_seconds=5.0,
        ),
        health=HealthConfig(
            interval_seconds=0.05,
            slow_interval_seconds=0.1,
            slow_after_seconds=1.0,
            request_timeout_seconds=0.5,
        ),
        dependencies=DependencyConfig(timeout_seconds=2.0),
        proxy=ProxyConfig(
            config_dir=tmp_path / "nginx" / "conf.d",
            certs_dir=tmp_path / "certs",
            reload_command=["true"],
        ),
    )


@pytest.fixture
def registry(config: UnideployConfig) -> ServiceRegistry:
    return ServiceRegistry(config.registry)


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def proxy() -> FakeProxy:
    return FakeProxy()


@pytest.fixture
def health(runtime: FakeRuntime) -> FakeHealth:
    return FakeHealth(runtime)


@pytest.fixture
def app_port() -> int:
    return free_port()
