"""Container runtime binding for Unideploy.

The orchestrator talks to containers through the ``ContainerRuntime``
protocol. ``DockerRuntime`` implements it with docker-py for inspection,
logs and pulls, and the ``docker compose`` CLI for starting and stopping
compose projects. docker-py calls are blocking and run in worker threads;
compose invocations run as subprocesses with a timeout.

Every compose project is named after the app, so a deployment started
from a staging directory replaces the containers of the previous
deployment of the same app.

Example usage:
    >>> from unideploy.config import DockerConfig
    >>> from unideploy.pipeline.container import DockerRuntime
    >>>
    >>> runtime = DockerRuntime(DockerConfig())
    >>> action = await runtime.start(Path("/opt/unideploy/apps/shop/docker-compose.yml"), "shop")
    >>> state = await runtime.inspect("shop-app")
    >>> if state.running:
    ...     print(state.health)
"""

from __future__ import annotations

import asyncio
import os
import time
from enum import Enum
from pathlib import Path
from typing import Protocol, Sequence

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from pydantic import BaseModel, Field

from unideploy.config import DockerConfig
from unideploy.errors import ContainerRuntimeError
from unideploy.logging import get_logger


class ContainerStatus(str, Enum):
    """Status of a Docker container."""

    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    EXITED = "exited"
    DEAD = "dead"
    CREATED = "created"
    REMOVING = "removing"


class RuntimeAction(BaseModel):
    """Result of a runtime operation.

    Attributes:
        success: Whether the operation completed successfully
        action: Operation performed (start, stop, pull)
        target: Project name or image reference
        output: Combined command output, truncated
        error: Error message if the operation failed
        duration_seconds: Time taken for the operation
    """

    success: bool = Field(description="Operation success flag")
    action: str = Field(description="Action performed")
    target: str = Field(description="Project or image")
    output: str = Field(default="", description="Command output")
    error: str | None = Field(default=None, description="Error message if failed")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Operation duration")


class ContainerState(BaseModel):
    """Inspection result for one container.

    Attributes:
        ref: Container name or ID that was inspected
        exists: Whether the container exists
        status: Runtime status
        health: Native health status (healthy, unhealthy, starting) if declared
        has_healthcheck: Whether the container declares a native health check
        exit_code: Exit code of the main process
        image: Image reference the container runs
    """

    ref: str
    exists: bool = False
    status: ContainerStatus | None = None
    health: str | None = None
    has_healthcheck: bool = False
    exit_code: int | None = None
    image: str | None = None

    @property
    def running(self) -> bool:
        return self.status is ContainerStatus.RUNNING


class ContainerRuntime(Protocol):
    """Capabilities the orchestrator needs from a container runtime."""

    async def ping(self) -> bool: ...

    async def pull(self, image_ref: str) -> RuntimeAction: ...

    async def start(
        self, compose_file: Path, project: str, profiles: Sequence[str] = ()
    ) -> RuntimeAction: ...

    async def stop(self, project: str) -> RuntimeAction: ...

    async def inspect(self, container_ref: str) -> ContainerState: ...

    async def logs(self, container_ref: str, max_lines: int = 20) -> str: ...

    async def port_owner(self, port: int) -> str | None: ...


class DockerRuntime:
    """docker-py and docker compose backed ContainerRuntime.

    Attributes:
        config: Docker configuration
        compose_timeout_seconds: Timeout for compose subprocesses
        logger: Structured logger instance
    """

    def __init__(self, config: DockerConfig, compose_timeout_seconds: int = 300) -> None:
        self.config = config
        self.compose_timeout_seconds = compose_timeout_seconds
        self.logger = get_logger(__name__)
        self._client: docker.DockerClient | None = None

    def _get_client(self) -> docker.DockerClient:
        """Get or create the Docker client connection.

        Raises:
            DockerException: If unable to connect to Docker daemon
        """
        if self._client is None:
            docker_host = os.environ.get("DOCKER_HOST")
            if docker_host:
                self._client = docker.DockerClient(base_url=docker_host)
            elif self.config.rootless and hasattr(os, "getuid"):
                xdg_runtime = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
                self._client = docker.DockerClient(base_url=f"unix://{xdg_runtime}/docker.sock")
            else:
                self._client = docker.DockerClient.from_env()
            self.logger.debug("docker_client_connected", rootless=self.config.rootless)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            try:
                await asyncio.to_thread(self._client.close)
            finally:
                self._client = None

    async def ping(self) -> bool:
        try:
            client = await asyncio.to_thread(self._get_client)
            return bool(await asyncio.to_thread(client.ping))
        except DockerException as e:
            self.logger.warning("docker_unreachable", error=str(e))
            return False

    async def pull(self, image_ref: str) -> RuntimeAction:
        """Make an image available locally, pulling it when missing."""
        start_time = time.monotonic()
        try:
            client = await asyncio.to_thread(self._get_client)
            try:
                await asyncio.to_thread(client.images.get, image_ref)
                self.logger.debug("image_present", image=image_ref)
            except ImageNotFound:
                self.logger.info("pulling_image", image=image_ref)
                await asyncio.to_thread(client.images.pull, image_ref)
            return RuntimeAction(
                success=True,
                action="pull",
                target=image_ref,
                duration_seconds=time.monotonic() - start_time,
            )
        except (APIError, DockerException) as e:
            self.logger.error("image_pull_failed", image=image_ref, error=str(e))
            return RuntimeAction(
                success=False,
                action="pull",
                target=image_ref,
                error=str(e),
                duration_seconds=time.monotonic() - start_time,
            )

    async def _run_compose_command(
        self, *args: str, cwd: Path | None = None
    ) -> tuple[bool, str, str]:
        """Run a docker compose command via subprocess.

        Returns:
            Tuple of (success, stdout, stderr)
        """
        cmd = ["docker", "compose", *args]
        self.logger.debug("running_compose_command", command=" ".join(cmd))

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return False, "", "docker CLI not found"

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=self.compose_timeout_seconds
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return False, "", f"docker compose timed out after {self.compose_timeout_seconds}s"

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return proc.returncode == 0, stdout, stderr

    async def start(
        self, compose_file: Path, project: str, profiles: Sequence[str] = ()
    ) -> RuntimeAction:
        """Start (or recreate) a compose project in the background."""
        start_time = time.monotonic()
        args = ["-p", project, "-f", str(compose_file)]
        for profile in profiles:
            args.extend(["--profile", profile])
        args.extend(["up", "-d", "--remove-orphans"])

        self.logger.info("compose_starting", project=project, compose_file=str(compose_file))
        success, stdout, stderr = await self._run_compose_command(*args, cwd=compose_file.parent)
        duration = time.monotonic() - start_time

        if not success:
            self.logger.error(
                "compose_start_failed",
                project=project,
                stderr=stderr[-500:],
                duration_seconds=round(duration, 2),
            )
        else:
            self.logger.info("compose_started", project=project, duration_seconds=round(duration, 2))

        return RuntimeAction(
            success=success,
            action="start",
            target=project,
            output=(stdout + stderr)[-2000:],
            error=None if success else (stderr.strip() or "docker compose up failed"),
            duration_seconds=duration,
        )

    async def stop(self, project: str) -> RuntimeAction:
        """Stop and remove the containers of a compose project."""
        start_time = time.monotonic()
        success, stdout, stderr = await self._run_compose_command("-p", project, "down")
        duration = time.monotonic() - start_time

        log = self.logger.info if success else self.logger.error
        log("compose_stopped" if success else "compose_stop_failed", project=project)

        return RuntimeAction(
            success=success,
            action="stop",
            target=project,
            output=(stdout + stderr)[-2000:],
            error=None if success else (stderr.strip() or "docker compose down failed"),
            duration_seconds=duration,
        )

    async def inspect(self, container_ref: str) -> ContainerState:
        try:
            client = await asyncio.to_thread(self._get_client)
            container = await asyncio.to_thread(client.containers.get, container_ref)
            await asyncio.to_thread(container.reload)
        except NotFound:
            return ContainerState(ref=container_ref, exists=False)
        except (APIError, DockerException) as e:
            self.logger.warning("container_inspect_failed", container=container_ref, error=str(e))
            return ContainerState(ref=container_ref, exists=False)

        attrs = container.attrs
        state = attrs.get("State", {})
        try:
            status: ContainerStatus | None = ContainerStatus(state.get("Status", "").lower())
        except ValueError:
            status = None

        return ContainerState(
            ref=container_ref,
            exists=True,
            status=status,
            health=(state.get("Health") or {}).get("Status"),
            has_healthcheck=bool((attrs.get("Config") or {}).get("Healthcheck")),
            exit_code=state.get("ExitCode"),
            image=(attrs.get("Config") or {}).get("Image"),
        )

    async def logs(self, container_ref: str, max_lines: int = 20) -> str:
        try:
            client = await asyncio.to_thread(self._get_client)
            container = await asyncio.to_thread(client.containers.get, container_ref)
            raw = await asyncio.to_thread(container.logs, tail=max_lines)
        except (NotFound, APIError, DockerException) as e:
            return f"<logs unavailable: {e}>"
        return raw.decode("utf-8", errors="replace")

    async def port_owner(self, port: int) -> str | None:
        """Name of the running container publishing a host port, if any.

        Raises:
            ContainerRuntimeError: If the Docker daemon cannot list containers
        """
        try:
            client = await asyncio.to_thread(self._get_client)
            containers = await asyncio.to_thread(client.containers.list)
        except DockerException as e:
            self.logger.warning("port_owner_lookup_failed", port=port, error=str(e))
            raise ContainerRuntimeError(f"Cannot list containers: {e}") from e
        for container in containers:
            ports = (container.attrs.get("NetworkSettings") or {}).get("Ports") or {}
            for bindings in ports.values():
                for binding in bindings or []:
                    if str(binding.get("HostPort")) == str(port):
                        return container.name
        return None
