"""Integration tests for the docker-py and docker compose runtime.

docker-py is replaced by a MagicMock client and compose subprocesses by an
AsyncMock, so these tests run without a Docker daemon. The single test
marked ``docker`` talks to a real daemon and is skipped when none answers.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from unideploy.config import DockerConfig
from unideploy.errors import ContainerRuntimeError
from unideploy.pipeline.container import ContainerStatus, DockerRuntime


@pytest.fixture
def mock_docker_client() -> MagicMock:
    client = MagicMock()
    client.ping.return_value = True
    return client


@pytest.fixture
def docker_runtime(mock_docker_client: MagicMock) -> DockerRuntime:
    runtime = DockerRuntime(DockerConfig(), compose_timeout_seconds=30)
    runtime._client = mock_docker_client
    return runtime


def _container(name: str, attrs: dict) -> MagicMock:
    container = MagicMock()
    container.name = name
    container.attrs = attrs
    return container


class TestDockerApi:
    @pytest.mark.asyncio
    async def test_ping(self, docker_runtime: DockerRuntime, mock_docker_client: MagicMock) -> None:
        assert await docker_runtime.ping() is True

        mock_docker_client.ping.side_effect = DockerException("socket missing")
        assert await docker_runtime.ping() is False

    @pytest.mark.asyncio
    async def test_pull_only_missing_images(
        self, docker_runtime: DockerRuntime, mock_docker_client: MagicMock
    ) -> None:
        present = await docker_runtime.pull("acme/shop:v1")
        mock_docker_client.images.pull.assert_not_called()

        mock_docker_client.images.get.side_effect = ImageNotFound("no such image")
        pulled = await docker_runtime.pull("acme/shop:v2")

        assert present.success and pulled.success
        mock_docker_client.images.pull.assert_called_once_with("acme/shop:v2")

    @pytest.mark.asyncio
    async def test_pull_failure(
        self, docker_runtime: DockerRuntime, mock_docker_client: MagicMock
    ) -> None:
        mock_docker_client.images.get.side_effect = ImageNotFound("no such image")
        mock_docker_client.images.pull.side_effect = APIError("manifest unknown")

        result = await docker_runtime.pull("acme/shop:v9")

        assert result.success is False
        assert "manifest unknown" in (result.error or "")

    @pytest.mark.asyncio
    async def test_inspect_running_container(
        self, docker_runtime: DockerRuntime, mock_docker_client: MagicMock
    ) -> None:
        mock_docker_client.containers.get.return_value = _container(
            "shop-app",
            {
                "State": {"Status": "running", "ExitCode": 0, "Health": {"Status": "starting"}},
                "Config": {"Image": "acme/shop:v2", "Healthcheck": {"Test": ["CMD", "true"]}},
            },
        )

        state = await docker_runtime.inspect("shop-app")

        assert state.exists is True
        assert state.running is True
        assert state.status is ContainerStatus.RUNNING
        assert state.health == "starting"
        assert state.has_healthcheck is True
        assert state.image == "acme/shop:v2"

    @pytest.mark.asyncio
    async def test_inspect_missing_container(
        self, docker_runtime: DockerRuntime, mock_docker_client: MagicMock
    ) -> None:
        mock_docker_client.containers.get.side_effect = NotFound("gone")

        state = await docker_runtime.inspect("shop-app")

        assert state.exists is False
        assert state.running is False

    @pytest.mark.asyncio
    async def test_logs(self, docker_runtime: DockerRuntime, mock_docker_client: MagicMock) -> None:
        container = _container("shop-app", {})
        container.logs.return_value = b"listening on :3000\n"
        mock_docker_client.containers.get.return_value = container

        assert await docker_runtime.logs("shop-app", 5) == "listening on :3000\n"
        container.logs.assert_called_once_with(tail=5)

        mock_docker_client.containers.get.side_effect = NotFound("gone")
        assert (await docker_runtime.logs("shop-app")).startswith("<logs unavailable")

    @pytest.mark.asyncio
    async def test_port_owner(
        self, docker_runtime: DockerRuntime, mock_docker_client: MagicMock
    ) -> None:
        mock_docker_client.containers.list.return_value = [
            _container("db", {"NetworkSettings": {"Ports": {"5432/tcp": None}}}),
            _container(
                "shop-app",
                {"NetworkSettings": {"Ports": {"3000/tcp": [{"HostIp": "0.0.0.0", "HostPort": "3000"}]}}},
            ),
        ]

        assert await docker_runtime.port_owner(3000) == "shop-app"
        assert await docker_runtime.port_owner(3001) is None

    @pytest.mark.asyncio
    async def test_port_owner_daemon_error(
        self, docker_runtime: DockerRuntime, mock_docker_client: MagicMock
    ) -> None:
        mock_docker_client.containers.list.side_effect = APIError("daemon restarting")

        with pytest.raises(ContainerRuntimeError, match="daemon restarting"):
            await docker_runtime.port_owner(3000)


class TestCompose:
    @pytest.mark.asyncio
    async def test_start_builds_compose_command(
        self, docker_runtime: DockerRuntime, tmp_path: Path
    ) -> None:
        compose_file = tmp_path / "docker-compose.yml"
        docker_runtime._run_compose_command = AsyncMock(return_value=(True, "Started", ""))

        result = await docker_runtime.start(compose_file, "shop", ["app"])

        assert result.success is True
        docker_runtime._run_compose_command.assert_awaited_once_with(
            "-p", "shop", "-f", str(compose_file), "--profile", "app",
            "up", "-d", "--remove-orphans",
            cwd=tmp_path,
        )

    @pytest.mark.asyncio
    async def test_start_failure_keeps_stderr(
        self, docker_runtime: DockerRuntime, tmp_path: Path
    ) -> None:
        docker_runtime._run_compose_command = AsyncMock(
            return_value=(False, "", "Error response from daemon: port is already allocated\n")
        )

        result = await docker_runtime.start(tmp_path / "docker-compose.yml", "shop")

        assert result.success is False
        assert result.error == "Error response from daemon: port is already allocated"

    @pytest.mark.asyncio
    async def test_stop(self, docker_runtime: DockerRuntime) -> None:
        docker_runtime._run_compose_command = AsyncMock(return_value=(True, "", "Removed"))

        result = await docker_runtime.stop("shop")

        assert result.success is True
        docker_runtime._run_compose_command.assert_awaited_once_with("-p", "shop", "down")


@pytest.mark.docker
@pytest.mark.asyncio
async def test_real_daemon_roundtrip() -> None:
    runtime = DockerRuntime(DockerConfig())
    if not await runtime.ping():
        pytest.skip("Docker daemon not reachable")

    state = await runtime.inspect("unideploy-test-container-that-does-not-exist")
    await runtime.close()

    assert state.exists is False
