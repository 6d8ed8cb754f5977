"""Reverse-proxy routing.

The orchestrator writes one route per app through the ``ProxyConfigurator``
protocol and reloads the proxy once the deployment is live.
``NginxConfigurator`` writes ``<config_dir>/<app>.conf`` from the bundled
nginx template and reloads nginx with the configured command.

Routing:
- subdomain: ``server_name <route>.<domain>``, location ``/``
- path: ``server_name <domain>``, location ``/<route>`` with the prefix
  stripped before proxying
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from unideploy.config import ProxyConfig
from unideploy.errors import ErrorKind, OperationError
from unideploy.logging import get_logger
from unideploy.models import RouteType
from unideploy.pipeline.templates import TemplateRenderer

FALLBACK_RELOAD_COMMAND = ["nginx", "-s", "reload"]


class RouteSpec(BaseModel):
    """What the proxy should route to an app."""

    app_name: str
    domain: str
    route_type: RouteType = RouteType.PATH
    route: str = ""
    port: int
    ssl: bool = True

    @property
    def server_name(self) -> str:
        if self.route_type is RouteType.SUBDOMAIN and self.route:
            return f"{self.route}.{self.domain}"
        return self.domain

    @property
    def location(self) -> str:
        if self.route_type is RouteType.SUBDOMAIN or not self.route.strip("/"):
            return "/"
        return "/" + "/".join(part for part in self.route.split("/") if part)


class ProxyResult(BaseModel):
    """Outcome of a proxy operation.

    Attributes:
        success: Whether the operation succeeded
        path: Route config file that was written or removed
        previous: Former content of the route file, for restoring on rollback
        error: Structured error on failure
    """

    success: bool
    path: Path | None = None
    previous: str | None = None
    error: OperationError | None = None


class ProxyConfigurator(Protocol):
    """Capabilities the orchestrator needs from the reverse proxy."""

    async def write_route(self, route: RouteSpec) -> ProxyResult: ...

    async def restore_route(self, app_name: str, previous: str | None) -> ProxyResult: ...

    async def remove_route(self, app_name: str) -> ProxyResult: ...

    async def reload(self) -> ProxyResult: ...


class NginxConfigurator:
    """nginx-backed ProxyConfigurator.

    Attributes:
        config: Proxy configuration
        renderer: Template renderer for nginx.conf.j2
    """

    def __init__(self, config: ProxyConfig, renderer: TemplateRenderer | None = None) -> None:
        self.config = config
        self.renderer = renderer or TemplateRenderer()
        self.logger = get_logger(__name__)

    def route_path(self, app_name: str) -> Path:
        return self.config.config_dir / f"{app_name}.conf"

    def render(self, route: RouteSpec) -> str:
        cert_dir = self.config.certs_dir / route.server_name
        location = route.location
        return self.renderer.render(
            "nginx.conf.j2",
            app_name=route.app_name,
            server_name=route.server_name,
            location=location,
            strip_prefix=route.route_type is RouteType.PATH and location != "/",
            port=route.port,
            ssl=route.ssl,
            certificate=str(cert_dir / "fullchain.pem"),
            private_key=str(cert_dir / "privkey.pem"),
        )

    def _write(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".conf.tmp")
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)

    async def write_route(self, route: RouteSpec) -> ProxyResult:
        path = self.route_path(route.app_name)
        try:
            previous = path.read_text(encoding="utf-8") if path.exists() else None
            self._write(path, self.render(route))
        except OSError as e:
            self.logger.error("proxy_route_write_failed", app_name=route.app_name, error=str(e))
            return ProxyResult(
                success=False,
                path=path,
                error=OperationError(
                    kind=ErrorKind.PREPARATION,
                    message=f"Cannot write proxy config {path}: {e}",
                ),
            )

        self.logger.info(
            "proxy_route_written",
            app_name=route.app_name,
            server_name=route.server_name,
            location=route.location,
            port=route.port,
        )
        return ProxyResult(success=True, path=path, previous=previous)

    async def restore_route(self, app_name: str, previous: str | None) -> ProxyResult:
        """Put back the route content saved by write_route, or drop the route."""
        if previous is None:
            return await self.remove_route(app_name)
        path = self.route_path(app_name)
        try:
            self._write(path, previous)
        except OSError as e:
            return ProxyResult(
                success=False,
                path=path,
                error=OperationError(kind=ErrorKind.ROLLBACK, message=str(e)),
            )
        self.logger.info("proxy_route_restored", app_name=app_name)
        return ProxyResult(success=True, path=path)

    async def remove_route(self, app_name: str) -> ProxyResult:
        path = self.route_path(app_name)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            return ProxyResult(
                success=False,
                path=path,
                error=OperationError(kind=ErrorKind.DEPLOYMENT, message=str(e)),
            )
        self.logger.info("proxy_route_removed", app_name=app_name)
        return ProxyResult(success=True, path=path)

    async def _run(self, command: list[str]) -> tuple[bool, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return False, f"{command[0]} not found"
        _, stderr = await proc.communicate()
        return proc.returncode == 0, stderr.decode("utf-8", errors="replace").strip()

    async def reload(self) -> ProxyResult:
        """Reload nginx, falling back to a host nginx when the configured command fails."""
        ok, stderr = await self._run(self.config.reload_command)
        if not ok and self.config.reload_command != FALLBACK_RELOAD_COMMAND:
            self.logger.warning("proxy_reload_fallback", error=stderr)
            ok, stderr = await self._run(FALLBACK_RELOAD_COMMAND)

        if not ok:
            self.logger.error("proxy_reload_failed", error=stderr)
            return ProxyResult(
                success=False,
                error=OperationError(
                    kind=ErrorKind.DEPLOYMENT, message=f"Proxy reload failed: {stderr}"
                ),
            )
        self.logger.info("proxy_reloaded")
        return ProxyResult(success=True)
