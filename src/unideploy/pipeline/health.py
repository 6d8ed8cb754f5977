"""Health checking for deployed applications.

This module decides whether a freshly started application is ready to take
traffic. Several probe strategies are supported:

- http: GET ``http://localhost:<port><endpoint>``, healthy on any 2xx
- tcp: healthy once a connection to the port can be established
- container: container running, and "healthy" if it declares a native check
- command: healthy when a predicate command exits zero
- none: checking disabled, always healthy

``HealthCheckType.AUTO`` is resolved by ``detect_type`` from the image name
and the container's native health check.

Example usage:
    >>> from unideploy.config import HealthConfig
    >>> from unideploy.models import HealthCheckSpec
    >>> from unideploy.pipeline.health import HealthChecker
    >>>
    >>> checker = HealthChecker(HealthConfig(), runtime)
    >>> spec = HealthCheckSpec(endpoint="/health", timeout_seconds=60, container="shop-app")
    >>> result = await checker.check("shop", 3000, spec)
    >>> if not result.healthy:
    ...     print(result.diagnostics.logs)
"""

from __future__ import annotations

import asyncio
import time

import httpx
from pydantic import BaseModel, Field

from unideploy.config import HealthConfig
from unideploy.errors import ErrorKind, OperationError
from unideploy.logging import get_logger
from unideploy.models import HealthCheckSpec, HealthCheckType
from unideploy.pipeline.container import ContainerRuntime

TCP_IMAGE_MARKERS = ("redis", "memcached", "postgres", "mysql", "mariadb", "mongo")
HTTP_IMAGE_MARKERS = ("nginx", "httpd", "caddy")


class HealthDiagnostics(BaseModel):
    """Container state collected after a failed health check.

    Attributes:
        container: Container that was inspected
        exists: Whether the container exists
        status: Container status (running, exited, ...)
        exit_code: Exit code when the container has exited
        logs: Last log lines of the container
    """

    container: str
    exists: bool = False
    status: str | None = None
    exit_code: int | None = None
    logs: str = ""


class HealthResult(BaseModel):
    """Outcome of a health check poll.

    Attributes:
        healthy: Whether the application became healthy in time
        check_type: Concrete probe type that was used
        attempts: Number of probes performed
        elapsed_seconds: Time spent polling
        message: Last probe message
        diagnostics: Container diagnostics collected on failure
        error: Structured error when unhealthy
    """

    healthy: bool = Field(description="Health check outcome")
    check_type: HealthCheckType = Field(description="Probe type used")
    attempts: int = Field(default=0, ge=0, description="Probes performed")
    elapsed_seconds: float = Field(default=0.0, ge=0.0, description="Polling duration")
    message: str = Field(default="", description="Last probe message")
    diagnostics: HealthDiagnostics | None = Field(default=None)
    error: OperationError | None = Field(default=None)


class HealthChecker:
    """Polls an application with the configured probe strategy.

    Attributes:
        config: Health checker configuration
        runtime: Container runtime for container checks and diagnostics
        host: Host probed by http and tcp checks
        logger: Structured logger instance
    """

    def __init__(
        self,
        config: HealthConfig,
        runtime: ContainerRuntime | None = None,
        client: httpx.AsyncClient | None = None,
        host: str = "localhost",
    ) -> None:
        self.config = config
        self.runtime = runtime
        self.host = host
        self.logger = get_logger(__name__)
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Type detection
    # ------------------------------------------------------------------

    async def detect_type(self, spec: HealthCheckSpec) -> HealthCheckType:
        """Resolve AUTO into a concrete probe type.

        Args:
            spec: Health check specification

        Returns:
            The explicit type when one is set, otherwise the detected type
        """
        if spec.disabled:
            return HealthCheckType.NONE
        if spec.type is not HealthCheckType.AUTO:
            return spec.type

        image = (spec.image or "").lower()
        if any(marker in image for marker in TCP_IMAGE_MARKERS):
            return HealthCheckType.TCP
        if any(marker in image for marker in HTTP_IMAGE_MARKERS):
            return HealthCheckType.HTTP

        if self.runtime is not None and spec.container:
            state = await self.runtime.inspect(spec.container)
            if state.exists and state.has_healthcheck:
                return HealthCheckType.CONTAINER

        return HealthCheckType.HTTP

    # ------------------------------------------------------------------
    # Single probes
    # ------------------------------------------------------------------

    async def _probe_http(self, port: int, spec: HealthCheckSpec) -> tuple[bool, str]:
        url = f"http://{self.host}:{port}{spec.resolved_endpoint}"
        try:
            client = await self._get_client()
            response = await client.get(url, timeout=self.config.request_timeout_seconds)
        except httpx.HTTPError as e:
            return False, f"Failed to connect to {url}: {type(e).__name__}"

        if response.is_success:
            return True, f"HTTP {response.status_code}"
        return False, f"HTTP status {response.status_code} returned from {url}"

    async def _probe_tcp(self, port: int) -> tuple[bool, str]:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, port),
                timeout=self.config.request_timeout_seconds,
            )
        except (OSError, asyncio.TimeoutError):
            return False, f"TCP port {port} is not open"

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True, f"TCP port {port} is accepting connections"

    async def _probe_container(self, spec: HealthCheckSpec) -> tuple[bool, str]:
        if self.runtime is None or not spec.container:
            return False, "No container runtime available for container check"

        state = await self.runtime.inspect(spec.container)
        if not state.exists or not state.running:
            return False, f"Container {spec.container} is not running"
        if not state.health:
            return True, "Container is running"
        if state.health == "healthy":
            return True, "Container reports healthy"
        return False, f"Container health status: {state.health}"

    async def _probe_command(self, command: list[str], timeout: float) -> tuple[bool, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            return False, f"Cannot run health command: {e}"

        try:
            returncode = await asyncio.wait_for(proc.wait(), timeout=max(timeout, 0.1))
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return False, "Health command timed out"

        if returncode == 0:
            return True, "Health command succeeded"
        return False, f"Health command exited with {returncode}"

    async def probe(
        self,
        check_type: HealthCheckType,
        port: int,
        spec: HealthCheckSpec,
        remaining: float | None = None,
    ) -> tuple[bool, str]:
        """Run one probe of the given type.

        Returns:
            Tuple of (healthy, message)
        """
        if check_type is HealthCheckType.NONE:
            return True, "Health check disabled"
        if check_type is HealthCheckType.TCP:
            return await self._probe_tcp(port)
        if check_type is HealthCheckType.CONTAINER:
            return await self._probe_container(spec)
        if check_type is HealthCheckType.COMMAND:
            timeout = remaining if remaining is not None else spec.timeout_seconds
            return await self._probe_command(spec.command or [], timeout)
        return await self._probe_http(port, spec)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _interval(self, elapsed: float, interval: float | None) -> float:
        if interval is not None:
            return interval
        if elapsed > self.config.slow_after_seconds:
            return self.config.slow_interval_seconds
        return self.config.interval_seconds

    async def collect_diagnostics(self, container: str) -> HealthDiagnostics:
        """Collect status, exit code and recent logs of a container."""
        diagnostics = HealthDiagnostics(container=container)
        if self.runtime is None:
            return diagnostics

        state = await self.runtime.inspect(container)
        diagnostics.exists = state.exists
        if state.exists:
            diagnostics.status = state.status.value if state.status else None
            diagnostics.exit_code = state.exit_code if not state.running else None
            diagnostics.logs = await self.runtime.logs(container, self.config.max_log_lines)
        return diagnostics

    async def check(
        self,
        app_name: str,
        port: int,
        spec: HealthCheckSpec,
        timeout_seconds: float | None = None,
        interval_seconds: float | None = None,
        collect_diagnostics: bool = True,
    ) -> HealthResult:
        """Poll until the application is healthy or the timeout elapses.

        A timeout is reported as an unhealthy result, never raised.

        Args:
            app_name: Application being checked
            port: Host port of the application
            spec: Endpoint, type, command and container to probe
            timeout_seconds: Overall timeout; defaults to spec.timeout_seconds
            interval_seconds: Fixed poll interval; defaults to the configured
                interval, which slows down after slow_after_seconds
            collect_diagnostics: Gather container logs on failure

        Returns:
            HealthResult with the outcome and, on failure, diagnostics
        """
        timeout = timeout_seconds if timeout_seconds is not None else spec.timeout_seconds
        check_type = await self.detect_type(spec)
        start_time = time.monotonic()

        if check_type is HealthCheckType.NONE:
            self.logger.info("health_check_disabled", app_name=app_name)
            return HealthResult(healthy=True, check_type=check_type, message="Health check disabled")

        if check_type is HealthCheckType.COMMAND and not spec.command:
            return HealthResult(
                healthy=False,
                check_type=check_type,
                message="No health command specified",
                error=OperationError(
                    kind=ErrorKind.VERIFICATION,
                    message=f"Command health check for {app_name} has no command",
                ),
            )

        self.logger.info(
            "health_check_started",
            app_name=app_name,
            port=port,
            check_type=check_type.value,
            timeout_seconds=timeout,
        )

        attempts = 0
        message = ""
        while True:
            elapsed = time.monotonic() - start_time
            remaining = timeout - elapsed
            if remaining <= 0:
                break

            attempts += 1
            healthy, message = await self.probe(check_type, port, spec, remaining)
            elapsed = time.monotonic() - start_time

            if healthy:
                self.logger.info(
                    "health_check_passed",
                    app_name=app_name,
                    check_type=check_type.value,
                    attempts=attempts,
                    elapsed_seconds=round(elapsed, 2),
                )
                return HealthResult(
                    healthy=True,
                    check_type=check_type,
                    attempts=attempts,
                    elapsed_seconds=elapsed,
                    message=message,
                )

            remaining = timeout - elapsed
            wait_time = min(self._interval(elapsed, interval_seconds), remaining)
            self.logger.debug(
                "health_check_pending",
                app_name=app_name,
                remaining_seconds=round(max(remaining, 0.0), 1),
                last_error=message,
            )
            if wait_time > 0:
                await asyncio.sleep(wait_time)

        elapsed = time.monotonic() - start_time
        self.logger.error(
            "health_check_failed",
            app_name=app_name,
            check_type=check_type.value,
            attempts=attempts,
            elapsed_seconds=round(elapsed, 2),
            last_error=message,
        )

        diagnostics = None
        if collect_diagnostics:
            diagnostics = await self.collect_diagnostics(spec.container or f"{app_name}-app")

        return HealthResult(
            healthy=False,
            check_type=check_type,
            attempts=attempts,
            elapsed_seconds=elapsed,
            message=message,
            diagnostics=diagnostics,
            error=OperationError(
                kind=ErrorKind.VERIFICATION,
                message=f"Health check failed for {app_name} after {timeout:g}s: {message}",
                details={"check_type": check_type.value, "attempts": attempts},
            ),
        )

    async def check_with_retry(
        self,
        app_name: str,
        port: int,
        spec: HealthCheckSpec,
        max_attempts: int = 5,
        timeout_seconds: float = 60.0,
    ) -> HealthResult:
        """Repeated polls with growing windows, for post-cutover verification.

        The first poll gets ``timeout / max_attempts`` seconds and each later
        poll twice the previous window. Polls run back to back and the last
        one takes whatever budget is left, so probing covers the whole of
        ``timeout_seconds`` and never runs past it.

        Args:
            app_name: Application being checked
            port: Host port of the application
            spec: Endpoint, type, command and container to probe
            max_attempts: Maximum number of polls
            timeout_seconds: Overall time budget

        Returns:
            HealthResult of the last poll, with attempts summed over all polls
        """
        start_time = time.monotonic()
        window = timeout_seconds / max(max_attempts, 1)
        total_probes = 0
        result: HealthResult | None = None

        for attempt in range(1, max_attempts + 1):
            remaining = timeout_seconds - (time.monotonic() - start_time)
            if remaining <= 0:
                break

            self.logger.info(
                "health_check_attempt",
                app_name=app_name,
                attempt=attempt,
                max_attempts=max_attempts,
            )
            budget = remaining if attempt == max_attempts else min(window, remaining)
            result = await self.check(
                app_name,
                port,
                spec,
                timeout_seconds=budget,
                collect_diagnostics=False,
            )
            total_probes += result.attempts
            if result.healthy:
                result.attempts = total_probes
                result.elapsed_seconds = time.monotonic() - start_time
                return result

            window *= 2
            if attempt < max_attempts:
                self.logger.warning(
                    "health_check_retry",
                    app_name=app_name,
                    attempt=attempt,
                    next_window_seconds=round(window, 1),
                )

        elapsed = time.monotonic() - start_time
        message = result.message if result else "No health check attempt fit in the timeout"
        check_type = result.check_type if result else await self.detect_type(spec)
        self.logger.error(
            "health_check_retries_exhausted",
            app_name=app_name,
            max_attempts=max_attempts,
            elapsed_seconds=round(elapsed, 2),
        )
        return HealthResult(
            healthy=False,
            check_type=check_type,
            attempts=total_probes,
            elapsed_seconds=elapsed,
            message=message,
            diagnostics=await self.collect_diagnostics(spec.container or f"{app_name}-app"),
            error=OperationError(
                kind=ErrorKind.VERIFICATION,
                message=f"Health check failed for {app_name} after {max_attempts} attempts: {message}",
                details={"check_type": check_type.value, "attempts": total_probes},
            ),
        )
