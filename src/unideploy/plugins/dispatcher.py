"""Hook dispatcher.

Runs the callbacks registered for a lifecycle event in plugin dependency
order. Dispatch is best effort: a callback that keeps failing after its
retry budget increments the failure count, and the remaining callbacks
still run. The caller decides whether failures are fatal for the current
transition.

A callback raising ``HookVeto`` is not retried; the veto is reported
separately so that gate plugins can stop a transition such as
``pre_deploy``.

Example:
    >>> dispatcher = HookDispatcher(registry, max_attempts=2, retry_delay_seconds=1.0)
    >>> result = await dispatcher.execute(HookEvent.PRE_DEPLOY, context, image="acme/shop:v2")
    >>> executed, failures = result.as_tuple()
"""

from __future__ import annotations

import inspect
import time
from typing import Any

import structlog
from pydantic import BaseModel, Field

from unideploy.backoff import BackoffConfig, ExponentialBackoff
from unideploy.errors import ErrorKind, HookVeto, OperationError
from unideploy.models import DeploymentContext, HookEvent
from unideploy.plugins.base import HookCall
from unideploy.plugins.registry import HookRegistration, PluginRegistry

logger = structlog.get_logger(__name__)


class DispatchResult(BaseModel):
    """Aggregated outcome of one event dispatch.

    Attributes:
        event: Dispatched event
        executed: Callbacks that were invoked (successfully or not)
        failures: Callbacks that failed after exhausting their attempts
        vetoes: Plugins that vetoed the transition
        errors: One entry per failed or vetoing callback
        order: Plugin order used for this dispatch
        duration_seconds: Total dispatch time
    """

    event: HookEvent
    executed: int = 0
    failures: int = 0
    vetoes: list[str] = Field(default_factory=list)
    errors: list[OperationError] = Field(default_factory=list)
    order: list[str] = Field(default_factory=list)
    duration_seconds: float = Field(default=0.0, ge=0.0)

    @property
    def vetoed(self) -> bool:
        return bool(self.vetoes)

    @property
    def ok(self) -> bool:
        return self.failures == 0 and not self.vetoes

    def as_tuple(self) -> tuple[int, int]:
        return (self.executed, self.failures)


class HookDispatcher:
    """Invokes plugin callbacks for lifecycle events.

    Attributes:
        registry: Plugin registry supplying callbacks and ordering
        max_attempts: Attempts per callback before it counts as failed
        backoff: Delay policy between attempts, None when retries are immediate
        only_active: Restrict dispatch to activated plugins
    """

    def __init__(
        self,
        registry: PluginRegistry,
        max_attempts: int = 1,
        retry_delay_seconds: float = 1.0,
        backoff_multiplier: float = 1.0,
        only_active: bool = True,
    ) -> None:
        self.registry = registry
        self.max_attempts = max(1, max_attempts)
        self.only_active = only_active
        self.backoff: ExponentialBackoff | None = None
        # Zero delay retries immediately
        if retry_delay_seconds > 0 and self.max_attempts > 1:
            self.backoff = ExponentialBackoff(
                BackoffConfig(
                    initial_delay_seconds=retry_delay_seconds,
                    max_delay_seconds=retry_delay_seconds * 8,
                    multiplier=max(1.0, backoff_multiplier),
                    jitter=False,
                )
            )
        self._logger = logger.bind(component="HookDispatcher")

    def _participants(self, event: HookEvent) -> tuple[list[str], dict[str, list[HookRegistration]]]:
        by_plugin: dict[str, list[HookRegistration]] = {}
        active = set(self.registry.active)
        for registration in self.registry.hooks_for(event):
            if self.only_active and registration.plugin not in active:
                continue
            by_plugin.setdefault(registration.plugin, []).append(registration)

        order = self.registry.sort(by_plugin).order
        # Callbacks registered for plugins unknown to the registry keep insertion order
        order.extend(p for p in by_plugin if p not in order)
        return order, by_plugin

    async def _invoke(self, registration: HookRegistration, call: HookCall) -> Any:
        outcome = registration.callback(call)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    async def _run_callback(
        self, registration: HookRegistration, call: HookCall, result: DispatchResult
    ) -> None:
        last_error: Exception | None = None
        for attempt in range(self.max_attempts):
            try:
                await self._invoke(registration, call)
                return
            except HookVeto as veto:
                self._logger.warning(
                    "hook_vetoed",
                    hook_event=call.event.value,
                    plugin=registration.plugin,
                    reason=str(veto),
                )
                result.vetoes.append(registration.plugin)
                result.errors.append(
                    OperationError(
                        kind=ErrorKind.PLUGIN,
                        message=f"{registration.plugin} vetoed {call.event.value}: {veto}",
                        details={"plugin": registration.plugin, "veto": True},
                    )
                )
                return
            except Exception as e:
                last_error = e
                self._logger.warning(
                    "hook_callback_attempt_failed",
                    hook_event=call.event.value,
                    plugin=registration.plugin,
                    callback=registration.callback_name,
                    attempt=attempt + 1,
                    max_attempts=self.max_attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if attempt + 1 < self.max_attempts and self.backoff is not None:
                    await self.backoff.wait(attempt)

        result.failures += 1
        result.errors.append(
            OperationError(
                kind=ErrorKind.PLUGIN,
                message=(
                    f"{registration.plugin}.{registration.callback_name} failed for "
                    f"{call.event.value} after {self.max_attempts} attempt(s): {last_error}"
                ),
                details={"plugin": registration.plugin, "attempts": self.max_attempts},
            )
        )
        self._logger.error(
            "hook_callback_failed",
            hook_event=call.event.value,
            plugin=registration.plugin,
            callback=registration.callback_name,
            attempts=self.max_attempts,
        )

    async def execute(
        self,
        event: HookEvent,
        context: DeploymentContext | None = None,
        **payload: Any,
    ) -> DispatchResult:
        """Dispatch an event to every participating plugin.

        Args:
            event: Lifecycle event
            context: Deployment being processed
            **payload: Event-specific data passed to callbacks

        Returns:
            DispatchResult with executed/failure counts and vetoes
        """
        start = time.monotonic()
        order, by_plugin = self._participants(event)
        result = DispatchResult(event=event, order=order)

        for plugin in order:
            args = self.registry.plugin_args(plugin)
            for registration in by_plugin[plugin]:
                call = HookCall(
                    event=event,
                    plugin=plugin,
                    context=context,
                    payload=dict(payload),
                    args=args,
                )
                result.executed += 1
                await self._run_callback(registration, call, result)

        result.duration_seconds = time.monotonic() - start
        if order:
            self._logger.info(
                "hook_dispatched",
                hook_event=event.value,
                plugins=order,
                executed=result.executed,
                failures=result.failures,
                vetoes=result.vetoes,
                duration_seconds=round(result.duration_seconds, 3),
            )
        return result

