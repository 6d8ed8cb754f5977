"""Unit tests for the hook dispatcher.

Tests cover:
- Dependency-ordered invocation
- Sync and async callbacks
- Retry budget and failure aggregation
- Vetoes
- Restriction to activated plugins
"""

from __future__ import annotations

import pytest

from unideploy.config import UnideployConfig
from unideploy.errors import ErrorKind, HookVeto
from unideploy.models import DeploymentContext, HookEvent
from unideploy.orchestrator.deployer import DeploymentOrchestrator
from unideploy.plugins.base import HookCall, PluginDependency, PluginDescriptor
from unideploy.plugins.dispatcher import HookDispatcher
from unideploy.plugins.registry import PluginRegistry
from unideploy.registry.service_registry import ServiceRegistry


@pytest.fixture
def registry() -> PluginRegistry:
    return PluginRegistry(environ={})


@pytest.fixture
def context() -> DeploymentContext:
    return DeploymentContext(app_name="shop", image="acme/shop", tag="v2")


async def _activate_all(registry: PluginRegistry) -> None:
    await registry.activate(registry.names)


@pytest.mark.asyncio
async def test_callbacks_run_in_dependency_order(
    registry: PluginRegistry, context: DeploymentContext
) -> None:
    calls: list[str] = []

    def sync_hook(call: HookCall) -> None:
        calls.append(f"{call.plugin}:sync")

    async def async_hook(call: HookCall) -> None:
        calls.append(f"{call.plugin}:async")

    registry.register(
        PluginDescriptor(
            name="notifier",
            hooks={HookEvent.POST_DEPLOY: [async_hook]},
            dependencies=[PluginDependency(name="audit")],
        )
    )
    registry.register(
        PluginDescriptor(name="audit", hooks={HookEvent.POST_DEPLOY: [sync_hook, async_hook]})
    )
    await _activate_all(registry)

    result = await HookDispatcher(registry).execute(HookEvent.POST_DEPLOY, context)

    assert calls == ["audit:sync", "audit:async", "notifier:async"]
    assert result.order == ["audit", "notifier"]
    assert result.as_tuple() == (3, 0)
    assert result.ok


@pytest.mark.asyncio
async def test_call_carries_context_payload_and_args(
    registry: PluginRegistry, context: DeploymentContext
) -> None:
    seen: list[HookCall] = []
    registry.register(
        PluginDescriptor(
            name="notifier",
            args={"NOTIFY_LEVEL": "info"},
            hooks={HookEvent.HEALTH_CHECK_FAILED: [seen.append]},
        )
    )
    registry.set_arg_overrides({"NOTIFY_LEVEL": "error"})
    await _activate_all(registry)

    await HookDispatcher(registry).execute(
        HookEvent.HEALTH_CHECK_FAILED, context, message="HTTP status 503"
    )

    call = seen[0]
    assert call.event is HookEvent.HEALTH_CHECK_FAILED
    assert call.context is context
    assert call.payload == {"message": "HTTP status 503"}
    assert call.args == {"NOTIFY_LEVEL": "error"}


@pytest.mark.asyncio
async def test_failing_callback_is_retried_then_counted(
    registry: PluginRegistry, context: DeploymentContext
) -> None:
    attempts: list[int] = []
    after: list[str] = []

    def flaky(call: HookCall) -> None:
        attempts.append(1)
        raise ConnectionError("webhook unreachable")

    registry.register(PluginDescriptor(name="webhook", hooks={HookEvent.PRE_START: [flaky]}))
    registry.register(
        PluginDescriptor(name="audit", hooks={HookEvent.PRE_START: [lambda c: after.append(c.plugin)]})
    )
    await _activate_all(registry)
    dispatcher = HookDispatcher(registry, max_attempts=3, retry_delay_seconds=0.0)

    result = await dispatcher.execute(HookEvent.PRE_START, context)

    assert len(attempts) == 3
    assert after == ["audit"]
    assert result.as_tuple() == (2, 1)
    assert result.ok is False
    assert result.errors[0].kind is ErrorKind.PLUGIN
    assert "webhook unreachable" in result.errors[0].message


@pytest.mark.asyncio
async def test_callback_succeeding_on_retry(
    registry: PluginRegistry, context: DeploymentContext
) -> None:
    attempts: list[int] = []

    def second_time_lucky(call: HookCall) -> None:
        attempts.append(1)
        if len(attempts) < 2:
            raise TimeoutError("slow")

    registry.register(
        PluginDescriptor(name="webhook", hooks={HookEvent.POST_START: [second_time_lucky]})
    )
    await _activate_all(registry)

    result = await HookDispatcher(registry, max_attempts=2, retry_delay_seconds=0.0).execute(
        HookEvent.POST_START, context
    )

    assert result.failures == 0
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_veto_is_not_retried(registry: PluginRegistry, context: DeploymentContext) -> None:
    attempts: list[int] = []

    def gate(call: HookCall) -> None:
        attempts.append(1)
        raise HookVeto("tag 'latest' is not allowed")

    registry.register(PluginDescriptor(name="gate", hooks={HookEvent.PRE_DEPLOY: [gate]}))
    await _activate_all(registry)

    result = await HookDispatcher(registry, max_attempts=3, retry_delay_seconds=0.0).execute(
        HookEvent.PRE_DEPLOY, context
    )

    assert attempts == [1]
    assert result.vetoed
    assert result.vetoes == ["gate"]
    assert result.failures == 0
    assert result.errors[0].details["veto"] is True


@pytest.mark.asyncio
async def test_inactive_plugins_are_skipped(
    registry: PluginRegistry, context: DeploymentContext
) -> None:
    calls: list[str] = []
    registry.register(
        PluginDescriptor(name="enabled", hooks={HookEvent.PRE_SETUP: [lambda c: calls.append(c.plugin)]})
    )
    registry.register(
        PluginDescriptor(name="dormant", hooks={HookEvent.PRE_SETUP: [lambda c: calls.append(c.plugin)]})
    )
    await registry.activate(["enabled"])

    await HookDispatcher(registry).execute(HookEvent.PRE_SETUP, context)
    await HookDispatcher(registry, only_active=False).execute(HookEvent.PRE_SETUP, context)

    assert calls == ["enabled", "enabled", "dormant"]


@pytest.mark.asyncio
async def test_event_without_hooks(registry: PluginRegistry) -> None:
    result = await HookDispatcher(registry).execute(HookEvent.PRE_CLEANUP)

    assert result.as_tuple() == (0, 0)
    assert result.order == []


class TestRetryDelay:
    def test_zero_delay_retries_immediately(self, registry: PluginRegistry) -> None:
        dispatcher = HookDispatcher(registry, max_attempts=3, retry_delay_seconds=0.0)

        assert dispatcher.max_attempts == 3
        assert dispatcher.backoff is None

    def test_positive_delay_grows_to_ceiling(self, registry: PluginRegistry) -> None:
        dispatcher = HookDispatcher(
            registry, max_attempts=3, retry_delay_seconds=0.5, backoff_multiplier=2.0
        )

        assert dispatcher.backoff is not None
        assert dispatcher.backoff.next_delay(0) == 0.5
        assert dispatcher.backoff.next_delay(10) == 4.0

    def test_orchestrator_accepts_zero_hook_delay(
        self, config: UnideployConfig, runtime, proxy
    ) -> None:
        config.deploy.hook_max_attempts = 3
        config.deploy.hook_retry_delay_seconds = 0.0

        orchestrator = DeploymentOrchestrator(
            config, ServiceRegistry(config.registry), PluginRegistry(environ={}), runtime, proxy
        )

        assert orchestrator.dispatcher.max_attempts == 3
        assert orchestrator.dispatcher.backoff is None
