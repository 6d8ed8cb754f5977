"""Unit tests for the plugin registry.

Tests cover:
- Registration of plugins, arguments, hooks and dependencies
- Argument resolution (override, environment, default)
- Dependency ordering and the cycle policy
- Verification reports and the ASCII tree
- Discovery from a plugin directory
- Activation in dependency order
"""

from __future__ import annotations

from pathlib import Path
from typing import Mapping

import pytest

from unideploy.errors import ErrorKind, PluginError
from unideploy.models import HookEvent
from unideploy.plugins.base import HookCall, Plugin, PluginDependency, PluginDescriptor
from unideploy.plugins.registry import PluginRegistry


def _plugin(name: str, *deps: str, optional: tuple[str, ...] = ()) -> PluginDescriptor:
    return PluginDescriptor(
        name=name,
        dependencies=[
            *(PluginDependency(name=d) for d in deps),
            *(PluginDependency(name=d, optional=True) for d in optional),
        ],
    )


@pytest.fixture
def registry() -> PluginRegistry:
    return PluginRegistry(environ={})


class Recorder(Plugin):
    """Plugin recording its activation order into a shared list."""

    def __init__(self, name: str, log: list[str], *deps: str, fail: bool = False) -> None:
        self.name = name
        self.log = log
        self.deps = deps
        self.fail = fail

    def register(self) -> PluginDescriptor:
        return PluginDescriptor(
            name=self.name,
            args={f"{self.name.upper()}_LEVEL": "info"},
            dependencies=[PluginDependency(name=d) for d in self.deps],
        )

    async def activate(self, args: Mapping[str, str]) -> None:
        if self.fail:
            raise RuntimeError("missing credentials")
        self.log.append(self.name)


class TestRegistration:
    def test_register_descriptor(self, registry: PluginRegistry) -> None:
        def on_deploy(call: HookCall) -> None:
            pass

        registry.register(
            PluginDescriptor(name="audit", args={"AUDIT_PATH": "/tmp/audit.log"}),
            hooks={HookEvent.POST_DEPLOY: [on_deploy]},
            deps=["notifier"],
        )

        assert "audit" in registry
        assert registry.names == ["audit"]
        assert [h.plugin for h in registry.hooks_for(HookEvent.POST_DEPLOY)] == ["audit"]
        assert registry.dependencies("audit") == [PluginDependency(name="notifier")]
        assert registry.plugin_args("audit") == {"AUDIT_PATH": "/tmp/audit.log"}

    def test_duplicate_name_rejected(self, registry: PluginRegistry) -> None:
        registry.register(_plugin("audit"))
        with pytest.raises(PluginError, match="already registered"):
            registry.register(_plugin("audit"))

    def test_self_dependency_rejected(self, registry: PluginRegistry) -> None:
        with pytest.raises(PluginError, match="cannot depend on itself"):
            registry.register(_plugin("audit", "audit"))

    def test_unknown_event_rejected(self, registry: PluginRegistry) -> None:
        with pytest.raises(PluginError, match="Unknown hook event"):
            registry.register_hook("pre_launch", "audit", lambda call: None)

    def test_non_callable_rejected(self, registry: PluginRegistry) -> None:
        with pytest.raises(PluginError, match="not callable"):
            registry.register_hook(HookEvent.PRE_SETUP, "audit", "not-a-function")

    def test_unknown_descriptor(self, registry: PluginRegistry) -> None:
        with pytest.raises(PluginError):
            registry.descriptor("ghost")

    def test_duplicate_dependency_ignored(self, registry: PluginRegistry) -> None:
        registry.register(_plugin("audit", "notifier"))
        registry.register_dependency("audit", "notifier")
        assert len(registry.dependencies("audit")) == 1


class TestArguments:
    def test_resolution_order(self) -> None:
        registry = PluginRegistry(environ={"NOTIFY_LEVEL": "error", "NOTIFY_CHAT": "env-chat"})
        registry.register(
            PluginDescriptor(
                name="notifier",
                args={"NOTIFY_LEVEL": "info", "NOTIFY_CHAT": "", "NOTIFY_TOKEN": "unset"},
            )
        )
        registry.set_arg_overrides({"NOTIFY_CHAT": "doc-chat"})

        assert registry.get_arg("NOTIFY_CHAT") == "doc-chat"
        assert registry.get_arg("NOTIFY_LEVEL") == "error"
        assert registry.get_arg("NOTIFY_TOKEN") == "unset"
        assert registry.get_arg("UNDECLARED", "fallback") == "fallback"

    def test_overrides_are_replaced_per_deployment(self, registry: PluginRegistry) -> None:
        registry.register(PluginDescriptor(name="notifier", args={"NOTIFY_LEVEL": "info"}))

        registry.set_arg_overrides({"NOTIFY_LEVEL": "warning"})
        registry.set_arg_overrides({})

        assert registry.get_arg("NOTIFY_LEVEL") == "info"


class TestSort:
    def test_dependencies_come_first(self, registry: PluginRegistry) -> None:
        registry.register(_plugin("deploy-gate", "metrics"))
        registry.register(_plugin("metrics", "logger"))
        registry.register(_plugin("logger"))

        result = registry.sort(["deploy-gate", "metrics", "logger"])

        assert result.order == ["logger", "metrics", "deploy-gate"]
        assert result.acyclic

    def test_input_order_breaks_ties(self, registry: PluginRegistry) -> None:
        for name in ("b", "a", "c"):
            registry.register(_plugin(name))

        assert registry.sort(["c", "a", "b"]).order == ["c", "a", "b"]

    def test_cycle_policy(self, registry: PluginRegistry) -> None:
        """Cyclic plugins follow the acyclic ones; their dependents come last."""
        registry.register(_plugin("a", "b"))
        registry.register(_plugin("b", "a"))
        registry.register(_plugin("c", "a"))
        registry.register(_plugin("d"))

        result = registry.sort(["a", "b", "c", "d"])

        assert result.order == ["d", "a", "b", "c"]
        assert result.cyclic == ["a", "b"]
        assert result.blocked == ["c"]
        assert result.cycle_paths == ["a -> b -> a"]

    def test_optional_dependency_orders_when_possible(self, registry: PluginRegistry) -> None:
        registry.register(_plugin("notifier", optional=("metrics",)))
        registry.register(_plugin("metrics"))

        assert registry.sort(["notifier", "metrics"]).order == ["metrics", "notifier"]

    def test_optional_edge_yields_to_required_edge(self, registry: PluginRegistry) -> None:
        registry.register(_plugin("a", optional=("b",)))
        registry.register(_plugin("b", "a"))

        result = registry.sort(["a", "b"])

        assert result.order == ["a", "b"]
        assert result.cycles == []

    def test_missing_dependencies(self, registry: PluginRegistry) -> None:
        registry.register(_plugin("audit", "storage", optional=("metrics",)))

        result = registry.sort()

        assert result.order == ["audit"]
        assert result.missing == {"audit": ["storage"]}

    def test_unknown_names_ignored(self, registry: PluginRegistry) -> None:
        registry.register(_plugin("audit"))
        assert registry.sort(["ghost", "audit"]).order == ["audit"]


class TestVerifyAndVisualize:
    def test_verify_reports_problems(self, registry: PluginRegistry) -> None:
        registry.register(_plugin("a", "b"))
        registry.register(_plugin("b", "a"))
        registry.register(_plugin("audit", "storage", optional=("metrics",)))

        report = registry.verify()

        assert report.ok is False
        assert report.missing_required == {"audit": ["storage"]}
        assert report.missing_optional == {"audit": ["metrics"]}
        assert report.cycles == ["a -> b -> a"]
        assert any("storage" in s for s in report.suggestions)
        assert any("optional" in s for s in report.suggestions)

    def test_verify_clean_subset(self, registry: PluginRegistry) -> None:
        registry.register(_plugin("logger"))
        registry.register(_plugin("metrics", "logger"))
        registry.register(_plugin("a", "b"))
        registry.register(_plugin("b", "a"))

        assert registry.verify(["metrics", "logger"]).ok is True

    def test_visualize_markers(self, registry: PluginRegistry) -> None:
        registry.register(_plugin("gate", "notifier", "storage", optional=("metrics",)))
        registry.register(_plugin("notifier", "gate"))
        registry.register(_plugin("metrics"))

        tree = registry.visualize(["gate"])

        assert tree.splitlines() == [
            "gate",
            "├── notifier",
            "│   └── gate [CYCLE]",
            "├── storage [MISSING]",
            "└── metrics [OPTIONAL]",
        ]


class TestDiscovery:
    def test_discover_plugin_table(self, registry: PluginRegistry, tmp_path: Path) -> None:
        (tmp_path / "audit.py").write_text(
            "from unideploy.plugins.base import Plugin, PluginDescriptor\n"
            "\n"
            "class Audit(Plugin):\n"
            "    name = 'audit'\n"
            "\n"
            "    def register(self):\n"
            "        return PluginDescriptor(name=self.name, args={'AUDIT_PATH': ''})\n"
            "\n"
            "PLUGINS = [Audit, PluginDescriptor(name='audit-extra')]\n"
        )
        (tmp_path / "broken.py").write_text("PLUGINS = [object()]\n")
        (tmp_path / "no_table.py").write_text("VALUE = 1\n")
        (tmp_path / "_private.py").write_text("raise RuntimeError('never imported')\n")

        result = registry.discover(tmp_path)

        assert result.loaded == ["audit", "audit-extra"]
        assert len(result.errors) == 2
        assert all(e.kind is ErrorKind.PLUGIN for e in result.errors)
        assert registry.names == ["audit", "audit-extra"]

    def test_discover_missing_directory(self, registry: PluginRegistry, tmp_path: Path) -> None:
        result = registry.discover(tmp_path / "absent")
        assert result.loaded == []
        assert result.errors == []


class TestActivation:
    @pytest.mark.asyncio
    async def test_activation_follows_dependencies(self, registry: PluginRegistry) -> None:
        log: list[str] = []
        registry.register(Recorder("gate", log, "notifier"))
        registry.register(Recorder("notifier", log))

        report = await registry.activate(["gate", "notifier", "ghost"])

        assert log == ["notifier", "gate"]
        assert report.activated == ["notifier", "gate"]
        assert report.unknown == ["ghost"]
        assert registry.active == ["notifier", "gate"]

    @pytest.mark.asyncio
    async def test_failed_activation_is_reported(self, registry: PluginRegistry) -> None:
        log: list[str] = []
        registry.register(Recorder("notifier", log, fail=True))
        registry.register(Recorder("audit", log))

        report = await registry.activate(["notifier", "audit"])

        assert report.success is False
        assert report.errors[0].details == {"plugin": "notifier"}
        assert registry.active == ["audit"]

    @pytest.mark.asyncio
    async def test_activation_is_idempotent(self, registry: PluginRegistry) -> None:
        log: list[str] = []
        registry.register(Recorder("notifier", log))

        await registry.activate(["notifier"])
        await registry.activate(["notifier"])

        assert log == ["notifier"]
