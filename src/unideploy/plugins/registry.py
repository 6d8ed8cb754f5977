"""Plugin registry and dependency resolver.

The registry stores, per plugin, its declared arguments, hook callbacks
and dependencies, and resolves a plugin ordering in which every plugin
comes after its required dependencies.

Ordering policy:
- Depth-first topological sort with three-colour marking (unvisited,
  in progress, done). A back edge to an in-progress node is a cycle; the
  full path (``a -> b -> a``) is captured for diagnostics.
- Plugins on a required-dependency cycle are excluded from the ordered
  part and appended after it in input order.
- Plugins outside a cycle that require a cyclic plugin (directly or
  transitively) are ordered among themselves and placed after the cyclic
  group, so no plugin ever precedes one of its required dependencies
  unless both sit on the same cycle.
- Optional dependencies order plugins when they can; a missing or cyclic
  optional dependency is skipped silently.

Example:
    >>> registry = PluginRegistry()
    >>> registry.register(TelegramNotifier())
    >>> registry.register(ImagePolicyGate(), deps=["telegram-notifier"])
    >>> result = registry.sort(["image-policy", "telegram-notifier"])
    >>> result.order
    ['telegram-notifier', 'image-policy']
"""

from __future__ import annotations

import importlib.util
import inspect
import os
import sys
from enum import Enum
from importlib.metadata import entry_points
from pathlib import Path
from types import ModuleType
from typing import Any, Iterable, Mapping

import structlog
from pydantic import BaseModel, ConfigDict, Field

from unideploy.errors import ErrorKind, OperationError, PluginError
from unideploy.models import HookEvent
from unideploy.plugins.base import (
    HookCallback,
    Plugin,
    PluginDependency,
    PluginDescriptor,
)

logger = structlog.get_logger(__name__)

PLUGIN_TABLE = "PLUGINS"


class _Mark(Enum):
    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


class HookRegistration(BaseModel):
    """A callback registered for an event by a plugin."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    event: HookEvent
    plugin: str
    callback: HookCallback

    @property
    def callback_name(self) -> str:
        return getattr(self.callback, "__qualname__", repr(self.callback))


class SortResult(BaseModel):
    """Outcome of dependency resolution.

    Attributes:
        order: Final invocation order (acyclic, then cyclic, then blocked)
        cyclic: Plugins on a required-dependency cycle, in input order
        blocked: Plugins that require a cyclic plugin
        cycles: Cycle paths, each starting and ending with the same plugin
        missing: Required dependencies that are not registered, per plugin
    """

    order: list[str] = Field(default_factory=list)
    cyclic: list[str] = Field(default_factory=list)
    blocked: list[str] = Field(default_factory=list)
    cycles: list[list[str]] = Field(default_factory=list)
    missing: dict[str, list[str]] = Field(default_factory=dict)

    @property
    def acyclic(self) -> bool:
        return not self.cycles

    @property
    def cycle_paths(self) -> list[str]:
        return [" -> ".join(path) for path in self.cycles]


class VerificationReport(BaseModel):
    """Result of ``PluginRegistry.verify``.

    Attributes:
        plugins: Plugins that were checked
        missing_required: Unregistered required dependencies per plugin
        missing_optional: Unregistered optional dependencies per plugin
        cycles: Cycle paths in ``a -> b -> a`` form
        suggestions: Hints for fixing the reported problems
    """

    plugins: list[str] = Field(default_factory=list)
    missing_required: dict[str, list[str]] = Field(default_factory=dict)
    missing_optional: dict[str, list[str]] = Field(default_factory=dict)
    cycles: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_required and not self.cycles


class ActivationReport(BaseModel):
    """Result of ``PluginRegistry.activate``."""

    activated: list[str] = Field(default_factory=list)
    unknown: list[str] = Field(default_factory=list)
    errors: list[OperationError] = Field(default_factory=list)
    sort: SortResult = Field(default_factory=SortResult)

    @property
    def success(self) -> bool:
        return not self.errors


class DiscoveryResult(BaseModel):
    """Plugins loaded by ``discover`` and the modules that failed."""

    loaded: list[str] = Field(default_factory=list)
    errors: list[OperationError] = Field(default_factory=list)


class PluginRegistry:
    """Explicit, injectable store of plugins, their arguments, hooks and dependencies.

    Attributes:
        environ: Environment consulted for argument overrides
    """

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self.environ = os.environ if environ is None else environ
        self._plugins: dict[str, Plugin | None] = {}
        self._descriptors: dict[str, PluginDescriptor] = {}
        self._arg_defaults: dict[str, tuple[str, str]] = {}
        self._arg_overrides: dict[str, str] = {}
        self._hooks: dict[HookEvent, list[HookRegistration]] = {}
        self._deps: dict[str, list[PluginDependency]] = {}
        self._active: list[str] = []
        self._logger = logger.bind(component="PluginRegistry")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        plugin: Plugin | PluginDescriptor,
        args: Mapping[str, str] | None = None,
        hooks: Mapping[HookEvent, Iterable[HookCallback]] | None = None,
        deps: Iterable[PluginDependency | str] | None = None,
    ) -> PluginDescriptor:
        """Register a plugin with its arguments, hooks and dependencies.

        Args:
            plugin: Plugin instance (its ``register()`` supplies the
                descriptor) or a bare descriptor
            args: Extra argument defaults
            hooks: Extra hook callbacks
            deps: Extra dependencies (names are required dependencies)

        Returns:
            The descriptor that was registered

        Raises:
            PluginError: If the plugin is already registered, a callback is
                not callable, or the plugin depends on itself
        """
        if isinstance(plugin, Plugin):
            descriptor = plugin.register()
            instance: Plugin | None = plugin
        else:
            descriptor = plugin
            instance = None

        name = descriptor.name
        if not name:
            raise PluginError("Plugin name must not be empty")
        if name in self._descriptors:
            raise PluginError(f"Plugin already registered: {name}")

        self._plugins[name] = instance
        self._descriptors[name] = descriptor
        self._deps.setdefault(name, [])

        for arg, default in {**descriptor.args, **(args or {})}.items():
            self.register_arg(name, arg, default)
        for event, callbacks in descriptor.hooks.items():
            for callback in callbacks:
                self.register_hook(event, name, callback)
        for event, callbacks in (hooks or {}).items():
            for callback in callbacks:
                self.register_hook(event, name, callback)
        for dep in [*descriptor.dependencies, *(deps or [])]:
            if isinstance(dep, str):
                dep = PluginDependency(name=dep)
            self.register_dependency(name, dep.name, dep.optional)

        self._logger.info(
            "plugin_registered",
            plugin=name,
            version=descriptor.version,
            args=len(descriptor.args),
            hooks=sum(len(v) for v in descriptor.hooks.values()),
            dependencies=len(self._deps[name]),
        )
        return descriptor

    def register_arg(self, plugin: str, name: str, default: str = "") -> None:
        """Declare a plugin argument with its default value."""
        owner = self._arg_defaults.get(name)
        if owner is not None and owner[0] != plugin:
            self._logger.warning(
                "plugin_arg_shadowed", arg=name, plugin=plugin, previous_owner=owner[0]
            )
        self._arg_defaults[name] = (plugin, str(default))

    def set_arg_overrides(self, overrides: Mapping[str, str]) -> None:
        """Set per-deployment argument values (from the deployment document)."""
        self._arg_overrides = {k: str(v) for k, v in overrides.items()}

    def get_arg(self, name: str, default: str | None = None) -> str | None:
        """Resolve an argument: deployment override, then environment, then declared default."""
        if name in self._arg_overrides:
            return self._arg_overrides[name]
        if name in self.environ:
            return self.environ[name]
        if name in self._arg_defaults:
            return self._arg_defaults[name][1]
        return default

    def plugin_args(self, plugin: str) -> dict[str, str]:
        """Resolved values of all arguments declared by a plugin."""
        return {
            arg: self.get_arg(arg) or ""
            for arg, (owner, _) in self._arg_defaults.items()
            if owner == plugin
        }

    def register_hook(self, event: HookEvent | str, plugin: str, callback: HookCallback) -> None:
        """Attach a callback to a lifecycle event.

        Raises:
            PluginError: If the event is unknown or the callback is not callable
        """
        try:
            event = HookEvent(event)
        except ValueError as e:
            raise PluginError(f"Unknown hook event {event!r} for plugin {plugin}") from e
        if not callable(callback):
            raise PluginError(f"Hook callback for {event.value} in {plugin} is not callable")

        self._hooks.setdefault(event, []).append(
            HookRegistration(event=event, plugin=plugin, callback=callback)
        )

    def register_dependency(self, plugin: str, dependency: str, optional: bool = False) -> None:
        """Declare that ``plugin`` must run after ``dependency``.

        Unregistered targets are accepted (they may be registered later)
        but logged. An edge that closes a cycle is accepted and reported;
        ordering handles it per the cycle policy.

        Raises:
            PluginError: If a plugin depends on itself
        """
        if plugin == dependency:
            raise PluginError(f"Plugin {plugin} cannot depend on itself")

        deps = self._deps.setdefault(plugin, [])
        if any(d.name == dependency for d in deps):
            return
        deps.append(PluginDependency(name=dependency, optional=optional))

        if dependency not in self._descriptors:
            self._logger.warning(
                "plugin_dependency_unregistered",
                plugin=plugin,
                dependency=dependency,
                optional=optional,
            )
        elif not optional:
            path = self._find_path(dependency, plugin)
            if path is not None:
                self._logger.warning(
                    "plugin_dependency_cycle",
                    plugin=plugin,
                    dependency=dependency,
                    cycle=" -> ".join([plugin, *path]),
                )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def names(self) -> list[str]:
        return list(self._descriptors)

    @property
    def active(self) -> list[str]:
        return list(self._active)

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def descriptor(self, name: str) -> PluginDescriptor:
        try:
            return self._descriptors[name]
        except KeyError:
            raise PluginError(f"Unknown plugin: {name}") from None

    def dependencies(self, name: str) -> list[PluginDependency]:
        return list(self._deps.get(name, []))

    def hooks_for(self, event: HookEvent) -> list[HookRegistration]:
        return list(self._hooks.get(event, []))

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _load_module(self, path: Path) -> ModuleType:
        module_name = f"unideploy_plugins.{path.stem}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise PluginError(f"Cannot load plugin module {path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(module_name, None)
            raise
        return module

    def _register_entry(self, entry: Any, origin: str) -> str:
        if inspect.isclass(entry) and issubclass(entry, Plugin):
            entry = entry()
        if not isinstance(entry, (Plugin, PluginDescriptor)):
            raise PluginError(f"{origin}: {entry!r} is not a Plugin or PluginDescriptor")
        return self.register(entry).name

    def discover(self, directory: Path) -> DiscoveryResult:
        """Load plugins from every ``*.py`` module in a directory.

        Each module must expose a ``PLUGINS`` sequence of Plugin classes,
        Plugin instances or PluginDescriptors. Modules starting with an
        underscore are skipped. A failing module is recorded and does not
        stop discovery of the others.

        Args:
            directory: Directory to scan

        Returns:
            DiscoveryResult with loaded plugin names and per-module errors
        """
        result = DiscoveryResult()
        if not directory.is_dir():
            self._logger.warning("plugin_directory_missing", directory=str(directory))
            return result

        for path in sorted(directory.glob("*.py")):
            if path.name.startswith("_"):
                continue
            try:
                module = self._load_module(path)
                table = getattr(module, PLUGIN_TABLE, None)
                if table is None:
                    raise PluginError(f"{path.name} does not define {PLUGIN_TABLE}")
                for entry in table:
                    result.loaded.append(self._register_entry(entry, path.name))
            except Exception as e:
                self._logger.error(
                    "plugin_module_failed",
                    module=str(path),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.errors.append(
                    OperationError(
                        kind=ErrorKind.PLUGIN,
                        message=f"{path.name}: {e}",
                        details={"module": str(path)},
                    )
                )

        self._logger.info(
            "plugins_discovered",
            directory=str(directory),
            loaded=result.loaded,
            failed=len(result.errors),
        )
        return result

    def discover_entry_points(self, group: str = "unideploy.plugins") -> DiscoveryResult:
        """Load plugins advertised by installed distributions."""
        result = DiscoveryResult()
        for ep in entry_points().select(group=group):
            if ep.name in self._descriptors:
                continue
            try:
                result.loaded.append(self._register_entry(ep.load(), f"entry point {ep.name}"))
            except Exception as e:
                self._logger.error(
                    "plugin_entry_point_failed",
                    entry_point=ep.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.errors.append(
                    OperationError(kind=ErrorKind.PLUGIN, message=f"{ep.name}: {e}")
                )
        return result

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _find_path(self, start: str, target: str) -> list[str] | None:
        """Required-dependency path from start to target, inclusive."""
        stack: list[tuple[str, list[str]]] = [(start, [start])]
        seen: set[str] = set()
        while stack:
            node, path = stack.pop()
            if node == target:
                return path
            if node in seen:
                continue
            seen.add(node)
            for dep in self._deps.get(node, []):
                if not dep.optional and dep.name in self._descriptors:
                    stack.append((dep.name, [*path, dep.name]))
        return None

    def _required_edges(self, nodes: set[str]) -> dict[str, list[str]]:
        return {
            n: [d.name for d in self._deps.get(n, []) if not d.optional and d.name in nodes]
            for n in nodes
        }

    def _find_cycles(self, ordered: list[str], edges: dict[str, list[str]]) -> list[list[str]]:
        """Three-colour DFS collecting the path of every back edge."""
        marks = {n: _Mark.UNVISITED for n in ordered}
        stack: list[str] = []
        cycles: list[list[str]] = []
        seen_cycles: set[tuple[str, ...]] = set()

        def visit(node: str) -> None:
            marks[node] = _Mark.IN_PROGRESS
            stack.append(node)
            for dep in edges[node]:
                if marks[dep] is _Mark.IN_PROGRESS:
                    path = [*stack[stack.index(dep):], dep]
                    # Normalise rotation so each cycle is reported once
                    body = path[:-1]
                    pivot = body.index(min(body))
                    key = tuple(body[pivot:] + body[:pivot])
                    if key not in seen_cycles:
                        seen_cycles.add(key)
                        cycles.append(path)
                elif marks[dep] is _Mark.UNVISITED:
                    visit(dep)
            stack.pop()
            marks[node] = _Mark.DONE

        for node in ordered:
            if marks[node] is _Mark.UNVISITED:
                visit(node)
        return cycles

    @staticmethod
    def _reaches(start: str, edges: dict[str, list[str]]) -> set[str]:
        reached: set[str] = set()
        pending = list(edges[start])
        while pending:
            node = pending.pop()
            if node in reached:
                continue
            reached.add(node)
            pending.extend(edges[node])
        return reached

    def _topological(self, ordered: list[str], members: set[str]) -> list[str]:
        """Three-colour DFS post-order over ``members``, honouring optional edges."""
        marks = {n: _Mark.UNVISITED for n in ordered if n in members}
        edges = self._required_edges(set(marks))
        result: list[str] = []

        def visit(node: str) -> None:
            marks[node] = _Mark.IN_PROGRESS
            for dep in self._deps.get(node, []):
                if dep.name not in marks or marks[dep.name] is not _Mark.UNVISITED:
                    continue
                # An optional edge loses against a required path in the other direction
                if dep.optional and node in self._reaches(dep.name, edges):
                    continue
                visit(dep.name)
            marks[node] = _Mark.DONE
            result.append(node)

        for node in ordered:
            if node in marks and marks[node] is _Mark.UNVISITED:
                visit(node)
        return result

    def sort(self, names: Iterable[str] | None = None) -> SortResult:
        """Resolve an invocation order for the given plugins.

        Dependencies outside ``names`` do not take part in ordering;
        required dependencies that are not registered at all are reported
        in ``missing``.

        Args:
            names: Plugins to order (defaults to every registered plugin),
                in the input order used for tie-breaking and cycle fallback

        Returns:
            SortResult with the order, cyclic and blocked plugins, cycle
            paths and missing dependencies
        """
        ordered: list[str] = []
        for name in self.names if names is None else names:
            if name in self._descriptors and name not in ordered:
                ordered.append(name)

        nodes = set(ordered)
        edges = self._required_edges(nodes)

        missing: dict[str, list[str]] = {}
        for name in ordered:
            absent = [
                d.name
                for d in self._deps.get(name, [])
                if not d.optional and d.name not in self._descriptors
            ]
            if absent:
                missing[name] = absent

        cycles = self._find_cycles(ordered, edges)
        reach = {n: self._reaches(n, edges) for n in ordered}
        cyclic = [n for n in ordered if n in reach[n]]
        cyclic_set = set(cyclic)
        blocked = [
            n for n in ordered if n not in cyclic_set and reach[n] & cyclic_set
        ]
        clean = nodes - cyclic_set - set(blocked)

        order = [
            *self._topological(ordered, clean),
            *cyclic,
            *self._topological(ordered, set(blocked)),
        ]

        if cycles:
            self._logger.warning(
                "plugin_cycles_detected",
                cycles=[" -> ".join(c) for c in cycles],
                cyclic=cyclic,
                blocked=blocked,
            )

        return SortResult(
            order=order, cyclic=cyclic, blocked=blocked, cycles=cycles, missing=missing
        )

    def verify(self, names: Iterable[str] | None = None) -> VerificationReport:
        """Check that dependencies exist and form no cycles."""
        selected = list(self.names if names is None else names)
        report = VerificationReport(plugins=selected)

        for name in selected:
            if name not in self._descriptors:
                report.missing_required.setdefault(name, []).append(name)
                report.suggestions.append(f"Register plugin {name} or remove it from the plugin list")
                continue
            for dep in self._deps.get(name, []):
                if dep.name in self._descriptors:
                    continue
                bucket = report.missing_optional if dep.optional else report.missing_required
                bucket.setdefault(name, []).append(dep.name)
                if not dep.optional:
                    report.suggestions.append(
                        f"Install plugin {dep.name} required by {name}"
                    )

        # Cycles are a property of the whole registered graph
        everything = self.names
        cycles = self._find_cycles(everything, self._required_edges(set(everything)))
        relevant = set(selected)
        for path in cycles:
            if relevant & set(path):
                report.cycles.append(" -> ".join(path))
                report.suggestions.append(
                    f"Break the cycle {' -> '.join(path)} by making one dependency optional"
                )

        self._logger.info(
            "plugin_dependencies_verified",
            plugins=len(selected),
            missing=sum(len(v) for v in report.missing_required.values()),
            circular=len(report.cycles),
        )
        return report

    def visualize(self, names: Iterable[str] | None = None) -> str:
        """Render the dependency graph as an ASCII tree.

        Markers: ``[OPTIONAL]`` optional edge, ``[MISSING]`` unregistered
        dependency, ``[CYCLE]`` edge back to a plugin already on the path.
        """
        selected = [n for n in (self.names if names is None else names) if n in self._descriptors]
        depended = {d.name for n in selected for d in self._deps.get(n, [])}
        roots = [n for n in selected if n not in depended] or selected
        lines: list[str] = []

        def walk(node: str, prefix: str, path: list[str]) -> None:
            deps = self._deps.get(node, [])
            for i, dep in enumerate(deps):
                last = i == len(deps) - 1
                branch = "└── " if last else "├── "
                markers = []
                if dep.optional:
                    markers.append("[OPTIONAL]")
                if dep.name not in self._descriptors:
                    markers.append("[MISSING]")
                elif dep.name in path:
                    markers.append("[CYCLE]")
                label = " ".join([dep.name, *markers])
                lines.append(f"{prefix}{branch}{label}")
                if dep.name in self._descriptors and dep.name not in path:
                    walk(dep.name, prefix + ("    " if last else "│   "), [*path, dep.name])

        for root in roots:
            lines.append(root)
            walk(root, "", [root])
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    async def activate(self, names: Iterable[str]) -> ActivationReport:
        """Activate plugins in resolved dependency order.

        Unknown names are reported and skipped. A plugin whose activation
        raises is recorded as a plugin error; the others still activate.
        """
        requested = list(dict.fromkeys(names))
        report = ActivationReport(unknown=[n for n in requested if n not in self._descriptors])
        for name in report.unknown:
            self._logger.warning("plugin_unknown", plugin=name)

        report.sort = self.sort(requested)
        for name in report.sort.order:
            if name in self._active:
                report.activated.append(name)
                continue
            instance = self._plugins.get(name)
            try:
                if instance is not None:
                    outcome = instance.activate(self.plugin_args(name))
                    if inspect.isawaitable(outcome):
                        await outcome
            except Exception as e:
                self._logger.error(
                    "plugin_activation_failed",
                    plugin=name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                report.errors.append(
                    OperationError(
                        kind=ErrorKind.PLUGIN,
                        message=f"Activation of {name} failed: {e}",
                        details={"plugin": name},
                    )
                )
                continue
            self._active.append(name)
            report.activated.append(name)

        self._logger.info(
            "plugins_activated",
            activated=report.activated,
            unknown=report.unknown,
            failed=len(report.errors),
        )
        return report
