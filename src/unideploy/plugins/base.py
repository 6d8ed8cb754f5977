"""Plugin interface.

A plugin is a class implementing ``Plugin``. Its ``register()`` method
returns a ``PluginDescriptor`` declaring the plugin's arguments (with
defaults), its hook callbacks per lifecycle event, and the other plugins
it depends on. The registry never looks plugins up by constructed names;
plugin modules expose an explicit ``PLUGINS`` table instead.

Example:
    >>> class AuditLog(Plugin):
    ...     name = "audit-log"
    ...
    ...     def register(self) -> PluginDescriptor:
    ...         return PluginDescriptor(
    ...             name=self.name,
    ...             args={"AUDIT_LOG_PATH": "/var/log/unideploy-audit.log"},
    ...             hooks={HookEvent.POST_DEPLOY: [self.record]},
    ...             dependencies=[PluginDependency(name="telegram-notifier", optional=True)],
    ...         )
    ...
    ...     async def record(self, call: HookCall) -> None:
    ...         ...
    >>>
    >>> PLUGINS = [AuditLog]
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, ClassVar, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field

from unideploy.models import DeploymentContext, HookEvent


class HookCall(BaseModel):
    """Argument passed to every hook callback.

    Attributes:
        event: Lifecycle event being dispatched
        plugin: Name of the plugin owning the callback
        context: Deployment being processed, if any
        payload: Event-specific data (error messages, paths, versions)
        args: Resolved plugin argument values
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    event: HookEvent
    plugin: str
    context: DeploymentContext | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    args: Mapping[str, str] = Field(default_factory=dict)


HookCallback = Callable[[HookCall], Union[Any, Awaitable[Any]]]


class PluginDependency(BaseModel):
    """Dependency of one plugin on another.

    Attributes:
        name: Name of the plugin depended upon
        optional: Missing or cyclic optional dependencies are skipped
    """

    name: str
    optional: bool = False


class PluginDescriptor(BaseModel):
    """Everything a plugin contributes to the registry.

    Attributes:
        name: Unique plugin name
        description: One-line description shown by ``plugin list``
        version: Plugin version string
        args: Declared arguments mapped to their default values
        hooks: Callbacks per lifecycle event, in invocation order
        dependencies: Other plugins that must run before this one
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str = ""
    version: str = "0.0.0"
    args: dict[str, str] = Field(default_factory=dict)
    hooks: dict[HookEvent, list[HookCallback]] = Field(default_factory=dict)
    dependencies: list[PluginDependency] = Field(default_factory=list)


class Plugin(ABC):
    """Base class for Unideploy plugins.

    Subclasses set ``name`` and implement ``register``. ``activate`` is
    called once, in dependency order, before the first hook dispatch of a
    deployment; it may be a coroutine.
    """

    name: ClassVar[str] = ""

    @abstractmethod
    def register(self) -> PluginDescriptor:
        """Describe the plugin's arguments, hooks and dependencies."""

    def activate(self, args: Mapping[str, str]) -> Any:
        """Prepare the plugin with its resolved arguments."""
        return None
