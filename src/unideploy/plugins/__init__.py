"""Plugin system: interface, registry/resolver and hook dispatcher."""

from unideploy.plugins.base import (
    HookCall,
    HookCallback,
    Plugin,
    PluginDependency,
    PluginDescriptor,
)
from unideploy.plugins.dispatcher import DispatchResult, HookDispatcher
from unideploy.plugins.registry import (
    ActivationReport,
    DiscoveryResult,
    PluginRegistry,
    SortResult,
    VerificationReport,
)

__all__ = [
    "ActivationReport",
    "DiscoveryResult",
    "DispatchResult",
    "HookCall",
    "HookCallback",
    "HookDispatcher",
    "Plugin",
    "PluginDependency",
    "PluginDescriptor",
    "PluginRegistry",
    "SortResult",
    "VerificationReport",
]
