"""Service registry and the directory lock manager it is built on."""

from unideploy.registry.lock import LockInfo, LockKind, LockManager, LockResult
from unideploy.registry.service_registry import (
    RegistryDocument,
    RegistryResult,
    ServiceRegistry,
    service_url,
)

__all__ = [
    "LockInfo",
    "LockKind",
    "LockManager",
    "LockResult",
    "RegistryDocument",
    "RegistryResult",
    "ServiceRegistry",
    "service_url",
]
