"""Error taxonomy shared by all Unideploy components.

Internal operations report failures as structured values (``OperationError``
embedded in a result model) rather than raising. Exceptions are reserved for
boundaries where the caller cannot continue: lock timeouts surfaced by the
lock context manager, invalid state machine transitions, and malformed
plugin declarations.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    """Classification of deployment failures.

    Attributes:
        VALIDATION: Preflight failed (disk, port, image); nothing mutated
        PREPARATION: Artifact generation failed; nothing started
        DEPLOYMENT: Containers failed to start
        VERIFICATION: Post-cutover health check failed
        ROLLBACK: Restore itself failed; operator intervention required
        LOCK: Lock acquisition timed out; retryable
        PLUGIN: Plugin registration, activation or hook failure
    """

    VALIDATION = "validation"
    PREPARATION = "preparation"
    DEPLOYMENT = "deployment"
    VERIFICATION = "verification"
    ROLLBACK = "rollback"
    LOCK = "lock"
    PLUGIN = "plugin"

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.LOCK


class OperationError(BaseModel):
    """Structured failure description carried by result models.

    Attributes:
        kind: Error classification
        message: Human readable description
        details: Extra diagnostic data (paths, container logs, cycle paths)
    """

    kind: ErrorKind = Field(description="Error classification")
    message: str = Field(description="Error message")
    details: dict[str, Any] = Field(default_factory=dict, description="Diagnostics")

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class UnideployError(Exception):
    """Base class for exceptions raised by Unideploy."""

    kind: ErrorKind = ErrorKind.DEPLOYMENT

    def to_error(self, **details: Any) -> OperationError:
        return OperationError(kind=self.kind, message=str(self), details=details)


class LockTimeoutError(UnideployError):
    """Raised when a lock cannot be acquired within its timeout.

    Attributes:
        lock_path: Directory or file that could not be locked
        timeout_seconds: Timeout that elapsed
        holder: Owner info of the current holder, if readable
    """

    kind = ErrorKind.LOCK

    def __init__(self, lock_path: str, timeout_seconds: float, holder: str | None = None):
        self.lock_path = lock_path
        self.timeout_seconds = timeout_seconds
        self.holder = holder
        msg = f"Timed out after {timeout_seconds}s waiting for lock {lock_path}"
        if holder:
            msg += f" (held by {holder})"
        super().__init__(msg)


class ContainerRuntimeError(UnideployError):
    """Raised when the container runtime cannot answer a query."""


class RegistryError(UnideployError):
    """Raised for unrecoverable registry document problems."""


class PluginError(UnideployError):
    """Raised for invalid plugin declarations (bad callback, self-dependency)."""

    kind = ErrorKind.PLUGIN


class HookVeto(UnideployError):
    """Raised by a hook callback to veto the current lifecycle transition.

    A veto is never retried by the dispatcher. The orchestrator treats a veto
    during ``pre_deploy`` as a preparation failure.
    """

    kind = ErrorKind.PLUGIN
