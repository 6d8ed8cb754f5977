"""Deployment state machine.

Defines the allowed transitions between deployment states and records every
transition of a run. The orchestrator drives exactly one linear sequence of
states per deployment:

    validating -> preparing -> deploying -> [cutting_over] -> verifying -> done

with failure branches to ``rolling_back -> rolled_back`` or ``failed``.
"""

from __future__ import annotations

import time

import structlog
from pydantic import BaseModel, Field

from unideploy.errors import UnideployError
from unideploy.models import DeploymentContext, DeploymentState

logger = structlog.get_logger(__name__)


class InvalidTransitionError(UnideployError):
    """Raised when an invalid state transition is attempted.

    Attributes:
        current: The current deployment state.
        target: The attempted target state.
        app_name: The app whose deployment failed to transition.
    """

    def __init__(
        self, current: DeploymentState, target: DeploymentState, app_name: str | None = None
    ):
        self.current = current
        self.target = target
        self.app_name = app_name
        msg = f"Invalid transition from {current.value} to {target.value}"
        if app_name:
            msg += f" for app {app_name}"
        super().__init__(msg)


# Authoritative state machine definition
VALID_TRANSITIONS: dict[DeploymentState, set[DeploymentState]] = {
    DeploymentState.VALIDATING: {DeploymentState.PREPARING, DeploymentState.FAILED},
    DeploymentState.PREPARING: {
        DeploymentState.DEPLOYING,
        DeploymentState.DONE,  # dry run
        DeploymentState.FAILED,
    },
    DeploymentState.DEPLOYING: {
        DeploymentState.CUTTING_OVER,
        DeploymentState.VERIFYING,
        DeploymentState.ROLLING_BACK,
        DeploymentState.FAILED,
    },
    DeploymentState.CUTTING_OVER: {
        DeploymentState.VERIFYING,
        DeploymentState.ROLLING_BACK,
        DeploymentState.FAILED,
    },
    DeploymentState.VERIFYING: {
        DeploymentState.DONE,
        DeploymentState.ROLLING_BACK,
        DeploymentState.FAILED,
    },
    DeploymentState.ROLLING_BACK: {DeploymentState.ROLLED_BACK, DeploymentState.FAILED},
    DeploymentState.DONE: set(),  # Terminal
    DeploymentState.ROLLED_BACK: set(),  # Terminal
    DeploymentState.FAILED: set(),  # Terminal
}

TERMINAL_STATES = frozenset(s for s, targets in VALID_TRANSITIONS.items() if not targets)


def validate_transition(current: DeploymentState, target: DeploymentState) -> bool:
    """Validate if a state transition is allowed.

    Args:
        current: Current deployment state.
        target: Target deployment state.

    Returns:
        True if the transition is valid according to VALID_TRANSITIONS.
    """
    return target in VALID_TRANSITIONS.get(current, set())


class StateChange(BaseModel):
    """One recorded transition."""

    from_state: DeploymentState
    to_state: DeploymentState
    reason: str | None = None
    elapsed_seconds: float = Field(default=0.0, ge=0.0)


class DeploymentStateMachine:
    """Tracks and validates the state of one deployment run.

    The current state is mirrored onto ``context.state`` so collaborators
    and hook callbacks see where the deployment is.
    """

    def __init__(self, context: DeploymentContext) -> None:
        self.context = context
        self.context.state = DeploymentState.VALIDATING
        self.history: list[StateChange] = []
        self._started = time.monotonic()
        self.logger = logger.bind(component="DeploymentStateMachine")

    @property
    def state(self) -> DeploymentState:
        return self.context.state

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, target: DeploymentState, reason: str | None = None) -> StateChange:
        """Move to ``target``.

        Raises:
            InvalidTransitionError: If the transition is not valid.
        """
        current = self.context.state
        if not validate_transition(current, target):
            raise InvalidTransitionError(current, target, self.context.app_name)

        change = StateChange(
            from_state=current,
            to_state=target,
            reason=reason,
            elapsed_seconds=time.monotonic() - self._started,
        )
        self.context.state = target
        self.history.append(change)

        self.logger.info(
            "deployment_transition",
            app_name=self.context.app_name,
            from_state=current.value,
            to_state=target.value,
            reason=reason,
            elapsed_seconds=round(change.elapsed_seconds, 2),
        )
        return change

    def path(self) -> list[DeploymentState]:
        """States visited so far, starting with validating."""
        return [DeploymentState.VALIDATING] + [c.to_state for c in self.history]
