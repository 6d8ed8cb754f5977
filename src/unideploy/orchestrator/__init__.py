"""Deployment orchestration for Unideploy.

This module implements the deployment state machine, the staging/backup
cutover protocol with its write-ahead journal, the per-app deployment lock,
the orchestrator that drives a deployment, operator rollback and app cleanup.
"""

from __future__ import annotations

from unideploy.orchestrator.app_lock import app_deployment_lock
from unideploy.orchestrator.cutover import (
    CutoverJournal,
    CutoverManager,
    CutoverPhase,
    CutoverResult,
    RecoveryAction,
    RecoveryResult,
)
from unideploy.orchestrator.cleanup import CleanupResult, CleanupService
from unideploy.orchestrator.deployer import DeploymentOrchestrator, DeploymentResult
from unideploy.orchestrator.rollback import RollbackResult, RollbackService
from unideploy.orchestrator.state_machine import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    DeploymentStateMachine,
    InvalidTransitionError,
    StateChange,
    validate_transition,
)

__all__ = [
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
    "CleanupResult",
    "CleanupService",
    "CutoverJournal",
    "CutoverManager",
    "CutoverPhase",
    "CutoverResult",
    "DeploymentOrchestrator",
    "DeploymentResult",
    "DeploymentStateMachine",
    "InvalidTransitionError",
    "RecoveryAction",
    "RecoveryResult",
    "RollbackResult",
    "RollbackService",
    "StateChange",
    "app_deployment_lock",
    "validate_transition",
]
