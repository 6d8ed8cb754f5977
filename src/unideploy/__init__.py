"""Unideploy - host-level deployment orchestrator.

This package deploys containerized applications on a single host through
a validated state machine (validate, prepare, deploy, cut over, verify),
keeps a lock-guarded registry of what is deployed and what came before it,
and lets plugins take part in every lifecycle event in dependency order.
"""

__version__ = "0.1.0"
