"""Deployment pipeline operations for Unideploy.

This module implements the container runtime binding, health checking,
service dependency waiting, compose and reverse-proxy artifact rendering,
certificate provisioning, port resolution and preflight checks.
"""

from __future__ import annotations

from unideploy.pipeline.certificates import (
    CertificateManager,
    CertificatePaths,
    CertificateProvider,
    CertificateResult,
)
from unideploy.pipeline.compose import COMPOSE_FILENAME, ComposeWriter, compose_services
from unideploy.pipeline.container import (
    ContainerRuntime,
    ContainerState,
    ContainerStatus,
    DockerRuntime,
    RuntimeAction,
)
from unideploy.pipeline.dependencies import DependencyStatus, DependencyWaiter, WaitResult
from unideploy.pipeline.health import HealthChecker, HealthDiagnostics, HealthResult
from unideploy.pipeline.ports import PortResolution, find_available_port, resolve_port
from unideploy.pipeline.preflight import PreflightCheck, PreflightChecker, PreflightResult
from unideploy.pipeline.proxy import NginxConfigurator, ProxyConfigurator, ProxyResult, RouteSpec
from unideploy.pipeline.templates import TemplateRenderer

__all__ = [
    "COMPOSE_FILENAME",
    "CertificateManager",
    "CertificatePaths",
    "CertificateProvider",
    "CertificateResult",
    "ComposeWriter",
    "ContainerRuntime",
    "ContainerState",
    "ContainerStatus",
    "DependencyStatus",
    "DependencyWaiter",
    "DockerRuntime",
    "HealthChecker",
    "HealthDiagnostics",
    "HealthResult",
    "NginxConfigurator",
    "PortResolution",
    "PreflightCheck",
    "PreflightChecker",
    "PreflightResult",
    "ProxyConfigurator",
    "ProxyResult",
    "RouteSpec",
    "RuntimeAction",
    "TemplateRenderer",
    "WaitResult",
    "compose_services",
    "find_available_port",
    "resolve_port",
]
