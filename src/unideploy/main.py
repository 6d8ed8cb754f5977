"""Main CLI entry point for Unideploy.

This module provides the main Typer application with sub-commands for
deployments, the service registry and plugins.

Usage:
    unideploy deploy run deploy.json --multi-stage
    unideploy deploy rollback shop --version v1
    unideploy service history shop
    unideploy plugin tree
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from unideploy.cli import deploy as deploy_cli
from unideploy.cli import plugin as plugin_cli
from unideploy.cli import service as service_cli
from unideploy.config import UnideployConfig, load_config
from unideploy.logging import set_correlation_id, setup_logging
from unideploy.orchestrator.deployer import DeploymentOrchestrator
from unideploy.pipeline.container import ContainerRuntime, DockerRuntime
from unideploy.pipeline.proxy import NginxConfigurator, ProxyConfigurator
from unideploy.plugins.registry import PluginRegistry
from unideploy.registry.service_registry import ServiceRegistry

app = typer.Typer(
    name="unideploy",
    help="Unideploy: host-level deployment orchestrator",
    no_args_is_help=True,
)

app.add_typer(deploy_cli.app, name="deploy", help="Deploy, roll back and recover apps")
app.add_typer(service_cli.app, name="service", help="Inspect the service registry")
app.add_typer(plugin_cli.app, name="plugin", help="Inspect plugins")

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Collaborators are built on first use so that read-only commands never
    touch the Docker daemon.

    Attributes:
        config: Loaded Unideploy configuration
    """

    def __init__(self, config: UnideployConfig):
        self.config = config
        self._registry: ServiceRegistry | None = None
        self._plugins: PluginRegistry | None = None
        self._runtime: ContainerRuntime | None = None
        self._proxy: ProxyConfigurator | None = None

    @property
    def registry(self) -> ServiceRegistry:
        if self._registry is None:
            self._registry = ServiceRegistry(self.config.registry)
        return self._registry

    @property
    def plugins(self) -> PluginRegistry:
        """Plugin registry loaded from entry points and the plugin directory."""
        if self._plugins is None:
            plugins = PluginRegistry()
            plugins.discover_entry_points(self.config.plugins.entry_point_group)
            if self.config.plugins.directory is not None:
                plugins.discover(self.config.plugins.directory)
            self._plugins = plugins
        return self._plugins

    @property
    def runtime(self) -> ContainerRuntime:
        if self._runtime is None:
            self._runtime = DockerRuntime(
                self.config.docker,
                compose_timeout_seconds=self.config.deploy.compose_timeout_seconds,
            )
        return self._runtime

    @property
    def proxy(self) -> ProxyConfigurator:
        if self._proxy is None:
            self._proxy = NginxConfigurator(self.config.proxy)
        return self._proxy

    def orchestrator(self) -> DeploymentOrchestrator:
        return DeploymentOrchestrator(
            self.config,
            self.registry,
            self.plugins,
            self.runtime,
            self.proxy,
        )


# Global context holder
_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: UnideployConfig) -> AppContext:
    """Initialize the global application context."""
    global _app_context
    _app_context = AppContext(config)
    return _app_context


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", "-l", help="Log level (DEBUG, INFO, WARNING, ERROR)"),
    ] = None,
    log_format: Annotated[
        Optional[str],
        typer.Option("--log-format", help="Log format (console or json)"),
    ] = None,
) -> None:
    """Configure global options and initialize application context.

    Args:
        config_path: Optional path to TOML configuration file
        log_level: Override of the configured log level
        log_format: Override of the configured log format
    """
    try:
        config = load_config(config_path)
        overrides = {}
        if log_level is not None:
            overrides["level"] = log_level
        if log_format is not None:
            overrides["format"] = log_format
        if overrides:
            config.logging = config.logging.model_validate(
                {**config.logging.model_dump(), **overrides}
            )
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    setup_logging(config.logging)
    set_correlation_id(uuid.uuid4().hex[:12])
    initialize_context(config)


if __name__ == "__main__":
    app()
