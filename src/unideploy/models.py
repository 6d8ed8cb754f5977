"""Core data models for Unideploy.

These models describe the persisted registry layout (``ServiceRecord``,
``VersionEntry``), the lifecycle events plugins subscribe to (``HookEvent``),
and the parsed deployment document (``DeploymentContext``) that drives one
orchestrator run.

Example usage:
    >>> from pathlib import Path
    >>> from unideploy.models import DeploymentContext
    >>>
    >>> ctx = DeploymentContext.from_file(Path("deploy.json"))
    >>> ctx.health_spec.resolved_endpoint
    '/health'
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import tomli
from pydantic import BaseModel, Field, field_validator, model_validator

APP_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def utc_now_iso() -> str:
    """Return the current UTC time in the registry timestamp format."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def compose_service_name(image: str) -> str:
    """Compose service name for an image: its last path segment without tag."""
    return image.rsplit("/", 1)[-1].split(":", 1)[0]


class HookEvent(str, Enum):
    """Named lifecycle points at which plugin callbacks run."""

    CONFIG_LOADED = "config_loaded"
    PRE_SETUP = "pre_setup"
    POST_SETUP = "post_setup"
    PRE_DEPLOY = "pre_deploy"
    POST_DEPLOY = "post_deploy"
    PRE_START = "pre_start"
    POST_START = "post_start"
    HEALTH_CHECK_FAILED = "health_check_failed"
    POST_CUTOVER = "post_cutover"
    PRE_CLEANUP = "pre_cleanup"
    POST_CLEANUP = "post_cleanup"
    PRE_ROLLBACK = "pre_rollback"
    POST_ROLLBACK = "post_rollback"


class DeploymentState(str, Enum):
    """States of the deployment state machine.

    Attributes:
        VALIDATING: Preflight checks, nothing mutated yet
        PREPARING: Materializing compose, routing and certificate artifacts
        DEPLOYING: Starting containers in place or in a staging directory
        CUTTING_OVER: Swapping staging into the production path (multi-stage)
        VERIFYING: Health checking the live deployment
        DONE: Deployment succeeded and was recorded in the registry
        ROLLING_BACK: Restoring the previous deployment
        ROLLED_BACK: Previous deployment restored successfully
        FAILED: Deployment failed; see the error kind for severity
    """

    VALIDATING = "validating"
    PREPARING = "preparing"
    DEPLOYING = "deploying"
    CUTTING_OVER = "cutting_over"
    VERIFYING = "verifying"
    DONE = "done"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class RouteType(str, Enum):
    """How the reverse proxy exposes an app."""

    PATH = "path"
    SUBDOMAIN = "subdomain"


class HealthCheckType(str, Enum):
    """Health probe strategies. AUTO resolves to a concrete type at check time."""

    AUTO = "auto"
    HTTP = "http"
    TCP = "tcp"
    CONTAINER = "container"
    COMMAND = "command"
    NONE = "none"


class VersionEntry(BaseModel):
    """One previously deployed version of a service.

    Attributes:
        image: Image name without tag
        tag: Image tag
        deployed_at: When this version went live
    """

    image: str
    tag: str
    deployed_at: str


class ServiceRecord(BaseModel):
    """Registry entry for a deployed service.

    Field names match the on-disk registry document.

    Attributes:
        name: Application name (registry key)
        domain: Domain the app is served under
        route_type: Path or subdomain routing
        route: Path prefix or subdomain label
        port: Host port the app listens on
        image: Current image name
        tag: Current image tag
        is_persistent: Persistent services are skipped by cleanup
        registered_at: When the current version was registered
        deployed_at: When the current version went live
        health_check: Health endpoint used by dependent services
        health_check_type: Probe type used by dependent services
        health_check_timeout: Probe timeout used by dependent services
        version_history: Previous versions, oldest first
    """

    name: str
    domain: str = ""
    route_type: RouteType = RouteType.PATH
    route: str = ""
    port: int = 3000
    image: str = ""
    tag: str = "latest"
    is_persistent: bool = False
    registered_at: str = Field(default_factory=utc_now_iso)
    deployed_at: str = Field(default_factory=utc_now_iso)
    health_check: str = "/health"
    health_check_type: HealthCheckType = HealthCheckType.AUTO
    health_check_timeout: float | None = None
    version_history: list[VersionEntry] = Field(default_factory=list)

    @property
    def version(self) -> tuple[str, str]:
        return (self.image, self.tag)

    @property
    def image_ref(self) -> str:
        return f"{self.image}:{self.tag}"


class HealthCheckSpec(BaseModel):
    """What and how to probe for one app.

    Attributes:
        endpoint: HTTP path; "none" or "disabled" turn checking off
        type: Probe type, AUTO for detection
        timeout_seconds: Overall timeout of a poll
        command: Predicate command for COMMAND checks
        container: Container name for CONTAINER checks and diagnostics
        image: Image reference used by type detection
    """

    endpoint: str = "/health"
    type: HealthCheckType = HealthCheckType.AUTO
    timeout_seconds: float = Field(default=60.0, gt=0.0)
    command: list[str] | None = None
    container: str | None = None
    image: str | None = None

    @field_validator("command", mode="before")
    @classmethod
    def split_command(cls, v: Any) -> Any:
        if isinstance(v, str):
            return ["sh", "-c", v] if v.strip() else None
        return v

    @property
    def disabled(self) -> bool:
        return self.type is HealthCheckType.NONE or self.endpoint.lower() in {"none", "disabled"}

    @property
    def resolved_endpoint(self) -> str:
        return self.endpoint if self.endpoint.startswith("/") else f"/{self.endpoint}"


class ServiceDependency(BaseModel):
    """A service this app needs before it can start."""

    name: str
    optional: bool = False

    @model_validator(mode="before")
    @classmethod
    def parse_shorthand(cls, data: Any) -> Any:
        # "db" or "cache:optional"
        if isinstance(data, str):
            name, _, flag = data.partition(":")
            return {"name": name, "optional": flag in {"optional", "true"}}
        return data


class DeploymentContext(BaseModel):
    """Parsed deployment document plus the runtime state of one run.

    The document keys mirror the deployment configuration format; the
    runtime fields (paths, state, deployment_id) are filled in by the
    orchestrator.

    Attributes:
        app_name: Application name, used for paths, containers and registry key
        image: Image name, or comma-separated names for multi-service apps
        tag: Image tag shared by all images
        domain: Domain served by the reverse proxy
        route_type: Path or subdomain routing
        route: Path prefix or subdomain label
        port: Host port of the primary service
        ssl: Serve over TLS
        ssl_email: Contact email for certificate issuance
        env_vars: Environment passed to every container
        volumes: Volume mappings passed to every container
        extra_hosts: host:ip entries added to every container
        persistent: Mark the service persistent in the registry
        compose_file: Use this compose file instead of generating one
        use_profiles: Put generated services in the "app" compose profile
        multi_stage: Stage, cut over and verify instead of deploying in place
        check_dependencies: Wait for service dependencies before starting
        dependencies: Services this app depends on
        health_check: Health endpoint, "none" to disable
        health_check_type: Probe type
        health_check_timeout: Overall health timeout in seconds
        health_check_command: Predicate command for command checks
        port_auto_assign: Pick a free port when the requested one is taken
        version_tracking: Record version history in the registry
        plugins: Plugins activated for this deployment
        plugin_args: Plugin argument overrides
    """

    app_name: str
    image: str = ""
    tag: str = "latest"
    domain: str = ""
    route_type: RouteType = RouteType.PATH
    route: str = ""
    port: int = Field(default=3000, ge=1, le=65535)
    ssl: bool = True
    ssl_email: str = ""
    env_vars: dict[str, str] = Field(default_factory=dict)
    volumes: list[str] = Field(default_factory=list)
    extra_hosts: list[str] = Field(default_factory=list)
    persistent: bool = False
    compose_file: Path | None = None
    use_profiles: bool = True
    multi_stage: bool = False
    check_dependencies: bool = False
    dependencies: list[ServiceDependency] = Field(default_factory=list)
    health_check: str = "/health"
    health_check_type: HealthCheckType = HealthCheckType.AUTO
    health_check_timeout: float = Field(default=60.0, gt=0.0)
    health_check_command: str | None = None
    port_auto_assign: bool = True
    version_tracking: bool = True
    plugins: list[str] = Field(default_factory=list)
    plugin_args: dict[str, str] = Field(default_factory=dict)

    # Runtime fields
    deployment_id: str = ""
    state: DeploymentState = DeploymentState.VALIDATING
    app_dir: Path | None = None
    staging_dir: Path | None = None
    backup_dir: Path | None = None
    compose_path: Path | None = None
    dry_run: bool = False

    @field_validator("app_name")
    @classmethod
    def validate_app_name(cls, v: str) -> str:
        if not APP_NAME_PATTERN.match(v):
            raise ValueError(
                f"Invalid app_name: {v!r}. Only letters, digits, '-' and '_' are allowed"
            )
        return v

    @field_validator("volumes", "extra_hosts", "plugins", mode="before")
    @classmethod
    def split_csv(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("env_vars", "plugin_args", mode="before")
    @classmethod
    def stringify_values(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v

    @model_validator(mode="after")
    def require_image_or_compose(self) -> DeploymentContext:
        if not self.image and self.compose_file is None:
            raise ValueError("Either image or compose_file must be provided")
        return self

    @classmethod
    def from_file(cls, path: Path) -> DeploymentContext:
        """Load a deployment document from JSON or TOML.

        Args:
            path: Path to a .json or .toml deployment document

        Returns:
            Validated DeploymentContext

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the document cannot be parsed or is invalid
        """
        if not path.exists():
            raise FileNotFoundError(f"Deployment config not found: {path}")

        try:
            if path.suffix == ".toml":
                with open(path, "rb") as f:
                    data = tomli.load(f)
            else:
                data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, tomli.TOMLDecodeError) as e:
            raise ValueError(f"Cannot parse deployment config {path}: {e}") from e

        # Relative compose paths are relative to the document
        compose = data.get("compose_file")
        if compose and not Path(compose).is_absolute():
            data["compose_file"] = str(path.parent / compose)

        try:
            return cls.model_validate(data)
        except Exception as e:
            raise ValueError(f"Invalid deployment config {path}: {e}") from e

    @property
    def images(self) -> list[str]:
        return [img.strip() for img in self.image.split(",") if img.strip()]

    @property
    def primary_image(self) -> str:
        images = self.images
        return images[0] if images else ""

    @property
    def container_name(self) -> str:
        """Container probed by health checks: the first service's container."""
        images = self.images
        if len(images) > 1:
            return f"{self.app_name}-{compose_service_name(images[0])}"
        return f"{self.app_name}-app"

    @property
    def health_spec(self) -> HealthCheckSpec:
        return HealthCheckSpec(
            endpoint=self.health_check,
            type=self.health_check_type,
            timeout_seconds=self.health_check_timeout,
            command=self.health_check_command,
            container=self.container_name,
            image=self.primary_image,
        )
