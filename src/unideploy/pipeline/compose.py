"""Compose file materialization.

Either renders ``docker-compose.yml`` for the images of a deployment or
copies the compose file the deployment provides. Generated files hold
environment values and are written with mode 0600.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any

from unideploy.logging import get_logger
from unideploy.models import DeploymentContext, compose_service_name
from unideploy.pipeline.templates import TemplateRenderer

COMPOSE_FILENAME = "docker-compose.yml"

logger = get_logger(__name__)


def compose_services(ctx: DeploymentContext) -> list[dict[str, Any]]:
    """Service entries for the compose template.

    A single image becomes the ``app`` service. Several images become one
    service each, named after the image; only the first publishes the
    deployment port.
    """
    images = ctx.images
    if len(images) == 1:
        return [
            {
                "name": "app",
                "image": f"{images[0]}:{ctx.tag}",
                "container_name": f"{ctx.app_name}-app",
                "ports": [f"{ctx.port}:{ctx.port}"],
            }
        ]

    services = []
    for index, image in enumerate(images):
        name = compose_service_name(image)
        services.append(
            {
                "name": name,
                "image": f"{image}:{ctx.tag}",
                "container_name": f"{ctx.app_name}-{name}",
                "ports": [f"{ctx.port}:{ctx.port}"] if index == 0 else [],
            }
        )
    return services


class ComposeWriter:
    """Writes the compose file of a deployment into its directory."""

    def __init__(self, renderer: TemplateRenderer | None = None) -> None:
        self.renderer = renderer or TemplateRenderer()

    def render(self, ctx: DeploymentContext) -> str:
        return self.renderer.render(
            "docker-compose.yml.j2",
            app_name=ctx.app_name,
            services=compose_services(ctx),
            use_profiles=ctx.use_profiles,
            env_vars=ctx.env_vars,
            volumes=ctx.volumes,
            extra_hosts=ctx.extra_hosts,
            network=f"{ctx.app_name}-network",
        )

    def write(self, ctx: DeploymentContext, directory: Path) -> Path:
        """Materialize the compose file in ``directory``.

        Args:
            ctx: Deployment being prepared
            directory: Deployment directory (production or staging)

        Returns:
            Path of the written compose file

        Raises:
            OSError: If the directory or file cannot be written
            FileNotFoundError: If a provided compose file does not exist
        """
        directory.mkdir(parents=True, exist_ok=True)
        os.chmod(directory, 0o700)
        target = directory / COMPOSE_FILENAME

        if ctx.compose_file is not None:
            if not ctx.compose_file.exists():
                raise FileNotFoundError(f"Compose file not found: {ctx.compose_file}")
            if ctx.compose_file.resolve() != target.resolve():
                shutil.copyfile(ctx.compose_file, target)
            logger.debug("compose_file_copied", source=str(ctx.compose_file), target=str(target))
        else:
            target.write_text(self.render(ctx), encoding="utf-8")
            logger.debug("compose_file_generated", target=str(target))

        os.chmod(target, 0o600)
        return target
