"""Image policy gate.

Vetoes ``pre_deploy`` for images that violate the configured policy, which
stops the deployment before anything is started.
"""

from __future__ import annotations

from unideploy.errors import HookVeto
from unideploy.logging import get_logger
from unideploy.models import HookEvent
from unideploy.plugins.base import HookCall, Plugin, PluginDescriptor

logger = get_logger(__name__)


def split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def image_registry(image: str) -> str:
    """Registry host of an image reference; Docker Hub when none is given."""
    first, sep, _ = image.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return "docker.io"


class ImagePolicyGate(Plugin):
    """Rejects deployments of disallowed images.

    Arguments:
        IMAGE_POLICY_ALLOWED_REGISTRIES: Comma-separated registries; empty allows all
        IMAGE_POLICY_DENY_LATEST: "true" rejects the "latest" tag
    """

    name = "image-policy"

    def register(self) -> PluginDescriptor:
        return PluginDescriptor(
            name=self.name,
            description="Veto deployments of images outside the allowed registries",
            version="1.0.0",
            args={
                "IMAGE_POLICY_ALLOWED_REGISTRIES": "",
                "IMAGE_POLICY_DENY_LATEST": "false",
            },
            hooks={HookEvent.PRE_DEPLOY: [self.check_image]},
        )

    def violations(self, images: list[str], tag: str, allowed: list[str], deny_latest: bool) -> list[str]:
        problems = []
        if deny_latest and tag == "latest":
            problems.append("tag 'latest' is not allowed")
        if allowed:
            for image in images:
                registry = image_registry(image)
                if registry not in allowed:
                    problems.append(f"{image} comes from {registry}, allowed: {', '.join(allowed)}")
        return problems

    def check_image(self, call: HookCall) -> None:
        if call.context is None:
            return
        problems = self.violations(
            call.context.images,
            call.context.tag,
            split_list(call.args.get("IMAGE_POLICY_ALLOWED_REGISTRIES", "")),
            call.args.get("IMAGE_POLICY_DENY_LATEST", "false").lower() == "true",
        )
        if problems:
            logger.warning("image_policy_violation", problems=problems)
            raise HookVeto("; ".join(problems))
