"""Jinja2 template rendering for generated deployment artifacts.

Compose files and reverse-proxy configs are rendered from the ``.j2``
templates shipped in the ``unideploy/templates`` package directory. A
custom directory can be placed in front of the bundled one to override
individual templates.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined

BUNDLED_TEMPLATES = Path(__file__).parent.parent / "templates"


class TemplateRenderer:
    """Loads and renders deployment templates.

    Attributes:
        template_dirs: Directories searched for templates, in order
        env: Jinja2 Environment with configured loaders and caching
    """

    def __init__(self, override_dir: Path | None = None) -> None:
        self.template_dirs = [BUNDLED_TEMPLATES]
        if override_dir is not None:
            self.template_dirs.insert(0, override_dir)

        self.env = Environment(
            loader=FileSystemLoader([str(d) for d in self.template_dirs]),
            # Output is YAML and nginx syntax, never HTML
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            cache_size=50,
            auto_reload=False,
        )

    def render(self, template_name: str, **variables: Any) -> str:
        """Render a template by name.

        Raises:
            jinja2.TemplateNotFound: If the template doesn't exist in any directory
            jinja2.UndefinedError: If the template uses a variable that was not passed
        """
        return self.env.get_template(template_name).render(**variables)

    def list_templates(self) -> list[str]:
        return sorted(self.env.list_templates())
