"""Jinja2 template loading for prompt rendering.

Templates ship inside the package (``agentcluster/context/templates``). An
optional override directory is searched first, so operators can replace
any template without touching the installation.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from jinja2 import Environment, FileSystemLoader, TemplateNotFound

if TYPE_CHECKING:
    from jinja2 import Template

PACKAGE_TEMPLATE_DIR = Path(__file__).parent / "templates"


class TemplateLoader:
    """Loads and caches Jinja2 templates.

    Rendering produces plain prompt text, so autoescaping is off.

    Attributes:
        template_dirs: Directories searched in order.
        env: Jinja2 Environment.
    """

    def __init__(self, override_dir: Path | None = None) -> None:
        self.template_dirs = [PACKAGE_TEMPLATE_DIR]
        if override_dir is not None:
            self.template_dirs.insert(0, override_dir)

        self.env = Environment(
            loader=FileSystemLoader([str(d) for d in self.template_dirs]),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=False,
            cache_size=50,
            auto_reload=False,
        )

    def load_template(self, template_name: str) -> Template:
        """Load a template by name.

        Raises:
            jinja2.TemplateNotFound: If no directory has the template.
        """
        return self.env.get_template(template_name)

    def list_templates(self) -> list[str]:
        return sorted(self.env.list_templates())

    def template_exists(self, template_name: str) -> bool:
        try:
            self.env.get_template(template_name)
        except TemplateNotFound:
            return False
        return True
