"""Prompt building from upstream task outputs.

For every direct dependency of a task, in declared order, the builder
renders one labeled section::

    ## Output from <task-id>:
    <output text>

Sections longer than ``max_chars`` keep their tail, which is where
agents usually print their conclusion.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from agentcluster.cluster.session import compose_prompt
from agentcluster.context.loader import TemplateLoader
from agentcluster.context.store import ContextStore

CONTEXT_TEMPLATE = "upstream_context.j2"
MISSING_OUTPUT = "(no output recorded)"


@dataclass
class ContextSection:
    task_id: str
    text: str


def truncate_tail(text: str, max_chars: int) -> str:
    """Keep the last ``max_chars`` characters, marking the cut."""
    if len(text) <= max_chars:
        return text
    dropped = len(text) - max_chars
    return f"[... {dropped} earlier characters truncated ...]\n{text[-max_chars:]}"


class PromptBuilder:
    """Renders upstream context and full task prompts.

    Args:
        store: Context store holding completed task outputs.
        max_chars: Per-section truncation limit.
        template_dir: Optional directory overriding the bundled templates.
    """

    def __init__(
        self,
        store: ContextStore,
        max_chars: int = 10000,
        template_dir: Path | None = None,
    ) -> None:
        self.store = store
        self.max_chars = max_chars
        self.loader = TemplateLoader(override_dir=template_dir)

    def render_sections(self, sections: list[ContextSection]) -> str:
        if not sections:
            return ""
        template = self.loader.load_template(CONTEXT_TEMPLATE)
        return template.render(sections=sections).strip()

    async def build_context(self, run_id: str, dependencies: list[str]) -> str:
        """Rendered upstream context for a task with these dependencies."""
        outputs = await self.store.load_many(run_id, dependencies)
        sections = [
            ContextSection(
                task_id=dep,
                text=truncate_tail(outputs[dep].rstrip(), self.max_chars)
                if outputs.get(dep, "").strip()
                else MISSING_OUTPUT,
            )
            for dep in dependencies
        ]
        return self.render_sections(sections)

    async def build_prompt(
        self, run_id: str, prompt: str, dependencies: list[str]
    ) -> tuple[str, str]:
        """Full prompt for a task.

        Returns:
            ``(full_prompt, upstream_context)``; the prompt alone when the
            task has no dependencies.
        """
        context = await self.build_context(run_id, dependencies)
        return compose_prompt(prompt, context), context
