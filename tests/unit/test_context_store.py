"""Unit tests for the context store and prompt builder."""

from __future__ import annotations

from pathlib import Path

import pytest

from agentcluster.cluster.session import compose_prompt
from agentcluster.context.prompt import MISSING_OUTPUT, PromptBuilder, truncate_tail
from agentcluster.context.store import ContextStore


class TestContextStore:
    """Persistence and caching of task outputs."""

    @pytest.mark.asyncio
    async def test_save_then_load(self, store: ContextStore) -> None:
        entry = await store.save("r1", "a", "hello from a", exit_code=0)
        assert entry.exit_code == 0
        assert not entry.truncated
        assert await store.load("r1", "a") == "hello from a"
        assert await store.load("r1", "missing") is None

    @pytest.mark.asyncio
    async def test_persisted_beyond_cache(self, store: ContextStore) -> None:
        await store.save("r1", "a", "persisted")
        fresh = ContextStore(store.session_factory)
        entry = await fresh.get_entry("r1", "a")
        assert entry is not None
        assert entry.output == "persisted"
        assert entry.created_at is not None

    @pytest.mark.asyncio
    async def test_rerun_overwrites(self, store: ContextStore) -> None:
        await store.save("r1", "a", "first attempt", exit_code=1)
        await store.save("r1", "a", "second attempt", exit_code=0)
        fresh = ContextStore(store.session_factory)
        assert await fresh.load("r1", "a") == "second attempt"
        assert len(await fresh.list_run("r1")) == 1

    @pytest.mark.asyncio
    async def test_large_output_keeps_tail(self, store: ContextStore) -> None:
        store.max_entry_chars = 10
        entry = await store.save("r1", "a", "0123456789abcdef")
        assert entry.truncated
        assert entry.output == "6789abcdef"

    @pytest.mark.asyncio
    async def test_load_many_mixes_cache_and_database(self, store: ContextStore) -> None:
        await store.save("r1", "a", "A")
        await store.save("r1", "b", "B")
        await store.save("r2", "a", "other run")
        store.clear_run_cache("r1")
        await store.load("r1", "a")

        outputs = await store.load_many("r1", ["a", "b", "c"])
        assert outputs == {"a": "A", "b": "B"}

    @pytest.mark.asyncio
    async def test_archive_run(self, store: ContextStore) -> None:
        await store.save("r1", "a", "A")
        await store.save("r1", "b", "B")
        await store.save("r2", "a", "kept")

        assert await store.archive_run("r1") == 2
        assert await store.load("r1", "a") is None
        assert await store.load("r2", "a") == "kept"


class TestPromptBuilder:
    """Upstream context rendering."""

    @pytest.mark.asyncio
    async def test_sections_follow_declared_order(self, store: ContextStore) -> None:
        await store.save("r1", "a", "alpha result\n")
        await store.save("r1", "b", "beta result")
        builder = PromptBuilder(store)

        context = await builder.build_context("r1", ["b", "a"])
        assert context.startswith("## Output from b:\nbeta result")
        assert "## Output from a:\nalpha result" in context
        assert context.index("Output from b") < context.index("Output from a")

    @pytest.mark.asyncio
    async def test_missing_output_placeholder(self, store: ContextStore) -> None:
        await store.save("r1", "a", "   \n")
        context = await PromptBuilder(store).build_context("r1", ["a", "ghost"])
        assert context.count(MISSING_OUTPUT) == 2

    @pytest.mark.asyncio
    async def test_no_dependencies_renders_nothing(self, store: ContextStore) -> None:
        builder = PromptBuilder(store)
        assert await builder.build_context("r1", []) == ""
        prompt, context = await builder.build_prompt("r1", "Fix the bug", [])
        assert prompt == "Fix the bug"
        assert context == ""

    @pytest.mark.asyncio
    async def test_full_prompt_appends_context(self, store: ContextStore) -> None:
        await store.save("r1", "plan", "1. edit foo.py")
        prompt, context = await PromptBuilder(store).build_prompt(
            "r1", "Implement the plan", ["plan"]
        )
        assert prompt == compose_prompt("Implement the plan", context)
        assert prompt.startswith("Implement the plan\n\n## Output from plan:\n")

    @pytest.mark.asyncio
    async def test_sections_truncated(self, store: ContextStore) -> None:
        await store.save("r1", "a", "x" * 50 + "THE END")
        context = await PromptBuilder(store, max_chars=7).build_context("r1", ["a"])
        assert "50 earlier characters truncated" in context
        assert context.endswith("THE END")

    @pytest.mark.asyncio
    async def test_override_template(self, store: ContextStore, tmp_path: Path) -> None:
        (tmp_path / "upstream_context.j2").write_text(
            "{% for s in sections %}[{{ s.task_id }}] {{ s.text }}\n{% endfor %}"
        )
        await store.save("r1", "a", "done")
        builder = PromptBuilder(store, template_dir=tmp_path)
        assert await builder.build_context("r1", ["a"]) == "[a] done"


def test_truncate_tail_short_text_unchanged() -> None:
    assert truncate_tail("short", 100) == "short"
