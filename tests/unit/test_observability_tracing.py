"""Tests for the observability tracing module."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from runwarden.observability.tracing import (
    MAX_TRACED_TEXT,
    _summarize_inputs,
    _with_run_id,
    annotate_current_run,
    build_runnable_config,
    generate_run_id,
    get_run_id,
    run_scope,
    summarize_for_trace,
    trace_context,
    traceable,
)
from runwarden.phases import Phase


class TestRunScope:
    """Tests for run correlation ID management."""

    def test_generate_run_id_returns_uuid_string(self) -> None:
        run_id = generate_run_id()
        assert isinstance(run_id, str)
        assert len(run_id) == 36

    def test_generate_run_id_returns_unique_values(self) -> None:
        ids = {generate_run_id() for _ in range(100)}
        assert len(ids) == 100

    def test_no_run_id_outside_scope(self) -> None:
        assert get_run_id() is None

    def test_scope_sets_and_restores(self) -> None:
        with run_scope("outer") as run_id:
            assert run_id == "outer"
            with run_scope("inner"):
                assert get_run_id() == "inner"
            assert get_run_id() == "outer"
        assert get_run_id() is None

    def test_scope_restored_after_exception(self) -> None:
        with pytest.raises(RuntimeError), run_scope("failing"):
            raise RuntimeError("boom")
        assert get_run_id() is None

    @pytest.mark.asyncio
    async def test_tasks_inherit_run_id(self) -> None:
        async def read() -> str | None:
            return get_run_id()

        with run_scope("run-7"):
            seen = await asyncio.gather(read(), read())

        assert seen == ["run-7", "run-7"]


class TestWithRunId:
    """Tests for metadata merging."""

    def test_none_outside_scope(self) -> None:
        assert _with_run_id(None) == {}

    def test_copies_input(self) -> None:
        original = {"key": "value"}
        merged = _with_run_id(original)
        merged["new_key"] = "new_value"
        assert "new_key" not in original

    def test_injects_run_id(self) -> None:
        with run_scope("run-1"):
            assert _with_run_id({"existing": "value"}) == {"existing": "value", "run_id": "run-1"}


class TestSummarizeForTrace:
    """Tests for trace input summarizing."""

    def test_primitives_pass_through(self) -> None:
        inputs = {"text": "hi", "n": 3, "ratio": 0.5, "flag": True, "none": None}
        assert _summarize_inputs(inputs) == inputs

    def test_long_text_clipped(self) -> None:
        summary = summarize_for_trace("x" * (MAX_TRACED_TEXT + 10))
        assert summary == "x" * MAX_TRACED_TEXT + "...[10 chars]"

    def test_objects_labelled_by_id_or_name(self) -> None:
        class Ledger:
            pass

        phase = Phase(id="discover", name="Discovery", instructions="", max_steps=1)
        agent = MagicMock(spec=["name"])
        agent.name = "researcher"

        assert summarize_for_trace(Ledger()) == "<Ledger>"
        assert summarize_for_trace(phase) == "<Phase discover>"
        assert summarize_for_trace(agent) == "<MagicMock researcher>"

    def test_lists_capped(self) -> None:
        assert summarize_for_trace(list(range(100))) == list(range(20))

    def test_nesting_flattened(self) -> None:
        summary = summarize_for_trace({"outer": {"inner": [1, 2, 3]}})
        assert summary == {"outer": {"inner": "<list len=3>"}}


class TestAnnotateCurrentRun:
    """Tests for annotate_current_run."""

    def test_updates_active_tree(self) -> None:
        tree = MagicMock()
        tree.metadata = {"existing": 1}
        with patch("runwarden.observability.tracing.ls_get_current_run_tree", return_value=tree):
            annotate_current_run(phase_id="api", parallel_group=2)

        assert tree.metadata == {"existing": 1, "phase_id": "api", "parallel_group": 2}

    def test_noop_without_tree(self) -> None:
        with patch("runwarden.observability.tracing.ls_get_current_run_tree", return_value=None):
            annotate_current_run(phase_id="api")

    def test_lookup_errors_ignored(self) -> None:
        with patch(
            "runwarden.observability.tracing.ls_get_current_run_tree",
            side_effect=RuntimeError("No active trace"),
        ):
            annotate_current_run(phase_id="api")


class TestBuildRunnableConfig:
    """Tests for build_runnable_config."""

    def test_empty(self) -> None:
        assert build_runnable_config() == {}

    def test_run_name_and_tags(self) -> None:
        config = build_runnable_config(run_name="Managed Step", tags=["runwarden", "step"])
        assert config["run_name"] == "Managed Step"
        assert config["tags"] == ["runwarden", "step"]

    def test_copies_tags(self) -> None:
        original_tags = ["tag1"]
        config = build_runnable_config(tags=original_tags)
        config["tags"].append("tag2")
        assert "tag2" not in original_tags

    def test_includes_run_id(self) -> None:
        with run_scope("run-9"):
            config = build_runnable_config(metadata={"tool": "search"})
        assert config["metadata"] == {"tool": "search", "run_id": "run-9"}

    def test_callbacks(self) -> None:
        handler = MagicMock()
        config = build_runnable_config(callbacks=[handler])
        assert config["callbacks"] == [handler]


class TestTraceContext:
    """Tests for trace_context."""

    def test_calls_langsmith_trace(self) -> None:
        with (
            run_scope("run-3"),
            patch("runwarden.observability.tracing.langsmith") as mock_langsmith,
        ):
            trace_context(
                "Parallel Group",
                tags=["phase"],
                metadata={"group": 2},
                inputs={"phases": ["b", "c"]},
            )

        kwargs = mock_langsmith.trace.call_args.kwargs
        assert kwargs["name"] == "Parallel Group"
        assert kwargs["tags"] == ["phase"]
        assert kwargs["metadata"] == {"group": 2, "run_id": "run-3"}
        assert kwargs["inputs"] == {"phases": ["b", "c"]}


class TestTraceable:
    """Tests for @traceable decorator."""

    @pytest.mark.asyncio
    async def test_runs_function(self) -> None:
        @traceable(name="Double")
        async def double(x: int) -> int:
            return x * 2

        assert await double(5) == 10

    @pytest.mark.asyncio
    async def test_preserves_function_metadata(self) -> None:
        @traceable(name="Test")
        async def my_documented_func() -> None:
            """This is the docstring."""

        assert my_documented_func.__name__ == "my_documented_func"
        assert my_documented_func.__doc__ == "This is the docstring."

    @pytest.mark.asyncio
    async def test_tags_run_tree_with_run_id(self) -> None:
        tree = MagicMock()
        tree.metadata = {}

        @traceable(name="Tagged")
        async def noop() -> str:
            return "done"

        with (
            run_scope("run-5"),
            patch("runwarden.observability.tracing._current_run_tree", return_value=tree),
        ):
            assert await noop() == "done"

        assert tree.metadata["run_id"] == "run-5"

    @pytest.mark.asyncio
    async def test_propagates_exceptions(self) -> None:
        @traceable(name="Failing")
        async def boom() -> None:
            raise RuntimeError("generation failed")

        with pytest.raises(RuntimeError, match="generation failed"):
            await boom()
