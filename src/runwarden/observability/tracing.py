"""LangSmith tracing for governed runs.

Every governed run gets a run ID. Inside :func:`run_scope` that ID is
attached to each traced span, to ``trace_context`` blocks and to the
``RunnableConfig`` handed to LangChain models, so one task's steps, phases
and compression calls can be found together in LangSmith. Nothing is
shipped unless ``LANGSMITH_TRACING=true``.

Spans carry summaries of their inputs rather than the inputs themselves:
generators, stores and chat model clients hold live connections that
langsmith's background serializer must not touch.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from functools import wraps
from typing import TYPE_CHECKING, Any, Literal, ParamSpec, TypeVar

import langsmith
from langsmith.run_helpers import get_current_run_tree as ls_get_current_run_tree

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine, Iterator

    from langchain_core.callbacks import BaseCallbackHandler
    from langchain_core.runnables import RunnableConfig

RunType = Literal["tool", "chain", "llm", "retriever", "embedding", "prompt", "parser"]

MAX_TRACED_TEXT = 2_000
MAX_TRACED_ITEMS = 20

_run_id: ContextVar[str | None] = ContextVar("runwarden_run_id", default=None)

P = ParamSpec("P")
R = TypeVar("R")


def generate_run_id() -> str:
    """Generate a unique run ID for a task invocation."""
    return str(uuid.uuid4())


def get_run_id() -> str | None:
    """Return the run ID of the enclosing ``run_scope``, if any."""
    return _run_id.get()


@contextmanager
def run_scope(run_id: str) -> Iterator[str]:
    """Make ``run_id`` current for the block; the previous value is restored on exit.

    Tasks started inside the block (parallel phases) inherit the ID.
    """
    token = _run_id.set(run_id)
    try:
        yield run_id
    finally:
        _run_id.reset(token)


def _with_run_id(metadata: dict[str, Any] | None) -> dict[str, Any]:
    merged = dict(metadata) if metadata else {}
    if run_id := get_run_id():
        merged["run_id"] = run_id
    return merged


def _current_run_tree() -> Any | None:
    try:
        return ls_get_current_run_tree()
    except Exception:
        return None


def annotate_current_run(**metadata: Any) -> None:
    """Add metadata to the active span. A no-op when nothing is being traced."""
    if (tree := _current_run_tree()) is not None:
        tree.metadata.update(metadata)


def summarize_for_trace(value: Any, depth: int = 0) -> Any:
    """Reduce a traced input to something small and JSON-safe.

    Long strings are clipped, containers are capped at ``MAX_TRACED_ITEMS``
    and flattened below two levels, and any other object becomes
    ``<TypeName id>`` using its ``id`` or ``name`` attribute when it has one.
    """
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        if len(value) <= MAX_TRACED_TEXT:
            return value
        return value[:MAX_TRACED_TEXT] + f"...[{len(value) - MAX_TRACED_TEXT} chars]"
    if isinstance(value, (list, tuple)):
        if depth >= 2:
            return f"<{type(value).__name__} len={len(value)}>"
        return [summarize_for_trace(v, depth + 1) for v in value[:MAX_TRACED_ITEMS]]
    if isinstance(value, dict):
        if depth >= 2:
            return f"<dict len={len(value)}>"
        items = list(value.items())[:MAX_TRACED_ITEMS]
        return {str(k): summarize_for_trace(v, depth + 1) for k, v in items}

    label = getattr(value, "id", None) or getattr(value, "name", None)
    if isinstance(label, str) and label:
        return f"<{type(value).__name__} {label}>"
    return f"<{type(value).__name__}>"


def _summarize_inputs(inputs: dict[str, Any]) -> dict[str, Any]:
    return {key: summarize_for_trace(value) for key, value in inputs.items()}


def traceable(
    name: str | None = None,
    *,
    run_type: RunType = "chain",
    tags: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
) -> Callable[[Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]]:
    """Trace an async function as a LangSmith span.

    The current run ID is written into the span's metadata when the call
    starts, so spans created before ``run_scope`` was entered are not
    mislabelled.

    Args:
        name: Span name. Defaults to the function name.
        run_type: LangSmith run type.
        tags: Static tags for the span.
        metadata: Static metadata for the span.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]],
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            if run_id := get_run_id():
                annotate_current_run(run_id=run_id)
            return await func(*args, **kwargs)

        # langsmith.traceable returns SupportsLangsmithExtra, which is callable
        # with the original signature but not a Callable subtype for mypy.
        traced: Callable[P, Coroutine[Any, Any, R]] = langsmith.traceable(
            run_type,
            name=name or func.__name__,
            tags=list(tags or []),
            metadata=dict(metadata or {}),
            process_inputs=_summarize_inputs,
        )(wrapper)  # type: ignore[assignment]
        return traced

    return decorator


def trace_context(
    name: str,
    *,
    run_type: RunType = "chain",
    tags: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
    inputs: dict[str, Any] | None = None,
) -> Any:
    """Trace a block that is not a function of its own.

    Example:
        with trace_context("Parallel Group", metadata={"group": 2}):
            await asyncio.gather(*tasks)
    """
    return langsmith.trace(
        name=name,
        run_type=run_type,
        tags=list(tags or []),
        metadata=_with_run_id(metadata),
        inputs=_summarize_inputs(inputs) if inputs else None,
    )


def build_runnable_config(
    *,
    run_name: str | None = None,
    tags: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
    callbacks: list[BaseCallbackHandler] | None = None,
) -> RunnableConfig:
    """Build the ``config`` argument for a LangChain ``ainvoke`` call.

    The current run ID is added to the metadata so model calls nest under
    the governed run in LangSmith.
    """
    config: RunnableConfig = {}
    if run_name:
        config["run_name"] = run_name
    if tags:
        config["tags"] = list(tags)
    if merged := _with_run_id(metadata):
        config["metadata"] = merged
    if callbacks:
        config["callbacks"] = callbacks
    return config
