"""Pure helpers for building a bounded per-step context window.

The window sent to the model on every step is:

    [original user request]              stable, cache-affine
    [Previous tool call summaries]       one line per older call
    [last ``window_size * 2`` messages]  verbatim

Instructions travel separately (see ``build_step_instructions``) so the
stable prefix stays byte-identical across steps.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any

from runwarden.providers.base import ManagedMessage

CHARS_PER_TOKEN_ESTIMATE = 4
SUMMARY_HEADER = "[Previous tool call summaries]"


def anthropic_cache_hint() -> dict[str, Any]:
    """Provider metadata marking a message as an ephemeral cache breakpoint."""
    return {"anthropic": {"cacheControl": {"type": "ephemeral"}}}


@dataclass(frozen=True)
class ToolCallRecord:
    """Condensed record of one past tool call, used for summaries and anchoring."""

    step: int
    tool_name: str
    input_preview: str
    output_preview: str


def estimate_tokens(text: str) -> int:
    """Rough token count (4 chars per token, rounded up)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN_ESTIMATE)


def preview(value: Any, max_len: int = 200) -> str:
    """Render a value as a short single string.

    Non-strings are JSON-serialized; None renders as ``(empty)``.
    """
    if value is None:
        return "(empty)"
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


def build_tool_call_summary(record: ToolCallRecord) -> str:
    return f"[Step {record.step}: {record.tool_name}({record.input_preview}) → {record.output_preview}]"


def build_step_instructions(
    base_instructions: str,
    step: int,
    max_steps: int,
    history: list[ToolCallRecord],
    *,
    anchor: bool = True,
    interval: int = 10,
) -> str:
    """Return the instructions for ``step``, anchored every ``interval`` steps.

    Most steps get the base instructions unchanged. On anchoring steps
    (``step > 1`` and ``(step - 1) % interval == 0``) a progress block with
    the last five tool calls is appended to keep long runs on task.
    """
    if not anchor or not base_instructions or step <= 1 or (step - 1) % interval != 0:
        return base_instructions

    progress = "\n".join(f"  - Step {t.step}: {t.tool_name}" for t in history[-5:])
    return "\n".join(
        [
            base_instructions,
            "",
            f"[Progress - Step {step}/{max_steps}]",
            f"Recent progress:\n{progress or '  (none yet)'}",
            "Continue your task. Do not repeat completed steps.",
        ]
    )


def build_message_window(
    messages: list[ManagedMessage],
    history: list[ToolCallRecord],
    window_size: int,
    *,
    provider: str | None = None,
) -> list[ManagedMessage]:
    """Assemble the windowed message list for one step.

    Args:
        messages: Full managed history; ``messages[0]`` is the original request.
        history: Every tool call recorded so far.
        window_size: Number of recent tool calls kept verbatim.
        provider: Model provider; ``anthropic`` adds cache-affinity hints.

    Returns:
        New list; ``messages`` is not mutated.
    """
    cached = provider == "anthropic"

    first = messages[0]
    window = [
        ManagedMessage(
            role=first.role,
            content=first.content,
            provider_metadata=anthropic_cache_hint() if cached else None,
        )
    ]

    if len(history) > window_size:
        older = history[: len(history) - window_size]
        summary = "\n".join(build_tool_call_summary(r) for r in older)
        window.append(
            ManagedMessage(
                role="user",
                content=f"{SUMMARY_HEADER}\n{summary}",
                provider_metadata=anthropic_cache_hint() if cached else None,
            )
        )

    start = max(1, len(messages) - window_size * 2)
    window.extend(messages[start:])
    return window


def estimate_window_tokens(instructions: str, window: list[ManagedMessage]) -> int:
    """Estimate tokens for instructions plus every windowed message."""
    return estimate_tokens(instructions + "\n" + "\n".join(m.content for m in window))
