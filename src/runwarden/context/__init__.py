"""Per-step context window management for long agent runs."""

from runwarden.context.compression import CompressionCache, compress_tool_result, fingerprint
from runwarden.context.managed import (
    AgentSpec,
    ContextWindowManager,
    ManagedGenerateOptions,
    ManagedGenerateResult,
    StepMachine,
    StepState,
    StepSummary,
    managed_generate,
)
from runwarden.context.window import (
    ToolCallRecord,
    build_message_window,
    build_step_instructions,
    build_tool_call_summary,
    estimate_tokens,
    preview,
)

__all__ = [
    "AgentSpec",
    "CompressionCache",
    "ContextWindowManager",
    "ManagedGenerateOptions",
    "ManagedGenerateResult",
    "StepMachine",
    "StepState",
    "StepSummary",
    "ToolCallRecord",
    "build_message_window",
    "build_step_instructions",
    "build_tool_call_summary",
    "compress_tool_result",
    "estimate_tokens",
    "fingerprint",
    "managed_generate",
    "preview",
]
