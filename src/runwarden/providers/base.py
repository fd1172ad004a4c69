"""Base protocols and types for generation and compression capabilities.

The engine never talks to a model SDK directly. It drives a
``GenerationCapability`` that produces exactly one step of output per call
and, optionally, a ``CompressionCapability`` that condenses large tool
results. Both are treated as slow, possibly failing remote calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

Role = Literal["user", "assistant"]


@dataclass
class ManagedMessage:
    """A single unit of conversational context sent to the capability.

    Instructions are never part of the message list; they travel through a
    separate channel so the stable prefix stays cacheable upstream.

    Attributes:
        role: "user" or "assistant".
        content: Message text.
        provider_metadata: Optional provider routing hints, e.g. a
            cache-affinity marker ``{"anthropic": {"cacheControl": {...}}}``.
    """

    role: Role
    content: str
    provider_metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested during a step."""

    tool_name: str
    args: Any = None
    id: str | None = None


@dataclass(frozen=True)
class ToolResult:
    """The result of executing a tool call within the same step."""

    tool_name: str
    result: Any = None
    id: str | None = None


@dataclass(frozen=True)
class StepUsage:
    """Token usage reported for one generation step."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class StepOutput:
    """Output of one generation step.

    Attributes:
        text: Text produced by the model (may be empty).
        tool_calls: Tool calls requested during the step.
        tool_results: Results for those calls, positionally aligned.
        usage: Prompt/completion token counts.
        finish_reason: Provider finish reason ("stop", "tool_calls", ...).
    """

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    usage: StepUsage = field(default_factory=StepUsage)
    finish_reason: str = "unknown"

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class ModelOptions:
    """Per-step options handed to the generation capability.

    Attributes:
        model: Provider/model identity selected for this step (None = the
            capability's default).
        max_tokens: Output token cap for the step.
        memory: Optional ``{"thread": ..., "resource": ...}`` pass-through.
        tools: Optional tool allow-list for the step.
        provider_options: Provider-keyed options, e.g.
            ``{"openai": {"reasoningEffort": "high"}}``.
    """

    model: Any | None = None
    max_tokens: int | None = None
    memory: dict[str, str] | None = None
    tools: tuple[str, ...] | None = None
    provider_options: dict[str, dict[str, Any]] = field(default_factory=dict)


@runtime_checkable
class GenerationCapability(Protocol):
    """Produces one step of output for a message window.

    Implementations must be safe to call repeatedly and raise
    ``GenerationError`` subclasses on failure.
    """

    async def generate_step(
        self,
        messages: list[ManagedMessage],
        instructions: str | None,
        options: ModelOptions,
    ) -> StepOutput:
        """Run exactly one generation step.

        Args:
            messages: Windowed conversation (user/assistant only).
            instructions: System instructions for the step, or None when
                they have been inlined into the first user message.
            options: Model identity, output cap and provider options.

        Returns:
            StepOutput with text, tool calls/results and usage.

        Raises:
            GenerationError: If the step fails.
        """
        ...


@runtime_checkable
class CompressionCapability(Protocol):
    """Condenses a large tool output into a shorter summary (best effort)."""

    async def summarize(self, tool_name: str, raw_text: str, max_chars: int) -> str:
        """Summarize ``raw_text`` produced by ``tool_name`` into ~max_chars."""
        ...


class GenerationError(Exception):
    """Base exception for generation capability failures."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class GenerationConnectionError(GenerationError):
    """Raised when the connection to the provider fails."""


class GenerationRateLimitError(GenerationError):
    """Raised when the provider rate limit is exceeded."""


class GenerationModelError(GenerationError):
    """Raised when the requested model is unavailable or misconfigured."""


class CompressionError(Exception):
    """Raised when a compression capability cannot summarize a tool result."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Compression of '{tool_name}' output failed: {message}")
