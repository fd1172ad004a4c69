"""LangChain adapters for the generation and compression capabilities."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from runwarden.observability.logging import get_logger
from runwarden.observability.tracing import build_runnable_config
from runwarden.providers.base import (
    CompressionError,
    GenerationConnectionError,
    GenerationError,
    GenerationRateLimitError,
    ManagedMessage,
    ModelOptions,
    StepOutput,
    StepUsage,
    ToolCall,
    ToolResult,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from langchain_core.callbacks import BaseCallbackHandler
    from langchain_core.language_models import BaseChatModel
    from langchain_core.tools import BaseTool

    from runwarden.routing.router import ModelSpec

log = get_logger(__name__)

COMPRESSION_PROMPT = (
    'Summarize this tool output from "{tool_name}". '
    "Preserve all data values, IDs, names, status codes, URLs, and actionable information. "
    "Remove formatting, boilerplate, HTML, and redundant fields. "
    "Keep it under {max_chars} characters.\n\n{raw_text}"
)


def is_connectivity_error(exc: BaseException) -> bool:
    """Check if an exception indicates provider connectivity loss.

    Walks the ``__cause__`` chain so LangChain-wrapped httpx errors are
    also detected.
    """
    import httpx

    if isinstance(exc, (httpx.NetworkError, httpx.TimeoutException, ConnectionError)):
        return True
    cause = exc.__cause__
    if cause is not None:
        return is_connectivity_error(cause)
    return False


def is_rate_limit_error(exc: BaseException) -> bool:
    """Check if an exception (or its cause) carries an HTTP 429 status."""
    if getattr(exc, "status_code", None) == 429:
        return True
    cause = exc.__cause__
    if cause is not None:
        return is_rate_limit_error(cause)
    return False


class LangChainStepGenerator:
    """Runs one chat-model turn per step and executes the requested tools.

    The model is invoked with the windowed messages (instructions as a
    system message), tools bound from the allow-list, and any per-step
    model override resolved through ``model_resolver``. Tool calls in the
    response are executed immediately so the step returns both calls and
    results, mirroring a single-step agent invocation.
    """

    def __init__(
        self,
        model: BaseChatModel,
        tools: list[BaseTool] | None = None,
        *,
        provider: str = "langchain",
        model_resolver: Callable[[ModelSpec], BaseChatModel] | None = None,
        callbacks: list[BaseCallbackHandler] | None = None,
    ) -> None:
        self._model = model
        self._tools = {t.name: t for t in tools or []}
        self._provider = provider
        self._model_resolver = model_resolver
        self._callbacks = callbacks
        self._resolved: dict[tuple[str, str], BaseChatModel] = {}

    def _model_for(self, options: ModelOptions) -> BaseChatModel:
        spec = options.model
        if spec is None or self._model_resolver is None:
            return self._model
        key = (spec.provider, spec.name)
        if key not in self._resolved:
            self._resolved[key] = self._model_resolver(spec)
        return self._resolved[key]

    def _allowed_tools(self, options: ModelOptions) -> list[BaseTool]:
        if options.tools is None:
            return list(self._tools.values())
        return [self._tools[name] for name in options.tools if name in self._tools]

    async def generate_step(
        self,
        messages: list[ManagedMessage],
        instructions: str | None,
        options: ModelOptions,
    ) -> StepOutput:
        """Generate one step and execute its tool calls.

        Raises:
            GenerationConnectionError: If the provider cannot be reached.
            GenerationRateLimitError: If the provider rejects the call with HTTP 429.
            GenerationError: For any other model failure.
        """
        lc_messages: list[Any] = []
        if instructions:
            lc_messages.append(SystemMessage(content=instructions))
        lc_messages.extend(_to_langchain_message(m) for m in messages)

        runnable: Any = self._model_for(options)
        tools = self._allowed_tools(options)
        if tools:
            runnable = runnable.bind_tools(tools)
        bind_kwargs = _provider_bind_kwargs(options)
        if bind_kwargs:
            runnable = runnable.bind(**bind_kwargs)

        config = build_runnable_config(
            run_name="Managed Step",
            tags=["runwarden", "step"],
            callbacks=self._callbacks,
        )
        try:
            response: AIMessage = await runnable.ainvoke(lc_messages, config=config)
        except Exception as e:
            if is_connectivity_error(e):
                raise GenerationConnectionError(self._provider, f"Connection failed: {e}") from e
            if is_rate_limit_error(e):
                raise GenerationRateLimitError(self._provider, f"Rate limit exceeded: {e}") from e
            raise GenerationError(self._provider, f"Step generation failed: {e}") from e

        tool_calls = [
            ToolCall(tool_name=tc.get("name") or "unknown", args=tc.get("args") or {}, id=tc.get("id"))
            for tc in (response.tool_calls or [])
        ]
        tool_results = [await self._execute_tool(tc) for tc in tool_calls]

        usage = StepUsage()
        if response.usage_metadata:
            usage = StepUsage(
                prompt_tokens=response.usage_metadata.get("input_tokens", 0),
                completion_tokens=response.usage_metadata.get("output_tokens", 0),
            )

        finish_reason = "tool_calls" if tool_calls else "unknown"
        if not tool_calls and response.response_metadata:
            finish_reason = str(
                response.response_metadata.get("finish_reason")
                or response.response_metadata.get("stop_reason")
                or "unknown"
            )

        return StepOutput(
            text=_response_text(response.content),
            tool_calls=tool_calls,
            tool_results=tool_results,
            usage=usage,
            finish_reason=finish_reason,
        )

    async def _execute_tool(self, call: ToolCall) -> ToolResult:
        tool = self._tools.get(call.tool_name)
        if tool is None:
            log.warning("tool_call_unknown", tool=call.tool_name)
            return ToolResult(
                tool_name=call.tool_name,
                result=json.dumps({"error": f"Unknown tool '{call.tool_name}'"}),
                id=call.id,
            )
        try:
            log.debug("tool_call_start", tool=call.tool_name)
            result = await tool.ainvoke(call.args)
        except (KeyboardInterrupt, SystemExit):
            raise
        except Exception as e:
            # Tool errors are reported back to the model, not raised
            log.warning("tool_call_error", tool=call.tool_name, error=str(e))
            result = json.dumps({"error": f"Error executing {call.tool_name}: {e}"})
        return ToolResult(tool_name=call.tool_name, result=result, id=call.id)


class LangChainCompressor:
    """Summarizes large tool outputs with a (usually cheap) chat model."""

    def __init__(self, model: BaseChatModel) -> None:
        self._model = model

    async def summarize(self, tool_name: str, raw_text: str, max_chars: int) -> str:
        """Summarize raw tool output.

        Raises:
            CompressionError: If the model call fails.
        """
        prompt = COMPRESSION_PROMPT.format(
            tool_name=tool_name, max_chars=max_chars, raw_text=raw_text
        )
        config = build_runnable_config(
            run_name="Compress Tool Result",
            tags=["runwarden", "compression"],
            metadata={"tool": tool_name},
        )
        try:
            response = await self._model.ainvoke([HumanMessage(content=prompt)], config=config)
        except Exception as e:
            raise CompressionError(tool_name, str(e)) from e
        return _response_text(response.content)


def _to_langchain_message(msg: ManagedMessage) -> Any:
    """Convert a ManagedMessage to a LangChain message.

    Anthropic cache-affinity hints become a ``cache_control`` content block.
    """
    content: Any = msg.content
    anthropic_meta = (msg.provider_metadata or {}).get("anthropic", {})
    if cache_control := anthropic_meta.get("cacheControl"):
        content = [{"type": "text", "text": msg.content, "cache_control": cache_control}]

    if msg.role == "user":
        return HumanMessage(content=content)
    if msg.role == "assistant":
        return AIMessage(content=content)
    raise ValueError(f"Unknown role: {msg.role}")


def _provider_bind_kwargs(options: ModelOptions) -> dict[str, Any]:
    """Map typed per-step options to chat-model bind kwargs."""
    kwargs: dict[str, Any] = {}
    if options.max_tokens:
        kwargs["max_tokens"] = options.max_tokens

    openai_opts = options.provider_options.get("openai", {})
    if effort := openai_opts.get("reasoningEffort"):
        kwargs["reasoning_effort"] = effort

    anthropic_opts = options.provider_options.get("anthropic", {})
    if thinking := anthropic_opts.get("thinking"):
        kwargs["thinking"] = {"type": thinking["type"], "budget_tokens": thinking["budgetTokens"]}

    return kwargs


def _response_text(content: str | list[Any]) -> str:
    """Extract plain text from an AIMessage content field.

    Anthropic and Gemini return a list of content blocks; only ``text``
    blocks are kept, so a tool-use-only response yields an empty string.
    """
    if isinstance(content, str):
        return content
    return "\n".join(
        block["text"]
        for block in content
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
    )
