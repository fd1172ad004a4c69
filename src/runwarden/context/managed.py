"""Bounded multi-step generation with a managed context window.

``managed_generate`` drives a generation capability one step at a time.
Every step rebuilds a bounded window (original request, collapsed history,
recent exchanges), re-anchors instructions periodically, optionally checks
the spend ledger, and folds tool results back into the managed history in
condensed form. The loop is an explicit state machine:

    NEXT_STEP -> BUILD_WINDOW -> CHECK_BUDGET -> CHECK_CONTEXT
              -> AWAIT_GENERATION -> FOLD_TOOL_RESULTS -> NEXT_STEP
    (any state) -> COMPLETE | ABORT

Running out of steps, context, or budget is not an error: the result
carries an ``abort_reason`` and whatever text was produced so far.
"""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from runwarden.context.compression import CompressionCache, compress_tool_result
from runwarden.context.window import (
    ToolCallRecord,
    anthropic_cache_hint,
    build_message_window,
    build_step_instructions,
    estimate_window_tokens,
    preview,
)
from runwarden.observability.logging import get_logger
from runwarden.observability.tracing import annotate_current_run, traceable
from runwarden.providers.base import ManagedMessage, ModelOptions
from runwarden.routing.router import RoutingTier, resolve_routing_decision

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from runwarden.budget.models import BudgetCheckResult
    from runwarden.providers.base import (
        CompressionCapability,
        GenerationCapability,
        StepOutput,
    )
    from runwarden.routing.router import ModelSpec, RoutingConfig, RoutingDecision

    BudgetGate = Callable[[], Awaitable[BudgetCheckResult]]
    StepCallback = Callable[[int, "StepSummary"], Any]

log = get_logger(__name__)

DEFAULT_MAX_CONTEXT_TOKENS = 50_000
DEFAULT_WINDOW_SIZE = 5
DEFAULT_ANCHOR_INTERVAL = 10
DEFAULT_COMPRESSION_THRESHOLD = 3000
MAX_COMPRESSED_CHARS = 2000
TOOL_RESULT_PREVIEW_CHARS = 500
REASONING_THINKING_BUDGET = 10_000


class StepState(str, Enum):
    """States of the per-step loop."""

    NEXT_STEP = "next_step"
    BUILD_WINDOW = "build_window"
    CHECK_BUDGET = "check_budget"
    CHECK_CONTEXT = "check_context"
    AWAIT_GENERATION = "await_generation"
    FOLD_TOOL_RESULTS = "fold_tool_results"
    COMPLETE = "complete"
    ABORT = "abort"


@dataclass
class AgentSpec:
    """What to run: instructions, primary model, and the capability that runs it.

    Attributes:
        instructions: System instructions, sent through the instructions channel.
        model: Primary model identity.
        generator: Capability producing one step per call.
        routing: Optional routing configuration (``auto`` mode picks a tier per step).
        name: Display name for logs and traces.
    """

    instructions: str
    model: ModelSpec
    generator: GenerationCapability
    routing: RoutingConfig | None = None
    name: str = "agent"


@dataclass
class ManagedGenerateOptions:
    """Options for one managed generation run.

    Attributes:
        max_steps: Hard cap on generation steps.
        max_context_tokens: Estimated token budget per step window.
        window_size: Recent tool calls kept verbatim; older ones are summarized.
        anchor_instructions: Periodically re-anchor instructions with progress.
        anchor_interval: Steps between anchors.
        max_tokens: Per-step output cap.
        memory: ``{"thread": ..., "resource": ...}`` pass-through.
        on_step: Callback ``(step, summary)``, sync or async.
        model_provider: Provider name; defaults to the agent model's provider.
        compressor: Summarizer for large tool results; None disables compression.
        compression_threshold: Tool result length (chars) that triggers compression.
        is_reasoning_model: Treat every step as a reasoning-model step.
        tools: Tool allow-list forwarded to the capability.
        budget_gate: Async callable re-checking the ledger before each step.
        cache: Compression cache; defaults to the manager's.
    """

    max_steps: int
    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS
    window_size: int = DEFAULT_WINDOW_SIZE
    anchor_instructions: bool = True
    anchor_interval: int = DEFAULT_ANCHOR_INTERVAL
    max_tokens: int | None = None
    memory: dict[str, str] | None = None
    on_step: StepCallback | None = None
    model_provider: str | None = None
    compressor: CompressionCapability | None = None
    compression_threshold: int = DEFAULT_COMPRESSION_THRESHOLD
    is_reasoning_model: bool = False
    tools: tuple[str, ...] | None = None
    budget_gate: BudgetGate | None = None
    cache: CompressionCache | None = None

    def __post_init__(self) -> None:
        if self.max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        if self.window_size < 0:
            raise ValueError("window_size must be non-negative")
        if self.anchor_interval < 1:
            raise ValueError("anchor_interval must be at least 1")


@dataclass(frozen=True)
class StepSummary:
    """Observation of one step, passed to ``on_step``. Never replayed to the model."""

    tool_name: str | None
    input_preview: str
    output_preview: str
    prompt_tokens: int
    completion_tokens: int
    has_tool_call: bool
    text: str


@dataclass
class ManagedGenerateResult:
    """Outcome of a managed generation run."""

    text: str
    steps: list[StepSummary] = field(default_factory=list)
    total_steps: int = 0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    finish_reason: str = "unknown"
    abort_reason: str | None = None
    routing_decisions: list[RoutingDecision] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.total_prompt_tokens + self.total_completion_tokens


class StepMachine:
    """Per-run state for the step loop.

    Each ``_on_<state>`` handler performs one transition and returns the
    next state, so handlers can be driven individually in tests.
    """

    def __init__(
        self,
        agent: AgentSpec,
        input: str,
        options: ManagedGenerateOptions,
        cache: CompressionCache,
    ) -> None:
        self.agent = agent
        self.input = input
        self.options = options
        self.cache = cache
        self.provider = options.model_provider or agent.model.provider

        self.messages: list[ManagedMessage] = [ManagedMessage(role="user", content=input)]
        self.history: list[ToolCallRecord] = []
        self.steps: list[StepSummary] = []
        self.routing_decisions: list[RoutingDecision] = []

        self.step = 0
        self.total_prompt_tokens = 0
        self.total_completion_tokens = 0
        self.last_text = ""
        self.finish_reason = "unknown"
        self.abort_reason: str | None = None
        self.budget_pressure = False

        self.window: list[ManagedMessage] = []
        self.instructions = ""
        self.output: StepOutput | None = None

        self._handlers: dict[StepState, Callable[[], Awaitable[StepState]]] = {
            StepState.NEXT_STEP: self._on_next_step,
            StepState.BUILD_WINDOW: self._on_build_window,
            StepState.CHECK_BUDGET: self._on_check_budget,
            StepState.CHECK_CONTEXT: self._on_check_context,
            StepState.AWAIT_GENERATION: self._on_await_generation,
            StepState.FOLD_TOOL_RESULTS: self._on_fold_tool_results,
        }

    async def run(self) -> ManagedGenerateResult:
        state = StepState.NEXT_STEP
        while state not in (StepState.COMPLETE, StepState.ABORT):
            state = await self._handlers[state]()
        return self.result()

    def result(self) -> ManagedGenerateResult:
        return ManagedGenerateResult(
            text=self.last_text,
            steps=list(self.steps),
            total_steps=self.step,
            total_prompt_tokens=self.total_prompt_tokens,
            total_completion_tokens=self.total_completion_tokens,
            finish_reason=self.finish_reason,
            abort_reason=self.abort_reason,
            routing_decisions=list(self.routing_decisions),
        )

    def _abort(self, reason: str) -> StepState:
        self.abort_reason = reason
        log.warning("step_aborted", agent=self.agent.name, step=self.step, reason=reason)
        return StepState.ABORT

    async def _on_next_step(self) -> StepState:
        if self.step >= self.options.max_steps:
            return self._abort(f"Reached maximum steps ({self.options.max_steps})")
        self.step += 1
        self.output = None
        log.debug("step_started", agent=self.agent.name, step=self.step)
        return StepState.BUILD_WINDOW

    async def _on_build_window(self) -> StepState:
        opts = self.options
        self.window = build_message_window(
            self.messages, self.history, opts.window_size, provider=self.provider
        )
        self.instructions = build_step_instructions(
            self.agent.instructions,
            self.step,
            opts.max_steps,
            self.history,
            anchor=opts.anchor_instructions,
            interval=opts.anchor_interval,
        )
        return StepState.CHECK_BUDGET

    async def _on_check_budget(self) -> StepState:
        gate = self.options.budget_gate
        if gate is None:
            return StepState.CHECK_CONTEXT
        result = await gate()
        if not result.allowed:
            return self._abort(f"Budget check failed at step {self.step}: {result.summary()}")
        self.budget_pressure = bool(result.warnings)
        return StepState.CHECK_CONTEXT

    async def _on_check_context(self) -> StepState:
        estimate = estimate_window_tokens(self.instructions, self.window)
        budget = self.options.max_context_tokens
        if estimate > budget:
            return self._abort(
                f"Context token estimate ({estimate}) exceeded budget ({budget}) at step {self.step}"
            )
        return StepState.AWAIT_GENERATION

    def _route(self) -> tuple[ModelSpec | None, str, bool]:
        """Pick this step's model, provider and reasoning flag."""
        decision = resolve_routing_decision(
            self.agent.routing, self.agent.model, self.input, self.budget_pressure
        )
        if decision is None:
            return None, self.provider, self.options.is_reasoning_model

        self.routing_decisions.append(decision)
        log.debug(
            "step_routed",
            step=self.step,
            tier=decision.tier.value,
            model=str(decision.model),
            reason=decision.reason,
        )
        provider = self.options.model_provider or decision.model.provider
        reasoning = self.options.is_reasoning_model or decision.tier is RoutingTier.REASONING
        return decision.model, provider, reasoning

    async def _on_await_generation(self) -> StepState:
        opts = self.options
        model, provider, reasoning = self._route()

        instructions: str | None = self.instructions or None
        window = list(self.window)
        provider_options: dict[str, dict[str, Any]] = {}

        if provider == "anthropic" and not reasoning:
            provider_options["anthropic"] = anthropic_cache_hint()["anthropic"]

        if reasoning:
            # Reasoning models take instructions inline in the first user message
            if self.step == 1 and instructions and window:
                first = window[0]
                window[0] = ManagedMessage(
                    role=first.role,
                    content=f"{instructions}\n\n---\n\n{first.content}",
                    provider_metadata=first.provider_metadata,
                )
                instructions = None
            if provider == "openai":
                provider_options["openai"] = {"reasoningEffort": "high"}
            elif provider == "anthropic":
                provider_options["anthropic"] = {
                    "thinking": {"type": "enabled", "budgetTokens": REASONING_THINKING_BUDGET}
                }

        step_options = ModelOptions(
            model=model,
            max_tokens=opts.max_tokens,
            memory=opts.memory,
            tools=opts.tools,
            provider_options=provider_options,
        )
        try:
            self.output = await self.agent.generator.generate_step(
                window, instructions, step_options
            )
        except Exception as e:
            return self._abort(f"Generate failed at step {self.step}: {e}")
        return StepState.FOLD_TOOL_RESULTS

    async def _condense(self, tool_name: str, result: Any) -> str:
        opts = self.options
        if isinstance(result, str):
            raw = result
        else:
            raw = json.dumps(result if result is not None else "", default=str)
        if opts.compressor is not None and len(raw) > opts.compression_threshold:
            return await compress_tool_result(
                tool_name,
                raw,
                min(opts.compression_threshold, MAX_COMPRESSED_CHARS),
                opts.compressor,
                self.cache,
            )
        return preview(result, TOOL_RESULT_PREVIEW_CHARS)

    async def _on_fold_tool_results(self) -> StepState:
        output = self.output
        assert output is not None

        prompt_tokens = output.usage.prompt_tokens
        completion_tokens = output.usage.completion_tokens
        self.total_prompt_tokens += prompt_tokens
        self.total_completion_tokens += completion_tokens

        calls = output.tool_calls
        results = [r.result for r in output.tool_results]
        results += [None] * (len(calls) - len(results))
        has_tool_call = bool(calls)

        first_call = calls[0] if calls else None
        summary = StepSummary(
            tool_name=first_call.tool_name if first_call else None,
            input_preview=preview(first_call.args, 100) if first_call and first_call.args else "",
            output_preview=preview(results[0], 200) if calls and results[0] else "",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            has_tool_call=has_tool_call,
            text=output.text,
        )
        self.steps.append(summary)

        for call, result in zip(calls, results):
            self.history.append(
                ToolCallRecord(
                    step=self.step,
                    tool_name=call.tool_name or "unknown",
                    input_preview=preview(call.args, 80),
                    output_preview=preview(result, 120),
                )
            )

        if output.text:
            self.messages.append(ManagedMessage(role="assistant", content=output.text))
        if has_tool_call:
            parts = []
            for call, result in zip(calls, results):
                name = call.tool_name or "unknown"
                condensed = await self._condense(name, result)
                parts.append(f"Tool: {name}\nResult: {condensed}")
            self.messages.append(ManagedMessage(role="assistant", content="\n---\n".join(parts)))

        if self.options.on_step is not None:
            ret = self.options.on_step(self.step, summary)
            if inspect.isawaitable(ret):
                await ret

        self.last_text = output.text or self.last_text
        self.finish_reason = output.finish_reason or "unknown"

        if not has_tool_call and output.text:
            self.finish_reason = "complete"
            return StepState.COMPLETE
        if not has_tool_call:
            return self._abort(f"Agent produced neither tool calls nor text at step {self.step}")
        return StepState.NEXT_STEP


class ContextWindowManager:
    """Runs managed generations against a shared compression cache."""

    def __init__(self, cache: CompressionCache | None = None) -> None:
        self.cache = cache if cache is not None else CompressionCache()

    async def run(
        self,
        agent: AgentSpec,
        input: str,
        options: ManagedGenerateOptions,
    ) -> ManagedGenerateResult:
        machine = StepMachine(agent, input, options, options.cache or self.cache)
        result = await machine.run()
        log.info(
            "managed_generate_complete",
            agent=agent.name,
            steps=result.total_steps,
            prompt_tokens=result.total_prompt_tokens,
            completion_tokens=result.total_completion_tokens,
            finish_reason=result.finish_reason,
            aborted=result.abort_reason is not None,
        )
        return result


_default_manager = ContextWindowManager()


def get_default_manager() -> ContextWindowManager:
    return _default_manager


@traceable(name="Managed Generate", run_type="chain", tags=["runwarden", "managed"])
async def managed_generate(
    agent: AgentSpec,
    input: str,
    options: ManagedGenerateOptions,
) -> ManagedGenerateResult:
    """Run ``agent`` on ``input`` with a bounded, managed context window.

    Args:
        agent: Instructions, primary model and generation capability.
        input: Original user request; it is kept verbatim in every window.
        options: Step, context and compression settings.

    Returns:
        ManagedGenerateResult. ``abort_reason`` is set when the run stopped
        before the model produced a final text answer.
    """
    result = await _default_manager.run(agent, input, options)
    annotate_current_run(
        agent=agent.name,
        total_steps=result.total_steps,
        finish_reason=result.finish_reason,
        aborted=result.abort_reason is not None,
    )
    return result
