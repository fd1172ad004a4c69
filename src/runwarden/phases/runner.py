"""Phase runner: sequential chains and dependency-DAG execution.

Long agent tasks are split into phases, each with its own instructions,
step budget and fresh context window. In ``parallel`` mode phases form a
DAG: every phase whose dependencies have completed joins the current ready
group, and the whole group runs concurrently before the next group starts.

A failing phase does not abort the run. Its exception is captured as a
``PhaseResult`` with ``finish_reason="error"`` so siblings and downstream
phases still run with partial results.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Literal

from runwarden.context.managed import (
    ManagedGenerateOptions,
    ManagedGenerateResult,
    managed_generate,
)
from runwarden.observability.logging import get_logger, log_context
from runwarden.observability.tracing import annotate_current_run, trace_context, traceable
from runwarden.phases.errors import (
    CircularDependencyError,
    DuplicatePhaseError,
    UnknownPhaseDependencyError,
)
from runwarden.phases.models import Phase, PhaseResult, PhaseRunResult

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from runwarden.config import ContextConfig
    from runwarden.context.managed import AgentSpec, ContextWindowManager

log = get_logger(__name__)

ExecutionMode = Literal["sequential", "parallel"]

PREDECESSOR_SUMMARY_CHARS = 500
PREVIOUS_PHASE_SUMMARY_CHARS = 1000


@dataclass
class PhaseRunnerOptions:
    """Inputs for ``run_phases``.

    Attributes:
        agent: Agent every phase runs with.
        phases: Phases in declared order.
        input: Original task text, included in every phase input.
        execution_mode: "sequential" (list order) or "parallel" (DAG groups).
        context: Context window settings shared by all phases.
        max_tokens: Per-step output cap.
        memory: ``{"thread": ..., "resource": ...}`` pass-through.
        managed_generate_overrides: Extra ``ManagedGenerateOptions`` fields
            applied to every phase (e.g. ``compressor``, ``budget_gate``).
        on_phase_start: Callback ``(phase, index)``.
        on_phase_complete: Callback ``(phase, result, index)``.
        manager: Context window manager; defaults to ``managed_generate``.
    """

    agent: AgentSpec
    phases: list[Phase]
    input: str
    execution_mode: ExecutionMode = "sequential"
    context: ContextConfig | None = None
    max_tokens: int | None = None
    memory: dict[str, str] | None = None
    managed_generate_overrides: dict[str, Any] = field(default_factory=dict)
    on_phase_start: Callable[[Phase, int], Any] | None = None
    on_phase_complete: Callable[[Phase, PhaseResult, int], Any] | None = None
    manager: ContextWindowManager | None = None


def summarize_phase_output(text: str, max_len: int = PREVIOUS_PHASE_SUMMARY_CHARS) -> str:
    """Truncate phase output for inclusion in a later phase's input."""
    if not text:
        return "(no output)"
    if len(text) <= max_len:
        return text
    return text[:max_len] + f"\n...[truncated, {len(text) - max_len} chars omitted]"


def build_phase_input(
    phase: Phase,
    index: int,
    total: int,
    original_input: str,
    completed: Mapping[str, PhaseResult],
) -> str:
    """Compose the input text for one phase.

    Phases with dependencies see their direct predecessors' outputs (not the
    whole ancestor closure). Otherwise ``input_from_previous`` pulls in the
    most recently completed phase. The original task and the phase header
    with its instructions always follow.

    Args:
        phase: Phase being started.
        index: Zero-based position in declared order.
        total: Number of declared phases.
        original_input: Original task text.
        completed: Completed results by phase ID, in completion order.
    """
    parts: list[str] = []

    if phase.depends_on:
        outputs = [
            f'Results from "{dep.phase_name}":\n'
            f"{summarize_phase_output(dep.text, PREDECESSOR_SUMMARY_CHARS)}"
            for dep_id in phase.depends_on
            if (dep := completed.get(dep_id)) is not None
        ]
        if outputs:
            parts.append("\n\n".join(outputs))
    elif phase.input_from_previous and completed:
        last = list(completed.values())[-1]
        parts.append(
            f'Results from previous phase "{last.phase_name}":\n{summarize_phase_output(last.text)}'
        )

    parts.append(original_input)
    parts.append(f"--- Phase {index + 1}/{total}: {phase.name} ---\n{phase.instructions}")
    return "\n\n".join(parts)


def _check_unique_ids(phases: list[Phase]) -> None:
    seen: set[str] = set()
    for phase in phases:
        if phase.id in seen:
            raise DuplicatePhaseError(phase.id)
        seen.add(phase.id)


def plan_parallel_groups(phases: list[Phase]) -> list[list[Phase]]:
    """Group phases into ready sets without executing anything.

    Group ``n + 1`` holds every phase whose dependencies all sit in groups
    ``1..n``. Within a group, declared order is preserved.

    Raises:
        DuplicatePhaseError: If two phases share an ID.
        UnknownPhaseDependencyError: If a dependency ID is not declared.
        CircularDependencyError: If some phases can never become ready.
    """
    _check_unique_ids(phases)
    known = {p.id for p in phases}
    for phase in phases:
        for dep in phase.depends_on:
            if dep not in known:
                raise UnknownPhaseDependencyError(phase.name, dep)

    groups: list[list[Phase]] = []
    done: set[str] = set()
    remaining = list(phases)
    while remaining:
        ready = [p for p in remaining if all(d in done for d in p.depends_on)]
        if not ready:
            raise CircularDependencyError(p.id for p in remaining)
        groups.append(ready)
        done.update(p.id for p in ready)
        remaining = [p for p in remaining if p.id not in done]
    return groups


def validate_phases(phases: list[Phase], execution_mode: ExecutionMode = "sequential") -> None:
    """Reject a phase list before anything is reserved or run.

    Sequential runs only need unique IDs; parallel runs must also plan
    cleanly into groups.

    Raises:
        PhaseConfigError: If the phase list is invalid for the mode.
        ValueError: If the execution mode is unknown.
    """
    if execution_mode == "parallel":
        plan_parallel_groups(phases)
    elif execution_mode == "sequential":
        _check_unique_ids(phases)
    else:
        raise ValueError(f"Unknown execution mode: {execution_mode}")


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    ret = callback(*args)
    if inspect.isawaitable(ret):
        await ret


def _phase_generate_options(phase: Phase, options: PhaseRunnerOptions) -> ManagedGenerateOptions:
    ctx = options.context
    kwargs: dict[str, Any] = {
        "max_steps": phase.max_steps,
        "max_tokens": options.max_tokens,
        "memory": options.memory,
        "tools": phase.tools,
    }
    if ctx is not None:
        kwargs.update(
            max_context_tokens=ctx.max_context_tokens,
            window_size=ctx.window_size,
            anchor_instructions=ctx.anchor_instructions,
            anchor_interval=ctx.anchor_interval,
        )
    return replace(ManagedGenerateOptions(**kwargs), **options.managed_generate_overrides)


@traceable(name="Phase", run_type="chain", tags=["runwarden", "phase"])
async def execute_phase(
    phase: Phase,
    index: int,
    options: PhaseRunnerOptions,
    completed: Mapping[str, PhaseResult],
    parallel_group: int | None = None,
) -> PhaseResult:
    """Run one phase through the context window manager.

    Exceptions from the manager are captured in the returned result;
    callback exceptions propagate.
    """
    annotate_current_run(phase_id=phase.id, parallel_group=parallel_group)
    with log_context(phase_id=phase.id):
        return await _run_phase(phase, index, options, completed, parallel_group)


async def _run_phase(
    phase: Phase,
    index: int,
    options: PhaseRunnerOptions,
    completed: Mapping[str, PhaseResult],
    parallel_group: int | None,
) -> PhaseResult:
    started_at = time.time()
    await _notify(options.on_phase_start, phase, index)
    log.info("phase_started", index=index, group=parallel_group)

    phase_input = build_phase_input(phase, index, len(options.phases), options.input, completed)

    generate_options = _phase_generate_options(phase, options)
    try:
        if options.manager is not None:
            managed = await options.manager.run(options.agent, phase_input, generate_options)
        else:
            managed = await managed_generate(options.agent, phase_input, generate_options)
    except Exception as e:
        log.error("phase_failed", error=str(e))
        managed = ManagedGenerateResult(
            text=f"Phase failed: {e}",
            finish_reason="error",
            abort_reason=str(e),
        )

    completed_at = time.time()
    result = PhaseResult(
        phase_id=phase.id,
        phase_name=phase.name,
        text=managed.text,
        total_steps=managed.total_steps,
        total_prompt_tokens=managed.total_prompt_tokens,
        total_completion_tokens=managed.total_completion_tokens,
        finish_reason=managed.finish_reason,
        abort_reason=managed.abort_reason,
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=round((completed_at - started_at) * 1000),
        parallel_group=parallel_group,
    )

    await _notify(options.on_phase_complete, phase, result, index)
    log.info(
        "phase_completed",
        steps=result.total_steps,
        tokens=result.total_tokens,
        duration_ms=result.duration_ms,
        finish_reason=result.finish_reason,
    )
    return result


def _aggregate(results: list[PhaseResult], final_text: str, duration_ms: int) -> PhaseRunResult:
    return PhaseRunResult(
        phases=results,
        final_text=final_text,
        total_steps=sum(r.total_steps for r in results),
        total_prompt_tokens=sum(r.total_prompt_tokens for r in results),
        total_completion_tokens=sum(r.total_completion_tokens for r in results),
        total_duration_ms=duration_ms,
    )


async def _run_sequential(options: PhaseRunnerOptions) -> PhaseRunResult:
    _check_unique_ids(options.phases)
    completed: dict[str, PhaseResult] = {}
    results: list[PhaseResult] = []

    for index, phase in enumerate(options.phases):
        result = await execute_phase(phase, index, options, completed)
        completed[phase.id] = result
        results.append(result)

    final_text = results[-1].text if results else ""
    return _aggregate(results, final_text, sum(r.duration_ms for r in results))


async def _run_parallel(options: PhaseRunnerOptions) -> PhaseRunResult:
    groups = plan_parallel_groups(options.phases)
    index_by_id = {p.id: i for i, p in enumerate(options.phases)}
    completed: dict[str, PhaseResult] = {}
    results: list[PhaseResult] = []
    started = time.monotonic()

    for group_no, ready in enumerate(groups, start=1):
        log.info("parallel_group_started", group=group_no, phases=[p.id for p in ready])
        with trace_context("Parallel Group", metadata={"group": group_no}):
            group_results = await asyncio.gather(
                *(
                    execute_phase(phase, index_by_id[phase.id], options, completed, group_no)
                    for phase in ready
                )
            )
        for phase, result in zip(ready, group_results):
            completed[phase.id] = result
            results.append(result)

    final_text = ""
    if options.phases:
        last_declared = completed.get(options.phases[-1].id)
        final_text = (last_declared.text if last_declared else "") or (
            results[-1].text if results else ""
        )
    return _aggregate(results, final_text, round((time.monotonic() - started) * 1000))


@traceable(name="Run Phases", run_type="chain", tags=["runwarden", "phases"])
async def run_phases(options: PhaseRunnerOptions) -> PhaseRunResult:
    """Execute phases sequentially or as a dependency DAG.

    Args:
        options: Agent, phases, input and execution settings.

    Returns:
        PhaseRunResult with per-phase results in completion order and
        the final text of the last declared phase.

    Raises:
        PhaseConfigError: If the phase list is invalid (duplicate IDs; in
            parallel mode also unknown dependencies or cycles).
    """
    log.info(
        "phase_run_started",
        mode=options.execution_mode,
        phases=len(options.phases),
    )
    if options.execution_mode == "parallel":
        result = await _run_parallel(options)
    elif options.execution_mode == "sequential":
        result = await _run_sequential(options)
    else:
        raise ValueError(f"Unknown execution mode: {options.execution_mode}")

    log.info(
        "phase_run_completed",
        phases=len(result.phases),
        steps=result.total_steps,
        tokens=result.total_tokens,
        duration_ms=result.total_duration_ms,
    )
    return result
