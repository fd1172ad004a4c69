"""Governed run facade: budget check, reservation, execution, settlement.

``run_governed`` packages the caller-side protocol around the engine:

1. Check the budget hierarchy; a blocked run never starts.
2. Reserve an estimated cost so concurrent runs see it immediately, then
   check again; a run whose own reservation breaks a limit is cancelled
   before its first step.
3. Run the phases (or a single managed generation) with a budget gate that
   re-checks the ledger before every step.
4. Finalize the reservation with the actual cost, or cancel it when the
   run raises.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from runwarden.budget.models import BudgetCheckContext, BudgetCheckResult, TokenPricing
from runwarden.context.managed import (
    ManagedGenerateOptions,
    ManagedGenerateResult,
    managed_generate,
)
from runwarden.observability.logging import get_logger, log_context
from runwarden.observability.tracing import (
    annotate_current_run,
    generate_run_id,
    run_scope,
    traceable,
)
from runwarden.phases.models import PhaseRunResult
from runwarden.phases.runner import (
    ExecutionMode,
    PhaseRunnerOptions,
    run_phases,
    validate_phases,
)

if TYPE_CHECKING:
    from runwarden.budget.enforcement import BudgetEnforcementService
    from runwarden.config import ContextConfig
    from runwarden.context.managed import AgentSpec
    from runwarden.phases.models import Phase
    from runwarden.providers.base import CompressionCapability

log = get_logger(__name__)

DEFAULT_ESTIMATE_USD = 0.10
DEFAULT_SINGLE_RUN_STEPS = 10


@dataclass
class GovernedRunRequest:
    """A task to run under budget governance.

    When ``phases`` is None the input runs as a single managed generation
    with ``max_steps`` steps.
    """

    agent: AgentSpec
    input: str
    agent_id: str
    phases: list[Phase] | None = None
    execution_mode: ExecutionMode = "sequential"
    user_id: str | None = None
    organization_id: str | None = None
    run_id: str | None = None
    estimated_cost_usd: float = DEFAULT_ESTIMATE_USD
    max_steps: int = DEFAULT_SINGLE_RUN_STEPS
    context: ContextConfig | None = None
    max_tokens: int | None = None
    memory: dict[str, str] | None = None
    compressor: CompressionCapability | None = None
    gate_every_step: bool = True
    managed_generate_overrides: dict[str, Any] = field(default_factory=dict)

    @property
    def budget_context(self) -> BudgetCheckContext:
        return BudgetCheckContext(
            agent_id=self.agent_id,
            user_id=self.user_id,
            organization_id=self.organization_id,
        )


@dataclass
class GovernedRunResult:
    """Outcome of a governed run.

    ``output`` is None when a budget check blocked the run. ``reservation_id``
    is set (and cancelled) when the block came from the run's own reservation.
    """

    run_id: str
    allowed: bool
    budget: BudgetCheckResult
    reservation_id: str | None = None
    output: PhaseRunResult | ManagedGenerateResult | None = None
    cost_usd: float = 0.0

    @property
    def text(self) -> str:
        if self.output is None:
            return ""
        if isinstance(self.output, PhaseRunResult):
            return self.output.final_text
        return self.output.text

    @property
    def prompt_tokens(self) -> int:
        return self.output.total_prompt_tokens if self.output is not None else 0

    @property
    def completion_tokens(self) -> int:
        return self.output.total_completion_tokens if self.output is not None else 0


def _overrides(request: GovernedRunRequest, service: BudgetEnforcementService) -> dict[str, Any]:
    overrides = dict(request.managed_generate_overrides)
    if request.compressor is not None:
        overrides.setdefault("compressor", request.compressor)
    if request.gate_every_step:
        ctx = request.budget_context

        async def budget_gate() -> BudgetCheckResult:
            return await service.check(ctx)

        overrides.setdefault("budget_gate", budget_gate)
    return overrides


async def _execute(
    request: GovernedRunRequest, overrides: dict[str, Any]
) -> PhaseRunResult | ManagedGenerateResult:
    if request.phases is not None:
        return await run_phases(
            PhaseRunnerOptions(
                agent=request.agent,
                phases=request.phases,
                input=request.input,
                execution_mode=request.execution_mode,
                context=request.context,
                max_tokens=request.max_tokens,
                memory=request.memory,
                managed_generate_overrides=overrides,
            )
        )

    ctx = request.context
    options = ManagedGenerateOptions(
        max_steps=request.max_steps,
        max_tokens=request.max_tokens,
        memory=request.memory,
    )
    if ctx is not None:
        options.max_context_tokens = ctx.max_context_tokens
        options.window_size = ctx.window_size
        options.anchor_instructions = ctx.anchor_instructions
        options.anchor_interval = ctx.anchor_interval
    return await managed_generate(request.agent, request.input, replace(options, **overrides))


@traceable(name="Governed Run", run_type="chain", tags=["runwarden", "governed"])
async def run_governed(
    request: GovernedRunRequest,
    service: BudgetEnforcementService,
    pricing: TokenPricing | None = None,
) -> GovernedRunResult:
    """Run a task inside the budget check and reservation protocol.

    Args:
        request: Task, agent and budget identity.
        service: Budget enforcement service backed by the shared ledger.
        pricing: Token pricing for settling the reservation; free if None.

    Returns:
        GovernedRunResult. ``allowed`` is False (and nothing ran) when the
        ledger, with or without this run's reservation, has a violation.

    Raises:
        PhaseConfigError: If the phases are invalid; nothing is reserved.
        Exception: Anything the run raises, after the reservation is cancelled.
    """
    run_id = request.run_id or generate_run_id()
    annotate_current_run(run_id=run_id, agent_id=request.agent_id)
    with run_scope(run_id), log_context(run_id=run_id, agent_id=request.agent_id):
        return await _govern(request, service, pricing or TokenPricing(), run_id)


async def _govern(
    request: GovernedRunRequest,
    service: BudgetEnforcementService,
    pricing: TokenPricing,
    run_id: str,
) -> GovernedRunResult:
    if request.phases is not None:
        validate_phases(request.phases, request.execution_mode)

    check = await service.check(request.budget_context)
    if not check.allowed:
        log.warning("governed_run_blocked", reason=check.summary())
        return GovernedRunResult(run_id=run_id, allowed=False, budget=check)

    reservation_id = await service.create_reservation(
        run_id,
        request.agent_id,
        request.estimated_cost_usd,
        tenant_id=request.organization_id,
        user_id=request.user_id,
    )

    # The step gate counts this reservation, so it must fit before step 1
    admitted = await service.check(request.budget_context)
    if not admitted.allowed:
        await service.cancel_reservation(reservation_id)
        log.warning(
            "governed_run_blocked",
            reason=admitted.summary(),
            reservation_id=reservation_id,
        )
        return GovernedRunResult(
            run_id=run_id, allowed=False, budget=admitted, reservation_id=reservation_id
        )
    check = admitted
    check.reservation_id = reservation_id

    try:
        output = await _execute(request, _overrides(request, service))
    except (Exception, asyncio.CancelledError):
        log.error("governed_run_failed", reservation_id=reservation_id)
        await service.cancel_reservation(reservation_id)
        raise

    cost = pricing.cost(output.total_prompt_tokens, output.total_completion_tokens)
    await service.finalize_reservation(reservation_id, cost)
    annotate_current_run(reservation_id=reservation_id, cost_usd=round(cost, 6))
    log.info(
        "governed_run_completed",
        prompt_tokens=output.total_prompt_tokens,
        completion_tokens=output.total_completion_tokens,
        cost_usd=round(cost, 6),
    )
    return GovernedRunResult(
        run_id=run_id,
        allowed=True,
        budget=check,
        reservation_id=reservation_id,
        output=output,
        cost_usd=cost,
    )


__all__ = [
    "GovernedRunRequest",
    "GovernedRunResult",
    "TokenPricing",
    "run_governed",
]
