"""End-to-end governed runs against a file-backed SQLite ledger.

The generators are scripted, so these run without any provider; the
ledger, budget gate, phase scheduler and context manager are all real.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import pytest

from runwarden.budget import (
    BudgetEnforcementService,
    BudgetPolicy,
    CostEventStatus,
    StaticPolicySource,
    TokenPricing,
)
from runwarden.config import ContextConfig
from runwarden.context import AgentSpec, ManagedGenerateResult
from runwarden.engine import GovernedRunRequest, run_governed
from runwarden.phases import Phase, PhaseRunResult
from runwarden.routing import ModelSpec
from tests.fixtures.fakes import PromptRoutedGenerator, ScriptedGenerator, tool_step

if TYPE_CHECKING:
    from runwarden.budget import SqliteLedger
    from runwarden.providers import GenerationCapability

pytestmark = pytest.mark.integration

PRICING = TokenPricing(prompt_per_million_usd=1_000.0, completion_per_million_usd=2_000.0)

DIAMOND = [
    Phase(id="a", name="A", instructions="Discover the integrations.", max_steps=3),
    Phase(id="b", name="B", instructions="Test the APIs.", max_steps=3, depends_on=("a",)),
    Phase(id="c", name="C", instructions="Test the databases.", max_steps=3, depends_on=("a",)),
    Phase(id="d", name="D", instructions="Write the report.", max_steps=3, depends_on=("b", "c")),
]

ANSWERS = {
    "A": "alpha findings",
    "B": "beta findings",
    "C": "gamma findings",
    "D": "delta report",
}


def _agent(generator: GenerationCapability) -> AgentSpec:
    return AgentSpec(
        instructions="You are an integration tester.",
        model=ModelSpec(provider="openai", name="gpt-4o-mini"),
        generator=generator,
        name="integration-tester",
    )


def _service(ledger: SqliteLedger, limit: float = 10.0) -> BudgetEnforcementService:
    policies = StaticPolicySource(
        agent_policies={"tester": BudgetPolicy(monthly_limit_usd=limit, hard_limit=True)}
    )
    return BudgetEnforcementService(ledger.events, policies, ledger.alerts)


@pytest.mark.asyncio
async def test_parallel_diamond_run(ledger: SqliteLedger) -> None:
    """A -> {B, C} -> D runs in three groups and settles one ledger entry."""
    generator = PromptRoutedGenerator(ANSWERS, delay=0.02)
    request = GovernedRunRequest(
        agent=_agent(generator),
        input="Verify all integrations",
        agent_id="tester",
        phases=DIAMOND,
        execution_mode="parallel",
        estimated_cost_usd=0.5,
    )

    result = await run_governed(request, _service(ledger), PRICING)

    assert result.allowed is True
    output = result.output
    assert isinstance(output, PhaseRunResult)
    assert len(output.phases) == 4
    assert {r.phase_id: r.parallel_group for r in output.phases} == {
        "a": 1,
        "b": 2,
        "c": 2,
        "d": 3,
    }
    assert output.phases[-1].phase_id == "d"
    assert result.text == "delta report"
    assert generator.max_active == 2

    report_input = generator.inputs["D"]
    assert 'Results from "B":\nbeta findings' in report_input
    assert 'Results from "C":\ngamma findings' in report_input
    assert "alpha findings" not in report_input
    assert "Verify all integrations" in report_input

    assert (result.prompt_tokens, result.completion_tokens) == (40, 20)
    assert result.cost_usd == pytest.approx(0.08)
    event = await ledger.events.get(result.reservation_id or "")
    assert event is not None
    assert event.status is CostEventStatus.FINALIZED
    assert event.effective_cost_usd == pytest.approx(0.08)


@pytest.mark.asyncio
async def test_settled_spend_blocks_next_run(ledger: SqliteLedger) -> None:
    """Finalized spend from one run counts against the next run's check."""
    service = _service(ledger, limit=0.05)
    first = GovernedRunRequest(
        agent=_agent(PromptRoutedGenerator(ANSWERS)),
        input="Verify all integrations",
        agent_id="tester",
        phases=DIAMOND,
        execution_mode="parallel",
        estimated_cost_usd=0.0,
    )
    first_result = await run_governed(first, service, PRICING)
    assert first_result.cost_usd == pytest.approx(0.08)

    second_generator = PromptRoutedGenerator(ANSWERS)
    second = GovernedRunRequest(
        agent=_agent(second_generator),
        input="Verify again",
        agent_id="tester",
        phases=DIAMOND,
        execution_mode="parallel",
    )
    second_result = await run_governed(second, service, PRICING)

    assert second_result.allowed is False
    assert second_result.output is None
    assert second_generator.inputs == {}
    assert "Agent monthly budget exceeded" in second_result.budget.summary()
    assert len(ledger.alerts.list_alerts()) >= 1


@pytest.mark.asyncio
async def test_context_budget_abort(ledger: SqliteLedger) -> None:
    """Large tool output exhausts the context budget and the run aborts cleanly."""
    generator = ScriptedGenerator(default=tool_step("fetch", result="x" * 2000))
    request = GovernedRunRequest(
        agent=_agent(generator),
        input="Fetch everything",
        agent_id="tester",
        max_steps=10,
        context=ContextConfig(max_context_tokens=200, window_size=5),
    )

    result = await run_governed(request, _service(ledger), PRICING)

    output = result.output
    assert isinstance(output, ManagedGenerateResult)
    assert output.abort_reason is not None
    assert re.fullmatch(
        r"Context token estimate \(\d+\) exceeded budget \(200\) at step \d+",
        output.abort_reason,
    )
    assert 2 <= output.total_steps < 10
    assert len(generator.calls) == output.total_steps - 1

    event = await ledger.events.get(result.reservation_id or "")
    assert event is not None
    assert event.status is CostEventStatus.FINALIZED
    assert event.effective_cost_usd == pytest.approx(result.cost_usd)
