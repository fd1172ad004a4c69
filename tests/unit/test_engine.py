"""Tests for the governed run facade."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from runwarden.budget import BudgetPolicy, CostEventStatus, TokenPricing
from runwarden.engine import GovernedRunRequest, run_governed
from runwarden.phases import (
    CircularDependencyError,
    DuplicatePhaseError,
    Phase,
    PhaseRunResult,
)
from tests.fixtures.fakes import ScriptedGenerator, text_step, tool_step

if TYPE_CHECKING:
    from runwarden.budget import (
        BudgetEnforcementService,
        InMemoryCostEventStore,
        StaticPolicySource,
    )
    from runwarden.context import AgentSpec

PRICING = TokenPricing(prompt_per_million_usd=1_000.0, completion_per_million_usd=2_000.0)


class TestRunGoverned:
    """Tests for run_governed."""

    @pytest.mark.asyncio
    async def test_blocked_run_never_starts(
        self,
        agent: AgentSpec,
        generator: ScriptedGenerator,
        budget_service: BudgetEnforcementService,
        policies: StaticPolicySource,
        event_store: InMemoryCostEventStore,
    ) -> None:
        policies.agent_policies["researcher"] = BudgetPolicy(monthly_limit_usd=1, hard_limit=True)
        await budget_service.create_reservation("earlier", "researcher", 1.0)

        result = await run_governed(
            GovernedRunRequest(agent=agent, input="Go", agent_id="researcher"), budget_service
        )

        assert result.allowed is False
        assert result.output is None
        assert result.text == ""
        assert result.reservation_id is None
        assert "Agent monthly budget exceeded" in result.budget.summary()
        assert generator.calls == []
        assert len(event_store.events) == 1

    @pytest.mark.asyncio
    async def test_single_run_finalizes_actual_cost(
        self,
        agent: AgentSpec,
        generator: ScriptedGenerator,
        budget_service: BudgetEnforcementService,
        event_store: InMemoryCostEventStore,
    ) -> None:
        generator.script = [tool_step("search"), text_step("answer", 30, 20)]
        request = GovernedRunRequest(
            agent=agent, input="Go", agent_id="researcher", run_id="run-42", max_steps=4
        )

        result = await run_governed(request, budget_service, PRICING)

        assert result.allowed is True
        assert result.run_id == "run-42"
        assert result.text == "answer"
        assert (result.prompt_tokens, result.completion_tokens) == (40, 25)
        assert result.cost_usd == pytest.approx(0.09)
        (event,) = event_store.events
        assert event.id == result.reservation_id
        assert event.run_id == "run-42"
        assert event.status is CostEventStatus.FINALIZED
        assert event.effective_cost_usd == pytest.approx(0.09)

    @pytest.mark.asyncio
    async def test_phased_run(
        self,
        agent: AgentSpec,
        generator: ScriptedGenerator,
        budget_service: BudgetEnforcementService,
    ) -> None:
        generator.script = [text_step("one"), text_step("two")]
        phases = [
            Phase(id="a", name="A", instructions="first", max_steps=2),
            Phase(id="b", name="B", instructions="second", max_steps=2, depends_on=("a",)),
        ]
        request = GovernedRunRequest(
            agent=agent,
            input="Go",
            agent_id="researcher",
            phases=phases,
            execution_mode="parallel",
        )

        result = await run_governed(request, budget_service)

        assert isinstance(result.output, PhaseRunResult)
        assert result.text == "two"
        assert result.cost_usd == 0.0

    @pytest.mark.asyncio
    async def test_exception_cancels_reservation(
        self,
        agent: AgentSpec,
        budget_service: BudgetEnforcementService,
        event_store: InMemoryCostEventStore,
    ) -> None:
        def explode(step: int, summary: object) -> None:
            raise RuntimeError("observer crashed")

        agent.generator = ScriptedGenerator(default=text_step("x"))
        request = GovernedRunRequest(
            agent=agent,
            input="Go",
            agent_id="researcher",
            managed_generate_overrides={"on_step": explode},
        )

        with pytest.raises(RuntimeError, match="observer crashed"):
            await run_governed(request, budget_service)

        (event,) = event_store.events
        assert event.status is CostEventStatus.CANCELLED
        assert event.effective_cost_usd == 0.0

    @pytest.mark.asyncio
    async def test_cancellation_cancels_reservation(
        self,
        agent: AgentSpec,
        budget_service: BudgetEnforcementService,
        event_store: InMemoryCostEventStore,
    ) -> None:
        agent.generator = ScriptedGenerator(default=text_step("late"), delay=10.0)
        request = GovernedRunRequest(agent=agent, input="Go", agent_id="researcher")

        task = asyncio.create_task(run_governed(request, budget_service))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        (event,) = event_store.events
        assert event.status is CostEventStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_own_reservation_over_limit_is_cancelled(
        self,
        agent: AgentSpec,
        generator: ScriptedGenerator,
        budget_service: BudgetEnforcementService,
        policies: StaticPolicySource,
        event_store: InMemoryCostEventStore,
    ) -> None:
        policies.agent_policies["researcher"] = BudgetPolicy(monthly_limit_usd=1, hard_limit=True)
        await budget_service.create_reservation("earlier", "researcher", 0.5)
        generator.default = tool_step("work")
        request = GovernedRunRequest(
            agent=agent, input="Go", agent_id="researcher", estimated_cost_usd=0.6
        )

        result = await run_governed(request, budget_service)

        assert result.allowed is False
        assert result.output is None
        assert "Agent monthly budget exceeded" in result.budget.summary()
        assert generator.calls == []
        own = await event_store.get(result.reservation_id or "")
        assert own is not None
        assert own.status is CostEventStatus.CANCELLED
        assert own.effective_cost_usd == 0.0

    @pytest.mark.asyncio
    async def test_reservation_within_limit_runs(
        self,
        agent: AgentSpec,
        generator: ScriptedGenerator,
        budget_service: BudgetEnforcementService,
        policies: StaticPolicySource,
    ) -> None:
        policies.agent_policies["researcher"] = BudgetPolicy(monthly_limit_usd=1, hard_limit=True)
        generator.script = [tool_step("work"), text_step("done")]
        request = GovernedRunRequest(
            agent=agent, input="Go", agent_id="researcher", estimated_cost_usd=0.5
        )

        result = await run_governed(request, budget_service)

        assert result.allowed is True
        assert result.text == "done"
        assert len(generator.calls) == 2

    @pytest.mark.asyncio
    async def test_step_gate_stops_run_when_ledger_fills(
        self,
        agent: AgentSpec,
        generator: ScriptedGenerator,
        budget_service: BudgetEnforcementService,
        policies: StaticPolicySource,
    ) -> None:
        policies.agent_policies["researcher"] = BudgetPolicy(monthly_limit_usd=1, hard_limit=True)
        generator.default = tool_step("work")

        async def other_run_spends(step: int, summary: object) -> None:
            if step == 1:
                await budget_service.create_reservation("other", "researcher", 0.6)

        request = GovernedRunRequest(
            agent=agent,
            input="Go",
            agent_id="researcher",
            estimated_cost_usd=0.5,
            max_steps=4,
            managed_generate_overrides={"on_step": other_run_spends},
        )

        result = await run_governed(request, budget_service)

        assert result.allowed is True
        assert result.output is not None
        assert result.output.abort_reason is not None
        assert result.output.abort_reason.startswith("Budget check failed at step 2:")
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_gate_disabled(
        self,
        agent: AgentSpec,
        generator: ScriptedGenerator,
        budget_service: BudgetEnforcementService,
        policies: StaticPolicySource,
    ) -> None:
        policies.agent_policies["researcher"] = BudgetPolicy(monthly_limit_usd=1, hard_limit=True)
        generator.script = [tool_step("work"), text_step("done")]

        async def other_run_spends(step: int, summary: object) -> None:
            if step == 1:
                await budget_service.create_reservation("other", "researcher", 0.6)

        request = GovernedRunRequest(
            agent=agent,
            input="Go",
            agent_id="researcher",
            estimated_cost_usd=0.5,
            gate_every_step=False,
            managed_generate_overrides={"on_step": other_run_spends},
        )

        result = await run_governed(request, budget_service)

        assert result.text == "done"


class TestPhaseValidation:
    """Invalid phase lists are rejected before anything is reserved."""

    @pytest.mark.asyncio
    async def test_cycle_rejected_before_reservation(
        self,
        agent: AgentSpec,
        generator: ScriptedGenerator,
        budget_service: BudgetEnforcementService,
        event_store: InMemoryCostEventStore,
    ) -> None:
        phases = [
            Phase(id="a", name="A", instructions="", max_steps=1, depends_on=("b",)),
            Phase(id="b", name="B", instructions="", max_steps=1, depends_on=("a",)),
        ]
        request = GovernedRunRequest(
            agent=agent,
            input="Go",
            agent_id="researcher",
            phases=phases,
            execution_mode="parallel",
        )

        with pytest.raises(CircularDependencyError):
            await run_governed(request, budget_service)

        assert event_store.events == []
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_sequential_duplicates_rejected_before_reservation(
        self,
        agent: AgentSpec,
        budget_service: BudgetEnforcementService,
        event_store: InMemoryCostEventStore,
    ) -> None:
        phases = [
            Phase(id="a", name="A", instructions="", max_steps=1),
            Phase(id="a", name="Again", instructions="", max_steps=1),
        ]
        request = GovernedRunRequest(agent=agent, input="Go", agent_id="researcher", phases=phases)

        with pytest.raises(DuplicatePhaseError):
            await run_governed(request, budget_service)

        assert event_store.events == []
