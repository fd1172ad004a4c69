"""Tests for the SQLite cost event ledger and alert sink.

Most tests use :memory: databases; persistence tests use a file under tmp_path
so a second connection can observe the first one's writes.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from runwarden.budget import (
    AlertSink,
    AlertType,
    BudgetAlert,
    BudgetCheckContext,
    BudgetEnforcementService,
    BudgetLevel,
    BudgetPolicy,
    CostEvent,
    CostEventStatus,
    CostEventStore,
    CostScope,
    ReservationNotFoundError,
    SqliteLedger,
    StaticPolicySource,
)

if TYPE_CHECKING:
    from pathlib import Path

T0 = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)
MONTH = datetime(2026, 3, 1, tzinfo=UTC)


def _event(eid: str, cost: float, **kwargs: object) -> CostEvent:
    fields: dict[str, object] = {
        "run_id": "run-1",
        "agent_id": "researcher",
        "created_at": T0,
    }
    fields.update(kwargs)
    return CostEvent(id=eid, cost_usd=cost, **fields)  # type: ignore[arg-type]


def _alert(created_at: datetime, **kwargs: object) -> BudgetAlert:
    fields: dict[str, object] = {
        "level": BudgetLevel.AGENT,
        "type": AlertType.LIMIT_REACHED,
        "organization_id": None,
        "user_id": None,
        "agent_id": "researcher",
        "percent_used": 110.0,
        "current_spend_usd": 11.0,
        "limit_usd": 10.0,
        "message": "Agent monthly budget exceeded ($11.00 / $10.00).",
    }
    fields.update(kwargs)
    return BudgetAlert(created_at=created_at, **fields)  # type: ignore[arg-type]


@pytest.fixture
def ledger():
    ledger = SqliteLedger(":memory:")
    yield ledger
    ledger.close()


class TestProtocol:
    """The SQLite classes satisfy the storage protocols."""

    def test_is_runtime_checkable(self, ledger: SqliteLedger) -> None:
        assert isinstance(ledger.events, CostEventStore)
        assert isinstance(ledger.alerts, AlertSink)


class TestCostEvents:
    """Cost event persistence and queries."""

    @pytest.mark.asyncio
    async def test_append_and_get(self, ledger: SqliteLedger) -> None:
        event = _event("e1", 0.25, tenant_id="acme", user_id="alice", provider="openai")
        await ledger.events.append(event)

        loaded = await ledger.events.get("e1")

        assert loaded == event

    @pytest.mark.asyncio
    async def test_get_missing(self, ledger: SqliteLedger) -> None:
        assert await ledger.events.get("missing") is None

    @pytest.mark.asyncio
    async def test_sum_by_scope(self, ledger: SqliteLedger) -> None:
        await ledger.events.append(_event("e1", 1.0, tenant_id="acme", user_id="alice"))
        await ledger.events.append(_event("e2", 2.0, tenant_id="acme", user_id="bob"))
        await ledger.events.append(_event("e3", 4.0, agent_id="writer", tenant_id="other"))

        assert await ledger.events.sum_since(CostScope(), MONTH) == 7.0
        assert await ledger.events.sum_since(CostScope(tenant_id="acme"), MONTH) == 3.0
        assert (
            await ledger.events.sum_since(CostScope(user_id="alice", tenant_id="acme"), MONTH)
            == 1.0
        )
        assert await ledger.events.sum_since(CostScope(agent_id="writer"), MONTH) == 4.0

    @pytest.mark.asyncio
    async def test_sum_prefers_billed_cost(self, ledger: SqliteLedger) -> None:
        await ledger.events.append(_event("e1", 1.0, billed_cost_usd=1.5))
        assert await ledger.events.sum_since(CostScope(), MONTH) == 1.5

    @pytest.mark.asyncio
    async def test_sum_excludes_cancelled_and_older(self, ledger: SqliteLedger) -> None:
        await ledger.events.append(_event("e1", 1.0, status=CostEventStatus.CANCELLED))
        await ledger.events.append(_event("e2", 2.0, created_at=MONTH - timedelta(seconds=1)))
        await ledger.events.append(_event("e3", 3.0, status=CostEventStatus.RESERVED))

        assert await ledger.events.sum_since(CostScope(), MONTH) == 3.0

    @pytest.mark.asyncio
    async def test_empty_sum_is_zero(self, ledger: SqliteLedger) -> None:
        assert await ledger.events.sum_since(CostScope(agent_id="nobody"), MONTH) == 0.0

    @pytest.mark.asyncio
    async def test_update_fields(self, ledger: SqliteLedger) -> None:
        await ledger.events.append(_event("e1", 1.0, status=CostEventStatus.RESERVED))

        updated = await ledger.events.update(
            "e1", status=CostEventStatus.FINALIZED, cost_usd=0.4, billed_cost_usd=0.4
        )

        assert updated.status is CostEventStatus.FINALIZED
        assert updated.effective_cost_usd == 0.4

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, ledger: SqliteLedger) -> None:
        with pytest.raises(ReservationNotFoundError):
            await ledger.events.update("missing", cost_usd=1.0)

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_columns(self, ledger: SqliteLedger) -> None:
        await ledger.events.append(_event("e1", 1.0))
        with pytest.raises(ValueError, match="Cannot update"):
            await ledger.events.update("e1", id="e2")

    @pytest.mark.asyncio
    async def test_cancel_reserved_before(self, ledger: SqliteLedger) -> None:
        await ledger.events.append(_event("old", 1.0, status=CostEventStatus.RESERVED))
        await ledger.events.append(
            _event("new", 1.0, status=CostEventStatus.RESERVED, created_at=T0 + timedelta(hours=1))
        )
        await ledger.events.append(_event("done", 1.0, status=CostEventStatus.FINALIZED))

        count = await ledger.events.cancel_reserved_before(T0 + timedelta(minutes=30))

        assert count == 1
        old = await ledger.events.get("old")
        assert old is not None
        assert old.status is CostEventStatus.CANCELLED
        assert old.effective_cost_usd == 0.0
        done = await ledger.events.get("done")
        assert done is not None
        assert done.status is CostEventStatus.FINALIZED


class TestAlerts:
    """Alert sink storage and dedup lookups."""

    @pytest.mark.asyncio
    async def test_emit_and_list(self, ledger: SqliteLedger) -> None:
        alert = _alert(T0, organization_id="acme")
        await ledger.alerts.emit(alert)

        assert ledger.alerts.list_alerts() == [alert]

    @pytest.mark.asyncio
    async def test_recent_matches_null_identities(self, ledger: SqliteLedger) -> None:
        await ledger.alerts.emit(_alert(T0))

        found = await ledger.alerts.recent(
            level=BudgetLevel.AGENT,
            type=AlertType.LIMIT_REACHED,
            organization_id=None,
            user_id=None,
            agent_id="researcher",
            since=T0 - timedelta(hours=1),
        )
        assert found is True

    @pytest.mark.asyncio
    async def test_recent_respects_window_and_identity(self, ledger: SqliteLedger) -> None:
        await ledger.alerts.emit(_alert(T0))

        later = await ledger.alerts.recent(
            level=BudgetLevel.AGENT,
            type=AlertType.LIMIT_REACHED,
            organization_id=None,
            user_id=None,
            agent_id="researcher",
            since=T0 + timedelta(seconds=1),
        )
        other_agent = await ledger.alerts.recent(
            level=BudgetLevel.AGENT,
            type=AlertType.LIMIT_REACHED,
            organization_id=None,
            user_id=None,
            agent_id="writer",
            since=T0 - timedelta(hours=1),
        )
        other_type = await ledger.alerts.recent(
            level=BudgetLevel.AGENT,
            type=AlertType.THRESHOLD_WARNING,
            organization_id=None,
            user_id=None,
            agent_id="researcher",
            since=T0 - timedelta(hours=1),
        )
        assert (later, other_agent, other_type) == (False, False, False)


class TestSharedLedger:
    """Reservations are visible across connections to the same file."""

    @pytest.mark.asyncio
    async def test_reservation_visible_to_second_process(self, tmp_path: Path) -> None:
        db = tmp_path / "ledger.db"
        policies = StaticPolicySource(
            agent_policies={"researcher": BudgetPolicy(monthly_limit_usd=1.0, hard_limit=True)}
        )
        first = SqliteLedger(db)
        second = SqliteLedger(db)
        try:
            service_a = BudgetEnforcementService(first.events, policies, first.alerts)
            service_b = BudgetEnforcementService(second.events, policies, second.alerts)
            ctx = BudgetCheckContext(agent_id="researcher")

            assert (await service_a.check(ctx)).allowed is True
            rid = await service_a.create_reservation("run-a", "researcher", 1.0)

            blocked = await service_b.check(ctx)
            assert blocked.allowed is False

            await service_a.cancel_reservation(rid)
            assert (await service_b.check(ctx)).allowed is True
            assert len(second.alerts.list_alerts()) == 1
        finally:
            first.close()
            second.close()
