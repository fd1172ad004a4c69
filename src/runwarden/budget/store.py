"""Ledger storage protocols and in-memory implementations.

The enforcement service depends only on the query semantics defined here
(sum by scope excluding cancelled events, status updates), not on a storage
engine. ``SqliteCostEventStore`` provides the durable implementation.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from runwarden.budget.models import (
    AlertType,
    BudgetAlert,
    BudgetLevel,
    BudgetPolicy,
    CostEvent,
    CostEventStatus,
    CostScope,
    SubscriptionState,
)

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime


class ReservationNotFoundError(Exception):
    """Raised when a reservation (cost event) ID does not exist."""

    def __init__(self, reservation_id: str) -> None:
        self.reservation_id = reservation_id
        super().__init__(f"Reservation '{reservation_id}' not found")


def new_event_id() -> str:
    return str(uuid.uuid4())


@runtime_checkable
class CostEventStore(Protocol):
    """Persistence for cost events.

    Every operation must be atomic with respect to concurrent callers so a
    reservation is visible to ``sum_since`` as soon as ``append`` returns.
    """

    async def append(self, event: CostEvent) -> CostEvent:
        """Persist a new event and return it."""
        ...

    async def get(self, event_id: str) -> CostEvent | None:
        """Fetch one event, or None."""
        ...

    async def update(self, event_id: str, **fields: Any) -> CostEvent:
        """Update fields of an event.

        Raises:
            ReservationNotFoundError: If the event does not exist.
        """
        ...

    async def sum_since(self, scope: CostScope, since: datetime) -> float:
        """Sum effective cost of non-cancelled events created at or after ``since``."""
        ...

    async def cancel_reserved_before(self, cutoff: datetime) -> int:
        """Cancel RESERVED events created before ``cutoff``; return the count."""
        ...


@runtime_checkable
class AlertSink(Protocol):
    """Receives deduplicated budget alerts."""

    async def recent(
        self,
        *,
        level: BudgetLevel,
        type: AlertType,
        organization_id: str | None,
        user_id: str | None,
        agent_id: str | None,
        since: datetime,
    ) -> bool:
        """Return True if a matching alert was emitted at or after ``since``."""
        ...

    async def emit(self, alert: BudgetAlert) -> None:
        """Record an alert."""
        ...


@runtime_checkable
class BudgetPolicySource(Protocol):
    """Lookup of subscription state and budget policies per hierarchy level."""

    async def subscription(self, organization_id: str) -> SubscriptionState | None: ...

    async def org_policy(self, organization_id: str) -> BudgetPolicy | None: ...

    async def user_policy(self, user_id: str, organization_id: str) -> BudgetPolicy | None: ...

    async def agent_policy(self, agent_id: str) -> BudgetPolicy | None: ...


class InMemoryCostEventStore:
    """Process-local cost event store guarded by an asyncio lock."""

    def __init__(self, events: list[CostEvent] | None = None) -> None:
        self._events: dict[str, CostEvent] = {e.id: e for e in events or []}
        self._lock = asyncio.Lock()

    @property
    def events(self) -> list[CostEvent]:
        return list(self._events.values())

    async def append(self, event: CostEvent) -> CostEvent:
        async with self._lock:
            self._events[event.id] = event
        return event

    async def get(self, event_id: str) -> CostEvent | None:
        return self._events.get(event_id)

    async def update(self, event_id: str, **fields: Any) -> CostEvent:
        async with self._lock:
            event = self._events.get(event_id)
            if event is None:
                raise ReservationNotFoundError(event_id)
            updated = replace(event, **fields)
            self._events[event_id] = updated
        return updated

    async def sum_since(self, scope: CostScope, since: datetime) -> float:
        async with self._lock:
            return sum(
                e.effective_cost_usd
                for e in self._events.values()
                if e.status is not CostEventStatus.CANCELLED
                and e.created_at >= since
                and e.matches(scope)
            )

    async def cancel_reserved_before(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [
                e
                for e in self._events.values()
                if e.status is CostEventStatus.RESERVED and e.created_at < cutoff
            ]
            for e in stale:
                self._events[e.id] = replace(
                    e, status=CostEventStatus.CANCELLED, cost_usd=0.0, billed_cost_usd=0.0
                )
        return len(stale)


class InMemoryAlertSink:
    """Keeps emitted alerts in a list."""

    def __init__(self) -> None:
        self.alerts: list[BudgetAlert] = []

    async def recent(
        self,
        *,
        level: BudgetLevel,
        type: AlertType,
        organization_id: str | None,
        user_id: str | None,
        agent_id: str | None,
        since: datetime,
    ) -> bool:
        return any(
            a.level is level
            and a.type is type
            and a.organization_id == organization_id
            and a.user_id == user_id
            and a.agent_id == agent_id
            and a.created_at >= since
            for a in self.alerts
        )

    async def emit(self, alert: BudgetAlert) -> None:
        self.alerts.append(alert)


class StaticPolicySource:
    """Policies and subscriptions held in memory, typically loaded from config.

    Attributes are keyed by organization ID, ``(user_id, organization_id)``
    and agent ID respectively.
    """

    def __init__(
        self,
        *,
        subscriptions: Mapping[str, SubscriptionState] | None = None,
        org_policies: Mapping[str, BudgetPolicy] | None = None,
        user_policies: Mapping[tuple[str, str], BudgetPolicy] | None = None,
        agent_policies: Mapping[str, BudgetPolicy] | None = None,
    ) -> None:
        self.subscriptions = dict(subscriptions or {})
        self.org_policies = dict(org_policies or {})
        self.user_policies = dict(user_policies or {})
        self.agent_policies = dict(agent_policies or {})

    async def subscription(self, organization_id: str) -> SubscriptionState | None:
        return self.subscriptions.get(organization_id)

    async def org_policy(self, organization_id: str) -> BudgetPolicy | None:
        return self.org_policies.get(organization_id)

    async def user_policy(self, user_id: str, organization_id: str) -> BudgetPolicy | None:
        return self.user_policies.get((user_id, organization_id))

    async def agent_policy(self, agent_id: str) -> BudgetPolicy | None:
        return self.agent_policies.get(agent_id)
