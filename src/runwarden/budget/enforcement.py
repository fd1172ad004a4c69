"""Budget hierarchy enforcement and the cost reservation protocol.

``check`` evaluates subscription credits, organization, user and agent
budgets against month-to-date spend. Violations (hard limits) block;
warnings (alert thresholds) never do.

Reservations close the check-then-act race between concurrent runs: a
``RESERVED`` cost event is written before generation starts, so every
later check counts it until it is finalized with the real cost or
cancelled. Spend sums ignore only ``CANCELLED`` events.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from runwarden.budget.models import (
    AlertType,
    BudgetAlert,
    BudgetCheckContext,
    BudgetCheckResult,
    BudgetLevel,
    BudgetPolicy,
    BudgetViolation,
    CostEvent,
    CostEventStatus,
    CostScope,
)
from runwarden.budget.store import InMemoryAlertSink, ReservationNotFoundError, new_event_id
from runwarden.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from runwarden.budget.store import AlertSink, BudgetPolicySource, CostEventStore

log = get_logger(__name__)

DEFAULT_RESERVATION_MAX_AGE = timedelta(minutes=30)
ALERT_DEDUP_WINDOW = timedelta(hours=1)
SUBSCRIPTION_WARNING_PCT = 80.0


def utc_now() -> datetime:
    return datetime.now(UTC)


def start_of_month(now: datetime) -> datetime:
    """First instant of ``now``'s calendar month in UTC."""
    now = now.astimezone(UTC)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _money(value: float) -> str:
    return f"${value:.2f}"


class BudgetEnforcementService:
    """Evaluates the budget hierarchy and manages cost reservations.

    Args:
        store: Cost event persistence.
        policies: Subscription and policy lookup.
        alerts: Sink for deduplicated alerts (in-memory if omitted).
        clock: Returns the current aware datetime; injectable for tests.
    """

    def __init__(
        self,
        store: CostEventStore,
        policies: BudgetPolicySource,
        alerts: AlertSink | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.policies = policies
        self.alerts = alerts if alerts is not None else InMemoryAlertSink()
        self._clock = clock
        self.alert_attempts = 0
        self.alert_failures = 0

    async def check(self, ctx: BudgetCheckContext) -> BudgetCheckResult:
        """Run the full hierarchy check before (or during) an agent run."""
        violations: list[BudgetViolation] = []
        warnings: list[BudgetViolation] = []
        month_start = start_of_month(self._clock())

        if ctx.organization_id:
            await self._check_subscription(ctx.organization_id, violations, warnings)

            policy = await self.policies.org_policy(ctx.organization_id)
            await self._check_policy(
                BudgetLevel.ORG,
                "Organization",
                policy,
                CostScope(tenant_id=ctx.organization_id),
                month_start,
                violations,
                warnings,
            )

        if ctx.user_id and ctx.organization_id:
            policy = await self.policies.user_policy(ctx.user_id, ctx.organization_id)
            await self._check_policy(
                BudgetLevel.USER,
                "User",
                policy,
                CostScope(user_id=ctx.user_id, tenant_id=ctx.organization_id),
                month_start,
                violations,
                warnings,
            )

        policy = await self.policies.agent_policy(ctx.agent_id)
        await self._check_policy(
            BudgetLevel.AGENT,
            "Agent",
            policy,
            CostScope(agent_id=ctx.agent_id),
            month_start,
            violations,
            warnings,
        )

        for w in warnings:
            await self._maybe_create_alert(ctx, w, AlertType.THRESHOLD_WARNING)
        for v in violations:
            await self._maybe_create_alert(ctx, v, AlertType.LIMIT_REACHED)

        if violations:
            log.warning(
                "budget_violation",
                agent_id=ctx.agent_id,
                levels=[v.level.value for v in violations],
            )
        return BudgetCheckResult(allowed=not violations, violations=violations, warnings=warnings)

    async def _check_subscription(
        self,
        organization_id: str,
        violations: list[BudgetViolation],
        warnings: list[BudgetViolation],
    ) -> None:
        sub = await self.policies.subscription(organization_id)
        if sub is None or not sub.is_active:
            return

        total = sub.included_credits_usd
        used = sub.used_credits_usd
        pct = (used / total) * 100 if total > 0 else 0.0

        if total > 0 and used >= total:
            if not sub.overage_enabled:
                violations.append(
                    BudgetViolation(
                        level=BudgetLevel.SUBSCRIPTION,
                        current_spend_usd=used,
                        limit_usd=total,
                        percent_used=pct,
                        message=(
                            f"Included credits exhausted ({_money(used)} / {_money(total)}). "
                            f"Overage is not enabled on the {sub.plan_name} plan."
                        ),
                    )
                )
            elif (
                sub.overage_spend_limit_usd is not None
                and sub.overage_accrued_usd >= sub.overage_spend_limit_usd
            ):
                violations.append(
                    BudgetViolation(
                        level=BudgetLevel.SUBSCRIPTION,
                        current_spend_usd=sub.overage_accrued_usd,
                        limit_usd=sub.overage_spend_limit_usd,
                        percent_used=100.0,
                        message=(
                            f"Overage spend limit reached ({_money(sub.overage_accrued_usd)} / "
                            f"{_money(sub.overage_spend_limit_usd)})."
                        ),
                    )
                )
        elif total > 0 and pct >= SUBSCRIPTION_WARNING_PCT:
            warnings.append(
                BudgetViolation(
                    level=BudgetLevel.SUBSCRIPTION,
                    current_spend_usd=used,
                    limit_usd=total,
                    percent_used=pct,
                    message=(
                        f"{round(pct)}% of included credits used "
                        f"({_money(used)} / {_money(total)})."
                    ),
                )
            )

    async def _check_policy(
        self,
        level: BudgetLevel,
        label: str,
        policy: BudgetPolicy | None,
        scope: CostScope,
        since: datetime,
        violations: list[BudgetViolation],
        warnings: list[BudgetViolation],
    ) -> None:
        """Apply the shared limit/alert rule for org, user and agent levels."""
        if policy is None or not policy.enabled or policy.monthly_limit_usd is None:
            return

        limit = policy.monthly_limit_usd
        spend = await self.store.sum_since(scope, since)
        pct = (spend / limit) * 100

        if spend >= limit and policy.hard_limit:
            violations.append(
                BudgetViolation(
                    level=level,
                    current_spend_usd=spend,
                    limit_usd=limit,
                    percent_used=pct,
                    message=(
                        f"{label} monthly budget exceeded ({_money(spend)} / {_money(limit)})."
                    ),
                )
            )
        elif policy.alert_at_pct and pct >= policy.alert_at_pct:
            warnings.append(
                BudgetViolation(
                    level=level,
                    current_spend_usd=spend,
                    limit_usd=limit,
                    percent_used=pct,
                    message=(
                        f"{label} budget at {round(pct)}% ({_money(spend)} / {_money(limit)})."
                    ),
                )
            )

    async def _maybe_create_alert(
        self,
        ctx: BudgetCheckContext,
        violation: BudgetViolation,
        alert_type: AlertType,
    ) -> None:
        """Emit an alert unless an identical one was emitted within the hour.

        Alert delivery is a side channel: failures are logged and counted
        but never change the check outcome.
        """
        user_id = ctx.user_id if violation.level is BudgetLevel.USER else None
        agent_id = ctx.agent_id if violation.level is BudgetLevel.AGENT else None
        now = self._clock()
        self.alert_attempts += 1
        try:
            if await self.alerts.recent(
                level=violation.level,
                type=alert_type,
                organization_id=ctx.organization_id,
                user_id=user_id,
                agent_id=agent_id,
                since=now - ALERT_DEDUP_WINDOW,
            ):
                return
            await self.alerts.emit(
                BudgetAlert(
                    level=violation.level,
                    type=alert_type,
                    organization_id=ctx.organization_id,
                    user_id=user_id,
                    agent_id=agent_id,
                    percent_used=violation.percent_used,
                    current_spend_usd=violation.current_spend_usd,
                    limit_usd=violation.limit_usd,
                    message=violation.message,
                    created_at=now,
                )
            )
            log.info("budget_alert_emitted", level=violation.level.value, type=alert_type.value)
        except Exception as e:
            self.alert_failures += 1
            log.warning(
                "budget_alert_failed",
                level=violation.level.value,
                type=alert_type.value,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Reservation protocol
    # ------------------------------------------------------------------

    async def create_reservation(
        self,
        run_id: str,
        agent_id: str,
        estimated_cost_usd: float,
        *,
        tenant_id: str | None = None,
        user_id: str | None = None,
    ) -> str:
        """Hold an estimated cost before work begins; return the reservation ID.

        Raises:
            ValueError: If the estimate is negative.
        """
        if estimated_cost_usd < 0:
            raise ValueError("estimated_cost_usd must be non-negative")
        event = await self.store.append(
            CostEvent(
                id=new_event_id(),
                run_id=run_id,
                agent_id=agent_id,
                tenant_id=tenant_id,
                user_id=user_id,
                provider="reservation",
                model_name="estimated",
                cost_usd=estimated_cost_usd,
                billed_cost_usd=estimated_cost_usd,
                status=CostEventStatus.RESERVED,
                created_at=self._clock(),
            )
        )
        log.debug(
            "reservation_created",
            reservation_id=event.id,
            run_id=run_id,
            agent_id=agent_id,
            estimated_cost_usd=estimated_cost_usd,
        )
        return event.id

    async def finalize_reservation(self, reservation_id: str, actual_cost_usd: float) -> None:
        """Replace the estimate with the actual cost.

        Raises:
            ValueError: If the cost is negative.
            ReservationNotFoundError: If the reservation does not exist.
        """
        if actual_cost_usd < 0:
            raise ValueError("actual_cost_usd must be non-negative")
        await self.store.update(
            reservation_id,
            status=CostEventStatus.FINALIZED,
            cost_usd=actual_cost_usd,
            billed_cost_usd=actual_cost_usd,
            model_name="actual",
        )
        log.debug("reservation_finalized", reservation_id=reservation_id, cost_usd=actual_cost_usd)

    async def cancel_reservation(self, reservation_id: str) -> None:
        """Release a reservation after a failed or aborted run.

        Raises:
            ReservationNotFoundError: If the reservation does not exist.
        """
        await self.store.update(
            reservation_id,
            status=CostEventStatus.CANCELLED,
            cost_usd=0.0,
            billed_cost_usd=0.0,
        )
        log.debug("reservation_cancelled", reservation_id=reservation_id)

    async def cleanup_stale_reservations(
        self, max_age: timedelta = DEFAULT_RESERVATION_MAX_AGE
    ) -> int:
        """Cancel reservations older than ``max_age`` that were never finalized.

        Intended to be invoked periodically by an external scheduler.

        Returns:
            Number of reservations cancelled.
        """
        count = await self.store.cancel_reserved_before(self._clock() - max_age)
        if count:
            log.info("stale_reservations_cancelled", count=count, max_age_s=max_age.total_seconds())
        return count


async def create_budget_reservation(
    service: BudgetEnforcementService,
    run_id: str,
    agent_id: str,
    estimated_cost_usd: float,
    *,
    tenant_id: str | None = None,
    user_id: str | None = None,
) -> str:
    """Module-level form of :meth:`BudgetEnforcementService.create_reservation`."""
    return await service.create_reservation(
        run_id, agent_id, estimated_cost_usd, tenant_id=tenant_id, user_id=user_id
    )


async def finalize_budget_reservation(
    service: BudgetEnforcementService, reservation_id: str, actual_cost_usd: float
) -> None:
    await service.finalize_reservation(reservation_id, actual_cost_usd)


async def cancel_budget_reservation(service: BudgetEnforcementService, reservation_id: str) -> None:
    await service.cancel_reservation(reservation_id)


async def cleanup_stale_reservations(
    service: BudgetEnforcementService,
    max_age: timedelta = DEFAULT_RESERVATION_MAX_AGE,
) -> int:
    return await service.cleanup_stale_reservations(max_age)


__all__ = [
    "ALERT_DEDUP_WINDOW",
    "DEFAULT_RESERVATION_MAX_AGE",
    "BudgetEnforcementService",
    "ReservationNotFoundError",
    "cancel_budget_reservation",
    "cleanup_stale_reservations",
    "create_budget_reservation",
    "finalize_budget_reservation",
    "start_of_month",
]
