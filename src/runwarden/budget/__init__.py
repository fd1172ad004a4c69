"""Spend ledger: budget hierarchy checks, reservations and alerts."""

from runwarden.budget.enforcement import (
    BudgetEnforcementService,
    cancel_budget_reservation,
    cleanup_stale_reservations,
    create_budget_reservation,
    finalize_budget_reservation,
    start_of_month,
)
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
    SubscriptionState,
    TokenPricing,
)
from runwarden.budget.sqlite_store import SqliteAlertSink, SqliteCostEventStore, SqliteLedger
from runwarden.budget.store import (
    AlertSink,
    BudgetPolicySource,
    CostEventStore,
    InMemoryAlertSink,
    InMemoryCostEventStore,
    ReservationNotFoundError,
    StaticPolicySource,
)

__all__ = [
    "AlertSink",
    "AlertType",
    "BudgetAlert",
    "BudgetCheckContext",
    "BudgetCheckResult",
    "BudgetEnforcementService",
    "BudgetLevel",
    "BudgetPolicy",
    "BudgetPolicySource",
    "BudgetViolation",
    "CostEvent",
    "CostEventStatus",
    "CostEventStore",
    "CostScope",
    "InMemoryAlertSink",
    "InMemoryCostEventStore",
    "ReservationNotFoundError",
    "SqliteAlertSink",
    "SqliteCostEventStore",
    "SqliteLedger",
    "StaticPolicySource",
    "SubscriptionState",
    "TokenPricing",
    "cancel_budget_reservation",
    "cleanup_stale_reservations",
    "create_budget_reservation",
    "finalize_budget_reservation",
    "start_of_month",
]
