"""runwarden: bounded multi-step execution for long AI-agent tasks."""

from runwarden.budget import (
    BudgetCheckContext,
    BudgetCheckResult,
    BudgetEnforcementService,
    cancel_budget_reservation,
    cleanup_stale_reservations,
    create_budget_reservation,
    finalize_budget_reservation,
)
from runwarden.context import (
    AgentSpec,
    CompressionCache,
    ContextWindowManager,
    ManagedGenerateOptions,
    ManagedGenerateResult,
    managed_generate,
)
from runwarden.engine import GovernedRunRequest, GovernedRunResult, run_governed
from runwarden.phases import Phase, PhaseResult, PhaseRunnerOptions, PhaseRunResult, run_phases
from runwarden.routing import (
    ModelSpec,
    RoutingConfig,
    classify_complexity,
    resolve_routing_decision,
)

__version__ = "0.1.0"

__all__ = [
    "AgentSpec",
    "BudgetCheckContext",
    "BudgetCheckResult",
    "BudgetEnforcementService",
    "CompressionCache",
    "ContextWindowManager",
    "GovernedRunRequest",
    "GovernedRunResult",
    "ManagedGenerateOptions",
    "ManagedGenerateResult",
    "ModelSpec",
    "Phase",
    "PhaseResult",
    "PhaseRunResult",
    "PhaseRunnerOptions",
    "RoutingConfig",
    "__version__",
    "cancel_budget_reservation",
    "classify_complexity",
    "cleanup_stale_reservations",
    "create_budget_reservation",
    "finalize_budget_reservation",
    "managed_generate",
    "resolve_routing_decision",
    "run_governed",
]
