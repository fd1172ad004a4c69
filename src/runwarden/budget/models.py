"""Budget hierarchy records: policies, cost events, check results and alerts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BudgetLevel(str, Enum):
    """Levels of the budget hierarchy, in evaluation order."""

    SUBSCRIPTION = "subscription"
    ORG = "org"
    USER = "user"
    AGENT = "agent"


class CostEventStatus(str, Enum):
    """Lifecycle of a cost event.

    ``RECORDED`` events are plain usage records; ``RESERVED`` events are
    provisional holds that end as ``FINALIZED`` or ``CANCELLED``.
    """

    RECORDED = "RECORDED"
    RESERVED = "RESERVED"
    FINALIZED = "FINALIZED"
    CANCELLED = "CANCELLED"


class AlertType(str, Enum):
    THRESHOLD_WARNING = "threshold_warning"
    LIMIT_REACHED = "limit_reached"


class BudgetPolicy(BaseModel):
    """Monthly spend policy for one org, user or agent.

    Attributes:
        enabled: Disabled policies are ignored entirely.
        monthly_limit_usd: Monthly limit; None means no limit.
        hard_limit: Reaching the limit blocks execution (otherwise only warns).
        alert_at_pct: Percentage of the limit that triggers a warning.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = True
    monthly_limit_usd: float | None = Field(default=None, gt=0)
    hard_limit: bool = False
    alert_at_pct: float | None = Field(default=None, gt=0, le=100)


class SubscriptionState(BaseModel):
    """An organization's plan credits and overage position."""

    model_config = ConfigDict(extra="forbid")

    status: str = "active"
    plan_name: str = "default"
    included_credits_usd: float = Field(default=0.0, ge=0)
    used_credits_usd: float = Field(default=0.0, ge=0)
    overage_enabled: bool = False
    overage_spend_limit_usd: float | None = Field(default=None, ge=0)
    overage_accrued_usd: float = Field(default=0.0, ge=0)

    @model_validator(mode="after")
    def _check_overage(self) -> SubscriptionState:
        if self.overage_spend_limit_usd is not None and not self.overage_enabled:
            raise ValueError("overage_spend_limit_usd requires overage_enabled")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True)
class BudgetCheckContext:
    """Who is about to spend: the agent plus optional user and organization."""

    agent_id: str
    user_id: str | None = None
    organization_id: str | None = None


@dataclass(frozen=True)
class BudgetViolation:
    """A hard-limit breach or a soft-threshold crossing at one level."""

    level: BudgetLevel
    current_spend_usd: float
    limit_usd: float
    percent_used: float
    message: str


@dataclass
class BudgetCheckResult:
    """Outcome of a hierarchy check.

    ``allowed`` is False iff at least one violation exists; warnings never
    block execution.
    """

    allowed: bool
    violations: list[BudgetViolation] = field(default_factory=list)
    warnings: list[BudgetViolation] = field(default_factory=list)
    reservation_id: str | None = None

    def summary(self) -> str:
        """Join violation messages for abort reasons and CLI output."""
        return "; ".join(v.message for v in self.violations)


@dataclass(frozen=True)
class CostScope:
    """Filter for spend sums. Unset fields do not constrain the sum."""

    agent_id: str | None = None
    user_id: str | None = None
    tenant_id: str | None = None


@dataclass
class CostEvent:
    """One ledger row: a usage record or a reservation."""

    id: str
    run_id: str | None
    agent_id: str
    cost_usd: float
    status: CostEventStatus = CostEventStatus.RECORDED
    tenant_id: str | None = None
    user_id: str | None = None
    provider: str = ""
    model_name: str = ""
    billed_cost_usd: float | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def effective_cost_usd(self) -> float:
        """Billed cost wins over raw cost when present."""
        return self.billed_cost_usd if self.billed_cost_usd is not None else self.cost_usd

    def matches(self, scope: CostScope) -> bool:
        if scope.agent_id is not None and self.agent_id != scope.agent_id:
            return False
        if scope.user_id is not None and self.user_id != scope.user_id:
            return False
        return scope.tenant_id is None or self.tenant_id == scope.tenant_id


@dataclass(frozen=True)
class BudgetAlert:
    """A deduplicated warning/violation record for downstream notification."""

    level: BudgetLevel
    type: AlertType
    organization_id: str | None
    user_id: str | None
    agent_id: str | None
    percent_used: float
    current_spend_usd: float
    limit_usd: float
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class TokenPricing(BaseModel):
    """USD price per million prompt and completion tokens."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    prompt_per_million_usd: float = Field(default=0.0, ge=0)
    completion_per_million_usd: float = Field(default=0.0, ge=0)

    def cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Convert token counts to USD."""
        return (
            prompt_tokens * self.prompt_per_million_usd
            + completion_tokens * self.completion_per_million_usd
        ) / 1_000_000
