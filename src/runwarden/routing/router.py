"""Complexity-based model routing.

A lightweight heuristic scores input text and maps it to a cost tier. The
decision is advisory: it picks which model a step targets, never whether
the step runs (that is the spend ledger's job).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from runwarden.observability.logging import get_logger

if TYPE_CHECKING:
    from runwarden.budget.models import BudgetCheckResult

log = get_logger(__name__)

ComplexityLevel = Literal["simple", "moderate", "complex"]

DEFAULT_CONFIDENCE_THRESHOLD = 0.7
DEFAULT_ALERT_PCT = 80.0

_MULTI_STEP = re.compile(
    r"\b(step\s*\d|first.*then|next.*after|please.*and.*also|multi[- ]?step|compare.*and"
    r"|analyze.*and|1\.\s|2\.\s|3\.\s|\band\b.*\band\b)",
    re.IGNORECASE,
)
_COMPLEX_KEYWORDS = re.compile(
    r"\b(analyze|synthesize|evaluate|compare|contrast|critique|refactor|architect|design"
    r"|optimize|debug|troubleshoot|explain.*why|reason.*about|trade[- ]?off|pros?\s+and\s+cons?)\b",
    re.IGNORECASE,
)
_CODE = re.compile(r"```[\s\S]*```|function\s+\w+|class\s+\w+|import\s+")
_SIMPLE_QUESTION = re.compile(r"^(what is|who is|when did|where is|how many|yes or no)\b", re.IGNORECASE)
_GREETING = re.compile(
    r"^(hi|hello|hey|thanks|thank you|ok|okay|sure|yes|no|bye|good)\b", re.IGNORECASE
)
_REASONING = re.compile(
    r"\b(prove|disprove|derive|deduce|step[- ]by[- ]step|mathematical|theorem|proof|logic"
    r"|contradict|implication|infer|calculate.*show|verify.*correct|find.*error|what.*wrong"
    r"|debug.*why|root\s*cause|differential|integral|equation|algorithm\s+complexity)\b",
    re.IGNORECASE,
)


class RoutingTier(str, Enum):
    """Cost tiers a step can be routed to."""

    FAST = "FAST"
    PRIMARY = "PRIMARY"
    ESCALATION = "ESCALATION"
    REASONING = "REASONING"


class ModelSpec(BaseModel):
    """Provider/model identity for one tier."""

    model_config = ConfigDict(frozen=True)

    provider: str = Field(min_length=1)
    name: str = Field(min_length=1)

    def __str__(self) -> str:
        return f"{self.provider}/{self.name}"


class RoutingConfig(BaseModel):
    """Per-agent routing configuration with explicit per-tier overrides.

    Attributes:
        mode: "locked" always uses the primary model; "auto" routes by complexity.
        fast_model: Model for simple input (primary if unset).
        escalation_model: Model for complex input (primary if unset).
        reasoning_model: Model for reasoning-class input (no override if unset).
        confidence_threshold: Score at or above which input escalates.
        budget_aware: Bias moderate input to the fast tier under budget pressure.
    """

    model_config = ConfigDict(extra="forbid")

    mode: Literal["locked", "auto"] = "locked"
    fast_model: ModelSpec | None = None
    escalation_model: ModelSpec | None = None
    reasoning_model: ModelSpec | None = None
    confidence_threshold: float = Field(default=DEFAULT_CONFIDENCE_THRESHOLD, ge=0.0, le=1.0)
    budget_aware: bool = False


@dataclass(frozen=True)
class ComplexityClassification:
    """Heuristic complexity of an input text."""

    score: float
    level: ComplexityLevel
    needs_reasoning: bool


@dataclass(frozen=True)
class RoutingDecision:
    """Selected tier and model, with a human-readable reason."""

    tier: RoutingTier
    model: ModelSpec
    reason: str


@dataclass(frozen=True)
class ModelOverride:
    """Result of resolving a model override for one execution.

    Attributes:
        model: Model to use instead of the primary, or None to keep the primary.
        decision: The routing decision, or None when routing is disabled.
        is_reasoning_model: True when the reasoning tier was selected.
    """

    model: ModelSpec | None
    decision: RoutingDecision | None
    is_reasoning_model: bool = False


def classify_complexity(text: str) -> ComplexityClassification:
    """Score input complexity in [0, 1] using lightweight heuristics."""
    score = 0.0

    word_count = len(text.split())
    if word_count > 100:
        score += 0.3
    elif word_count > 40:
        score += 0.15
    elif word_count > 15:
        score += 0.05

    if _MULTI_STEP.search(text):
        score += 0.25
    if _COMPLEX_KEYWORDS.search(text):
        score += 0.2
    if _CODE.search(text):
        score += 0.15
    if _SIMPLE_QUESTION.search(text) and word_count < 15:
        score -= 0.15
    if _GREETING.search(text) and word_count < 5:
        score -= 0.3

    score = max(0.0, min(1.0, score))

    level: ComplexityLevel
    if score >= 0.5:
        level = "complex"
    elif score >= 0.2:
        level = "moderate"
    else:
        level = "simple"

    needs_reasoning = bool(_REASONING.search(text)) and score >= 0.4
    return ComplexityClassification(score=score, level=level, needs_reasoning=needs_reasoning)


def resolve_routing_decision(
    config: RoutingConfig | None,
    primary_model: ModelSpec,
    text: str,
    budget_exceeded: bool = False,
) -> RoutingDecision | None:
    """Map input complexity to a model tier.

    Args:
        config: Routing configuration; None or "locked" disables routing.
        primary_model: The agent's primary model.
        text: Input text to classify.
        budget_exceeded: Caller signals budget pressure.

    Returns:
        RoutingDecision, or None if routing is disabled.
    """
    if config is None or config.mode != "auto":
        return None

    c = classify_complexity(text)
    threshold = config.confidence_threshold
    budget_bias = config.budget_aware and budget_exceeded

    if c.level == "simple" or (c.level == "moderate" and budget_bias):
        tier = RoutingTier.FAST
        model = config.fast_model or primary_model
        if c.level == "simple":
            reason = f"Simple input (score={c.score:.2f})"
        else:
            reason = f"Moderate input biased to fast (budget-aware, score={c.score:.2f})"
    elif c.level == "complex" or c.score >= threshold:
        if config.escalation_model is not None:
            tier = RoutingTier.ESCALATION
            model = config.escalation_model
            reason = f"Complex input (score={c.score:.2f}, threshold={threshold})"
        else:
            tier = RoutingTier.PRIMARY
            model = primary_model
            reason = f"Complex input, no escalation model configured (score={c.score:.2f})"
    else:
        tier = RoutingTier.PRIMARY
        model = primary_model
        reason = f"Moderate input (score={c.score:.2f})"

    if c.needs_reasoning and config.reasoning_model is not None:
        tier = RoutingTier.REASONING
        model = config.reasoning_model
        reason = f"Reasoning-class input detected (score={c.score:.2f})"

    return RoutingDecision(tier=tier, model=model, reason=reason)


def extract_routing_text(value: str | list[dict[str, Any]]) -> str:
    """Extract the text to classify from a string or a chat message list.

    For message lists the last user message is used; ``parts`` style
    content takes the last text part.
    """
    if isinstance(value, str):
        return value

    user_messages = [m for m in value if m.get("role") == "user"]
    if not user_messages:
        return ""
    last = user_messages[-1]

    parts = last.get("parts")
    if isinstance(parts, list):
        text = ""
        for part in parts:
            if part.get("type") == "text" and part.get("text"):
                text = part["text"]
        return text
    content = last.get("content")
    return content if isinstance(content, str) else ""


def budget_pressure(
    budget_result: BudgetCheckResult | None,
    alert_at_pct: float = DEFAULT_ALERT_PCT,
) -> bool:
    """Return True when an agent-level warning sits at or above ``alert_at_pct``."""
    if budget_result is None:
        return False
    return any(
        w.level.value == "agent" and w.percent_used >= alert_at_pct for w in budget_result.warnings
    )


def resolve_model_override(
    config: RoutingConfig | None,
    primary_model: ModelSpec,
    value: str | list[dict[str, Any]],
    *,
    budget_result: BudgetCheckResult | None = None,
    alert_at_pct: float = DEFAULT_ALERT_PCT,
) -> ModelOverride:
    """Resolve which model (if not the primary) an execution should use.

    Args:
        config: Routing configuration.
        primary_model: The agent's primary model.
        value: Input string or chat message list.
        budget_result: Latest budget check, used for budget-aware routing.
        alert_at_pct: Agent alert percentage that counts as budget pressure.

    Returns:
        ModelOverride; ``model`` is None for the PRIMARY tier or disabled routing.
    """
    if config is None or config.mode != "auto":
        return ModelOverride(model=None, decision=None)

    text = extract_routing_text(value)
    if not text:
        return ModelOverride(model=None, decision=None)

    exceeded = config.budget_aware and budget_pressure(budget_result, alert_at_pct)
    decision = resolve_routing_decision(config, primary_model, text, exceeded)
    if decision is None:
        return ModelOverride(model=None, decision=None)

    override = decision.model if decision.tier is not RoutingTier.PRIMARY else None
    log.info(
        "model_routing",
        tier=decision.tier.value,
        model=str(override) if override else "primary",
        reason=decision.reason,
    )
    return ModelOverride(
        model=override,
        decision=decision,
        is_reasoning_model=decision.tier is RoutingTier.REASONING,
    )
