"""Complexity classification and model-tier routing."""

from runwarden.routing.router import (
    ComplexityClassification,
    ModelOverride,
    ModelSpec,
    RoutingConfig,
    RoutingDecision,
    RoutingTier,
    budget_pressure,
    classify_complexity,
    extract_routing_text,
    resolve_model_override,
    resolve_routing_decision,
)

__all__ = [
    "ComplexityClassification",
    "ModelOverride",
    "ModelSpec",
    "RoutingConfig",
    "RoutingDecision",
    "RoutingTier",
    "budget_pressure",
    "classify_complexity",
    "extract_routing_text",
    "resolve_model_override",
    "resolve_routing_decision",
]
