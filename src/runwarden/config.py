"""Engine configuration loading.

Configuration lives in ``runwarden.yaml``::

    default_model: openai/gpt-4o-mini
    context:
      max_context_tokens: 50000
      window_size: 5
      anchor_instructions: true
      anchor_interval: 10
    compression:
      enabled: true
      threshold: 3000
      model: openai/gpt-4o-mini
      cache_capacity: 200
    routing:
      mode: auto
      fast_model: {provider: openai, name: gpt-4o-mini}
      escalation_model: {provider: anthropic, name: claude-sonnet-4-20250514}
    budget:
      db_path: .runwarden/ledger.db
      reservation_ttl_minutes: 30
      default_estimate_usd: 0.10
      pricing: {prompt_per_million_usd: 0.15, completion_per_million_usd: 0.6}
      subscriptions:
        acme: {included_credits_usd: 100, used_credits_usd: 12.5}
      org_policies:
        acme: {monthly_limit_usd: 500, hard_limit: true, alert_at_pct: 80}
      user_policies:
        - {user_id: alice, organization_id: acme, monthly_limit_usd: 50}
      agent_policies:
        researcher: {monthly_limit_usd: 20, hard_limit: true}

Environment variables override the file:
``RUNWARDEN_MAX_CONTEXT_TOKENS``, ``RUNWARDEN_WINDOW_SIZE``,
``RUNWARDEN_PROVIDER`` (default model string) and ``RUNWARDEN_DB``.
All validation happens here, once; later code trusts the result.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import Any

from pydantic import ValidationError
from ruamel.yaml import YAML

from runwarden.budget.models import BudgetPolicy, SubscriptionState, TokenPricing
from runwarden.budget.store import StaticPolicySource
from runwarden.routing.router import RoutingConfig

DEFAULT_CONFIG_FILE = "runwarden.yaml"
DEFAULT_MODEL = "openai/gpt-4o-mini"
DEFAULT_DB_PATH = ".runwarden/ledger.db"


class ConfigError(Exception):
    """Raised when engine configuration cannot be loaded or is invalid."""

    def __init__(self, path: Path | str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid configuration at {path}: {reason}")


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"'{key}' must be a mapping")
    return dict(value)


def _positive_int(value: Any, name: str) -> int:
    number = int(value)
    if number < 1:
        raise ValueError(f"{name} must be a positive integer")
    return number


@dataclass
class ContextConfig:
    """Context window settings shared by every phase."""

    max_context_tokens: int = 50_000
    window_size: int = 5
    anchor_instructions: bool = True
    anchor_interval: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextConfig:
        window_size = int(data.get("window_size", 5))
        if window_size < 0:
            raise ValueError("window_size must be non-negative")
        return cls(
            max_context_tokens=_positive_int(
                data.get("max_context_tokens", 50_000), "max_context_tokens"
            ),
            window_size=window_size,
            anchor_instructions=bool(data.get("anchor_instructions", True)),
            anchor_interval=_positive_int(data.get("anchor_interval", 10), "anchor_interval"),
        )


@dataclass
class CompressionConfig:
    """Tool result compression settings.

    Attributes:
        enabled: Compress oversized tool results.
        threshold: Result length (chars) above which compression applies.
        model: ``provider/model`` for the summarizer; None uses the default model.
        cache_capacity: Compression cache size.
    """

    enabled: bool = True
    threshold: int = 3000
    model: str | None = None
    cache_capacity: int = 200

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompressionConfig:
        return cls(
            enabled=bool(data.get("enabled", True)),
            threshold=_positive_int(data.get("threshold", 3000), "threshold"),
            model=data.get("model"),
            cache_capacity=_positive_int(data.get("cache_capacity", 200), "cache_capacity"),
        )


@dataclass
class BudgetConfig:
    """Ledger location, reservation settings, pricing and policies."""

    db_path: str = DEFAULT_DB_PATH
    reservation_ttl_minutes: int = 30
    default_estimate_usd: float = 0.10
    pricing: TokenPricing = field(default_factory=TokenPricing)
    subscriptions: dict[str, SubscriptionState] = field(default_factory=dict)
    org_policies: dict[str, BudgetPolicy] = field(default_factory=dict)
    user_policies: dict[tuple[str, str], BudgetPolicy] = field(default_factory=dict)
    agent_policies: dict[str, BudgetPolicy] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BudgetConfig:
        """Create config from dictionary.

        ``user_policies`` is a list of policies, each carrying ``user_id``
        and ``organization_id`` keys.

        Raises:
            ValidationError: If a policy, subscription or pricing is malformed.
        """
        user_policies: dict[tuple[str, str], BudgetPolicy] = {}
        for entry in data.get("user_policies") or []:
            entry = dict(entry)
            key = (str(entry.pop("user_id")), str(entry.pop("organization_id")))
            user_policies[key] = BudgetPolicy.model_validate(entry)

        estimate = float(data.get("default_estimate_usd", 0.10))
        if estimate < 0:
            raise ValueError("default_estimate_usd must be non-negative")

        return cls(
            db_path=str(data.get("db_path", DEFAULT_DB_PATH)),
            reservation_ttl_minutes=_positive_int(
                data.get("reservation_ttl_minutes", 30), "reservation_ttl_minutes"
            ),
            default_estimate_usd=estimate,
            pricing=TokenPricing.model_validate(dict(data.get("pricing") or {})),
            subscriptions={
                str(k): SubscriptionState.model_validate(dict(v))
                for k, v in _section(data, "subscriptions").items()
            },
            org_policies={
                str(k): BudgetPolicy.model_validate(dict(v))
                for k, v in _section(data, "org_policies").items()
            },
            user_policies=user_policies,
            agent_policies={
                str(k): BudgetPolicy.model_validate(dict(v))
                for k, v in _section(data, "agent_policies").items()
            },
        )

    def policy_source(self) -> StaticPolicySource:
        return StaticPolicySource(
            subscriptions=self.subscriptions,
            org_policies=self.org_policies,
            user_policies=self.user_policies,
            agent_policies=self.agent_policies,
        )


@dataclass
class EngineConfig:
    """Top-level engine configuration."""

    default_model: str = DEFAULT_MODEL
    context: ContextConfig = field(default_factory=ContextConfig)
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    routing: RoutingConfig | None = None
    budget: BudgetConfig = field(default_factory=BudgetConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """Create config from dictionary.

        Args:
            data: Parsed YAML mapping.

        Returns:
            EngineConfig instance.
        """
        routing_data = data.get("routing")
        return cls(
            default_model=str(data.get("default_model", DEFAULT_MODEL)),
            context=ContextConfig.from_dict(_section(data, "context")),
            compression=CompressionConfig.from_dict(_section(data, "compression")),
            routing=RoutingConfig.model_validate(dict(routing_data)) if routing_data else None,
            budget=BudgetConfig.from_dict(_section(data, "budget")),
        )

    def apply_env_overrides(self) -> EngineConfig:
        """Apply ``RUNWARDEN_*`` environment overrides in place."""
        if value := os.getenv("RUNWARDEN_MAX_CONTEXT_TOKENS"):
            self.context.max_context_tokens = _positive_int(
                value, "RUNWARDEN_MAX_CONTEXT_TOKENS"
            )
        if value := os.getenv("RUNWARDEN_WINDOW_SIZE"):
            window_size = int(value)
            if window_size < 0:
                raise ValueError("RUNWARDEN_WINDOW_SIZE must be non-negative")
            self.context.window_size = window_size
        if value := os.getenv("RUNWARDEN_PROVIDER"):
            self.default_model = value
        if value := os.getenv("RUNWARDEN_DB"):
            self.budget.db_path = value
        return self


def load_config(path: Path | None = None) -> EngineConfig:
    """Load engine configuration from YAML, then apply environment overrides.

    Args:
        path: Config file. When None, ``runwarden.yaml`` in the current
            directory is used if present, otherwise defaults.

    Returns:
        EngineConfig instance.

    Raises:
        ConfigError: If the file is unreadable, malformed or invalid.
    """
    if path is None:
        candidate = Path(DEFAULT_CONFIG_FILE)
        if not candidate.exists():
            try:
                return EngineConfig().apply_env_overrides()
            except ValueError as e:
                raise ConfigError("environment", str(e)) from e
        path = candidate

    if not path.exists():
        raise ConfigError(path, "File not found")

    yaml = YAML(typ="safe")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.load(f)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(path, "Top level must be a mapping")
        return EngineConfig.from_dict(dict(data)).apply_env_overrides()
    except ConfigError:
        raise
    except ValidationError as e:
        raise ConfigError(path, _format_validation_error(e)) from e
    except Exception as e:
        raise ConfigError(path, str(e)) from e


def _format_validation_error(error: ValidationError) -> str:
    """Flatten a pydantic error into one readable line."""
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)
