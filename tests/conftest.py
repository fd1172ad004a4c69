"""Pytest configuration and shared fixtures."""

import os
from pathlib import Path

import pytest

from runwarden.budget import (
    BudgetEnforcementService,
    InMemoryAlertSink,
    InMemoryCostEventStore,
    StaticPolicySource,
)
from runwarden.context import AgentSpec
from runwarden.routing import ModelSpec
from tests.fixtures.fakes import FixedClock, ScriptedGenerator


@pytest.fixture(autouse=True, scope="session")
def disable_langsmith_tracing() -> None:
    """Disable LangSmith tracing during test runs.

    This prevents test runs from cluttering the LangSmith dashboard.
    Set LANGSMITH_TEST_TRACING=true to override for debugging.
    """
    if os.environ.get("LANGSMITH_TEST_TRACING", "").lower() != "true":
        os.environ["LANGSMITH_TRACING"] = "false"


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def clock() -> FixedClock:
    """Clock pinned to mid-month so month-to-date sums are predictable."""
    return FixedClock()


@pytest.fixture
def policies() -> StaticPolicySource:
    """Empty policy source; tests fill in the levels they exercise."""
    return StaticPolicySource()


@pytest.fixture
def event_store() -> InMemoryCostEventStore:
    return InMemoryCostEventStore()


@pytest.fixture
def alert_sink() -> InMemoryAlertSink:
    return InMemoryAlertSink()


@pytest.fixture
def budget_service(
    event_store: InMemoryCostEventStore,
    policies: StaticPolicySource,
    alert_sink: InMemoryAlertSink,
    clock: FixedClock,
) -> BudgetEnforcementService:
    """Enforcement service over in-memory storage and a fixed clock."""
    return BudgetEnforcementService(event_store, policies, alert_sink, clock=clock)


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def agent(generator: ScriptedGenerator) -> AgentSpec:
    """Agent backed by the scripted generator, no routing."""
    return AgentSpec(
        instructions="You are a careful assistant.",
        model=ModelSpec(provider="openai", name="gpt-4o-mini"),
        generator=generator,
        name="test-agent",
    )
