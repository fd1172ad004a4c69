"""Load a phase plan from YAML.

A phase plan file describes one task::

    input: Verify all integrations
    execution_mode: parallel
    instructions: You are an integration tester.
    model: openai/gpt-4o-mini        # optional, defaults to the engine model
    agent_id: integration-tester     # optional, used for budget checks
    phases:
      - id: discover
        name: Discovery
        instructions: List the configured integrations.
        max_steps: 10
      - id: api
        name: API Test
        instructions: Exercise each API.
        max_steps: 30
        depends_on: [discover]
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import Any

from ruamel.yaml import YAML

from runwarden.config import ConfigError
from runwarden.phases.models import Phase

_MODES = ("sequential", "parallel")


@dataclass
class PhasePlan:
    """A task decomposed into phases, plus the agent settings to run it with."""

    phases: list[Phase]
    input: str = ""
    execution_mode: str = "sequential"
    instructions: str = ""
    model: str | None = None
    agent_id: str = "default"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhasePlan:
        raw_phases = data.get("phases")
        if not raw_phases:
            raise ValueError("'phases' must be a non-empty list")
        mode = str(data.get("execution_mode", "sequential"))
        if mode not in _MODES:
            raise ValueError(f"execution_mode must be one of {', '.join(_MODES)}, got '{mode}'")
        return cls(
            phases=[Phase.from_dict(dict(p)) for p in raw_phases],
            input=str(data.get("input", "")),
            execution_mode=mode,
            instructions=str(data.get("instructions", "")),
            model=data.get("model"),
            agent_id=str(data.get("agent_id", "default")),
        )


def load_phase_plan(path: Path) -> PhasePlan:
    """Load and validate a phase plan file.

    Dependency-graph validation (unknown IDs, cycles) is left to
    ``plan_parallel_groups`` so the same errors surface at run time.

    Raises:
        ConfigError: If the file is missing or malformed.
    """
    if not path.exists():
        raise ConfigError(path, "File not found")

    yaml = YAML(typ="safe")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.load(f)
        if not isinstance(data, dict):
            raise ConfigError(path, "Top level must be a mapping")
        return PhasePlan.from_dict(data)
    except ConfigError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(path, f"Invalid phase definition: {e}") from e
    except Exception as e:
        raise ConfigError(path, str(e)) from e
