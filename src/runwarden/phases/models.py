"""Phase definitions and results."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _as_names(value: Any) -> tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return (value,) if value else ()
    return tuple(str(v) for v in value)


@dataclass(frozen=True)
class Phase:
    """A unit of work with its own instructions and step budget.

    Attributes:
        id: Unique within a run.
        name: Display name, also used in composed inputs.
        instructions: Task-specific prompt fragment.
        max_steps: Hard cap on generation steps for this phase.
        depends_on: IDs of direct predecessors (empty = none).
        input_from_previous: Sequential mode only; feed the most recently
            completed phase's output into this phase's input.
        tools: Optional tool allow-list for the phase.
    """

    id: str
    name: str
    instructions: str
    max_steps: int
    depends_on: tuple[str, ...] = ()
    input_from_previous: bool = False
    tools: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Phase id must be non-empty")
        if self.max_steps < 1:
            raise ValueError(f"Phase '{self.id}' max_steps must be at least 1")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Phase:
        """Create a phase from a mapping (YAML or JSON).

        Accepts ``depends_on``/``dependsOn`` and ``max_steps``/``maxSteps``.
        ``name`` defaults to the ID. A single string for ``depends_on`` or
        ``tools`` is read as a one-item list.
        """
        phase_id = str(data["id"])
        depends = _as_names(data.get("depends_on", data.get("dependsOn"))) or ()
        tools = data.get("tools")
        return cls(
            id=phase_id,
            name=str(data.get("name") or phase_id),
            instructions=str(data.get("instructions", "")),
            max_steps=int(data.get("max_steps", data.get("maxSteps", 10))),
            depends_on=depends,
            input_from_previous=bool(
                data.get("input_from_previous", data.get("inputFromPrevious", False))
            ),
            tools=_as_names(tools),
        )


@dataclass(frozen=True)
class PhaseResult:
    """Outcome of one phase, created once when the phase finishes.

    Timestamps are epoch seconds; ``parallel_group`` is set only in
    parallel mode (1-based).
    """

    phase_id: str
    phase_name: str
    text: str
    total_steps: int
    total_prompt_tokens: int
    total_completion_tokens: int
    finish_reason: str
    abort_reason: str | None
    started_at: float
    completed_at: float
    duration_ms: int
    parallel_group: int | None = None

    @property
    def total_tokens(self) -> int:
        return self.total_prompt_tokens + self.total_completion_tokens

    @property
    def failed(self) -> bool:
        return self.finish_reason == "error"


@dataclass
class PhaseRunResult:
    """Aggregate of a phase run; ``phases`` is in completion order."""

    phases: list[PhaseResult] = field(default_factory=list)
    final_text: str = ""
    total_steps: int = 0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_duration_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.total_prompt_tokens + self.total_completion_tokens

    def by_id(self) -> dict[str, PhaseResult]:
        return {r.phase_id: r for r in self.phases}
