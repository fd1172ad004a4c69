"""Phase configuration errors.

These are raised before any phase runs and are never retried: a bad
dependency graph is a caller bug, not a transient condition.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable


class PhaseConfigError(Exception):
    """Base class for invalid phase definitions."""


class UnknownPhaseDependencyError(PhaseConfigError):
    """Raised when a phase depends on an ID that is not in the phase list."""

    def __init__(self, phase_name: str, dependency: str) -> None:
        self.phase_name = phase_name
        self.dependency = dependency
        super().__init__(f'Phase "{phase_name}" depends on unknown phase ID "{dependency}"')


class CircularDependencyError(PhaseConfigError):
    """Raised when no remaining phase can become ready."""

    def __init__(self, remaining_ids: Iterable[str]) -> None:
        self.remaining_ids = list(remaining_ids)
        super().__init__(
            f"Circular dependency detected. Remaining phases: {', '.join(self.remaining_ids)}"
        )


class DuplicatePhaseError(PhaseConfigError):
    """Raised when two phases share an ID."""

    def __init__(self, phase_id: str) -> None:
        self.phase_id = phase_id
        super().__init__(f'Duplicate phase ID "{phase_id}"')
