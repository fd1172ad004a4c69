"""Phase scheduling: sequential chains and dependency-DAG execution."""

from runwarden.phases.errors import (
    CircularDependencyError,
    DuplicatePhaseError,
    PhaseConfigError,
    UnknownPhaseDependencyError,
)
from runwarden.phases.loader import PhasePlan, load_phase_plan
from runwarden.phases.models import Phase, PhaseResult, PhaseRunResult
from runwarden.phases.runner import (
    PhaseRunnerOptions,
    build_phase_input,
    execute_phase,
    plan_parallel_groups,
    run_phases,
    summarize_phase_output,
    validate_phases,
)

__all__ = [
    "CircularDependencyError",
    "DuplicatePhaseError",
    "Phase",
    "PhaseConfigError",
    "PhasePlan",
    "PhaseResult",
    "PhaseRunResult",
    "PhaseRunnerOptions",
    "UnknownPhaseDependencyError",
    "build_phase_input",
    "execute_phase",
    "load_phase_plan",
    "plan_parallel_groups",
    "run_phases",
    "summarize_phase_output",
    "validate_phases",
]
