"""Observability for runwarden: structlog logging and LangSmith tracing."""

from runwarden.observability.logging import (
    close_file_logging,
    configure_logging,
    get_logger,
    get_logs_dir,
    log_context,
)
from runwarden.observability.tracing import (
    annotate_current_run,
    build_runnable_config,
    generate_run_id,
    get_run_id,
    run_scope,
    trace_context,
    traceable,
)

__all__ = [
    "annotate_current_run",
    "build_runnable_config",
    "close_file_logging",
    "configure_logging",
    "generate_run_id",
    "get_logger",
    "get_logs_dir",
    "get_run_id",
    "log_context",
    "run_scope",
    "trace_context",
    "traceable",
]
