"""Structured logging for runwarden.

Console events go to stderr through rich, filtered by ``-v`` (WARNING by
default, INFO with ``-v``, DEBUG with ``-vv``). With ``--log`` every event
at DEBUG and above is also appended to ``<log_dir>/events.jsonl`` as one
JSON object per line.

Identifiers bound with :func:`log_context` (run, agent, phase) are merged
into every event logged inside the block. structlog keeps them in context
variables, so concurrently running phases each log their own ``phase_id``.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path  # noqa: TC003 - Used at runtime for path operations
from typing import TYPE_CHECKING, Any

import structlog
from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from collections.abc import Iterator

    from structlog.typing import EventDict, Processor, WrappedLogger

EVENTS_FILE = "events.jsonl"

# HTTP and SDK loggers that would drown step events at DEBUG
QUIET_LOGGERS = (
    "httpx",
    "httpcore",
    "openai",
    "anthropic",
    "langchain",
    "langchain_core",
    "langsmith",
    "asyncio",
)

# Keys rendered by the handlers themselves
_HANDLER_KEYS = frozenset({"event", "level", "timestamp"})

_configured = False
_file_handler: JsonLinesHandler | None = None
_log_dir: Path | None = None


class JsonLinesHandler(logging.FileHandler):
    """Appends each record to a file as one JSON object.

    structlog hands its event dict through ``record.msg``; its keys become
    top-level fields next to ``ts``, ``level``, ``logger`` and ``event``.
    """

    def __init__(self, path: Path) -> None:
        super().__init__(path, mode="a", encoding="utf-8")
        self.setLevel(logging.DEBUG)

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
        }
        if isinstance(record.msg, dict):
            entry["event"] = record.msg.get("event", "")
            entry.update((k, v) for k, v in record.msg.items() if k not in _HANDLER_KEYS)
        else:
            entry["event"] = record.getMessage()
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _drop_handler_keys(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    for key in ("level", "timestamp"):
        event_dict.pop(key, None)
    return event_dict


def _console_handler(verbosity: int) -> RichHandler:
    handler = RichHandler(
        console=Console(stderr=True),
        level=(logging.WARNING, logging.INFO, logging.DEBUG)[min(verbosity, 2)],
        rich_tracebacks=True,
        tracebacks_show_locals=verbosity >= 2,
        show_time=verbosity >= 1,
        show_path=verbosity >= 2,
        markup=False,
    )
    # rich prints level and time; the message is "event key=value ..."
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _drop_handler_keys,
                structlog.processors.KeyValueRenderer(
                    key_order=["event"], drop_missing=True, sort_keys=True
                ),
            ],
        )
    )
    return handler


def configure_logging(
    verbosity: int = 0,
    log_to_file: bool = False,
    log_dir: Path | None = None,
) -> None:
    """Configure console (and optionally JSONL file) logging.

    Safe to call repeatedly; a previous file handler is closed.

    Args:
        verbosity: 0=WARNING, 1=INFO, 2+=DEBUG on the console.
        log_to_file: Also write every event to ``log_dir/events.jsonl``.
        log_dir: Directory for the events file; created if missing.

    Raises:
        ValueError: If ``log_to_file`` is set without ``log_dir``.
    """
    global _configured, _file_handler, _log_dir

    if log_to_file and log_dir is None:
        raise ValueError("log_dir is required when log_to_file=True")

    close_file_logging()
    handlers: list[logging.Handler] = [_console_handler(verbosity)]
    if log_to_file and log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        _log_dir = log_dir
        _file_handler = JsonLinesHandler(log_dir / EVENTS_FILE)
        handlers.append(_file_handler)
    else:
        _log_dir = None

    # The root logger passes everything the most verbose handler wants
    threshold = logging.DEBUG if (verbosity > 0 or log_to_file) else logging.WARNING
    logging.basicConfig(level=threshold, handlers=handlers, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]
    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Return a structlog logger, configuring defaults on first use.

    Args:
        name: Logger name (typically ``__name__``).
    """
    if not _configured:
        configure_logging()
    logger: structlog.typing.FilteringBoundLogger = structlog.get_logger(name)
    return logger


@contextmanager
def log_context(**ids: str | None) -> Iterator[None]:
    """Bind identifiers to every event logged inside the block.

    None values are skipped so optional IDs can be passed through as-is.

    Example:
        with log_context(run_id=run_id, agent_id="researcher"):
            ...
    """
    bound = {key: value for key, value in ids.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def get_logs_dir() -> Path | None:
    """Return the directory receiving ``events.jsonl``, or None when file logging is off."""
    return _log_dir


def close_file_logging() -> None:
    """Flush and close the JSONL file handler, if any."""
    global _file_handler
    if _file_handler is not None:
        logging.getLogger().removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None
