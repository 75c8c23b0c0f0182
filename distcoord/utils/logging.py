"""
Structured logging for coordination nodes.

Every entry carries the node id (bound as a context variable) and the
node's current election role, so interleaved output from a cluster can be
split per node and per leadership term. Output is JSON by default, with a
colored console renderer for local runs.
"""

import logging
import sys
from typing import Any, Callable, Optional

import structlog
from structlog.types import EventDict, Processor

LOG_FORMATS = ("json", "console")

# libraries whose INFO output drowns out election and replication events
NOISY_LOGGERS = ("grpc", "asyncio")

RoleProvider = Callable[[], str]

_role_provider: Optional[RoleProvider] = None


def set_role_provider(provider: Optional[RoleProvider]) -> None:
    """
    Register the callable reporting this process's election role.

    Pass None to stop tagging entries with a role.
    """
    global _role_provider
    _role_provider = provider


def add_node_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag entries with the application name and the current election role."""
    event_dict["app"] = "distcoord"
    if _role_provider is not None:
        event_dict.setdefault("role", _role_provider())
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_output: str = "stdout",
    node_id: Optional[int] = None,
) -> None:
    """
    Configure structured logging for the node process.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format (json or console)
        log_output: Output destination (stdout or stderr)
        node_id: Node id bound into every log entry of this process

    Raises:
        ValueError: If the level or format is unknown
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")
    if log_format not in LOG_FORMATS:
        raise ValueError(f"Unknown log format: {log_format}")

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout if log_output == "stdout" else sys.stderr,
        level=level,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_node_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    if node_id is not None:
        structlog.contextvars.bind_contextvars(node_id=node_id)


def configure_from_config(config: Any) -> None:
    """Configure logging from the ``logging`` and ``node`` config sections."""
    configure_logging(
        log_level=config.get("logging.level", "INFO"),
        log_format=config.get("logging.format", "json"),
        log_output=config.get("logging.output", "stdout"),
        node_id=config.get("node.id"),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger, typically named after the calling module."""
    return structlog.get_logger(name)
