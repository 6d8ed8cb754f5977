"""Structured logging for Unideploy.

Every component logs through structlog; stdlib logging only provides the
output handler. Log lines go to stderr (stdout carries command output) or,
when ``LoggingConfig.file`` is set, to a size-rotated file.

Two kinds of context are attached to every event:
- a correlation id tying together the lines of one CLI invocation
- the app name and deployment id of the deployment in progress

Both live in context variables, so concurrent deployments in one event
loop never see each other's context.

Example usage:
    >>> from unideploy.config import LoggingConfig
    >>> from unideploy.logging import setup_logging, get_logger, bind_deployment_context
    >>>
    >>> setup_logging(LoggingConfig(level="INFO", format="json"))
    >>> bind_deployment_context(app_name="shop", deployment_id="shop-20240101120000-a1b2c3")
    >>> get_logger(__name__).info("deployment_started", multi_stage=True)
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import sys
from typing import Any

import structlog

from unideploy.config import LoggingConfig

DEPLOYMENT_KEYS = ("app_name", "deployment_id")

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "unideploy_correlation_id", default=None
)


def add_correlation_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor adding the current correlation id, if one is set."""
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict.setdefault("correlation_id", correlation_id)
    return event_dict


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def bind_deployment_context(app_name: str, deployment_id: str) -> None:
    """Attach the app and deployment id to every event of the current context."""
    structlog.contextvars.bind_contextvars(app_name=app_name, deployment_id=deployment_id)


def clear_deployment_context() -> None:
    structlog.contextvars.unbind_contextvars(*DEPLOYMENT_KEYS)


def _build_handler(config: LoggingConfig) -> logging.Handler:
    if config.file is None:
        return logging.StreamHandler(sys.stderr)

    config.file.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        filename=config.file,
        maxBytes=config.rotation_size_mb * 1024 * 1024,
        backupCount=config.retention_count,
        encoding="utf-8",
    )


def _renderer(config: LoggingConfig) -> Any:
    if config.format == "json":
        return structlog.processors.JSONRenderer()
    # Plain text in files and pipes
    colors = config.file is None and sys.stderr.isatty()
    return structlog.dev.ConsoleRenderer(colors=colors)


def setup_logging(config: LoggingConfig) -> None:
    """Install the handler and the structlog processor chain.

    Calling it again replaces the previous configuration, which the CLI
    relies on when ``--log-level`` or ``--log-format`` override the file.

    Args:
        config: Logging section of UnideployConfig
    """
    level = getattr(logging, config.level)

    handler = _build_handler(config)
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            add_correlation_id,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(config),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger for a module; pass ``__name__``."""
    return structlog.get_logger(name)
