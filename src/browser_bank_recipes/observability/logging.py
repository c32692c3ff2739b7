"""Structured logging for playback runs.

Every log line of a run carries ``run_id`` and ``recipe_id`` from structlog's
contextvars. Logs go to stderr; stdout belongs to the CLI's JSON output.
"""

import logging
import sys

import structlog

_configured = False


def setup_structured_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Configure structlog once per process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines instead of the human-readable console format
    """
    global _configured
    if _configured:
        return

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
        stream=sys.stderr,
    )
    # httpx logs every Ollama request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _configured = True


def bind_run_context(run_id: str, recipe_id: str) -> None:
    """Bind playback run context for all subsequent logs in this async context.

    Args:
        run_id: Unique identifier of this playback run
        recipe_id: Recipe being replayed
    """
    structlog.contextvars.bind_contextvars(run_id=run_id, recipe_id=recipe_id)


def clear_run_context() -> None:
    """Clear run context after the run ends."""
    structlog.contextvars.clear_contextvars()


def get_run_logger(name: str = "browser_bank_recipes") -> structlog.stdlib.BoundLogger:
    """Get a structlog logger carrying the bound run context."""
    return structlog.get_logger(name)
