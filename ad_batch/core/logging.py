"""structlog setup for the API process and the ARQ worker.

Every record, including plain ``logging.getLogger(__name__)`` calls, goes
through one processor chain. Records emitted while a request is handled carry
``request_id``; records emitted inside a scheduler run carry ``job_id``.
"""

import logging
import sys
from contextvars import ContextVar

import structlog

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)

_CONTEXT_IDS = (("request_id", request_id_var), ("job_id", job_id_var))

# Per-request and per-poll chatter from these drowns out job progress
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "arq.worker")


def add_context_ids(logger, method_name, event_dict):
    """Copy the current request/job ids onto the event unless already set."""
    for key, var in _CONTEXT_IDS:
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Route stdlib and structlog records through a single stdout handler.

    Args:
        log_level: Root level name; unknown names fall back to INFO
        log_format: "console" for local development, anything else renders JSON
    """
    pre_chain: list = [
        structlog.contextvars.merge_contextvars,
        add_context_ids,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    renderer = structlog.dev.ConsoleRenderer() if log_format == "console" else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
