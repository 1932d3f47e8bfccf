"""structlog configuration module."""

import logging
import sys

import structlog


def setup_logging(debug: bool = False, service: str = "entitlement-reconciler") -> None:
    """
    Configure structlog and stdlib logging.

    Debug mode renders colored console lines; otherwise every event is a JSON
    object so batch runs can be filtered by batch_id / identity_id.

    Args:
        debug: If True, use ConsoleRenderer; otherwise use JSONRenderer.
        service: Value bound to every event as ``service``.
    """

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id, batch_id
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=service)

    # Library loggers (httpx, stripe) still go through stdlib logging.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.DEBUG if debug else logging.INFO,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
