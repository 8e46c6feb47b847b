"""Logging setup for turingpi-cluster.

Log lines go to stderr so command output on stdout (tables, ``--json``
summaries, kubeconfigs) stays pipeable.
"""

import logging
import sys

import structlog

# Libraries that log every SSH channel or HTTP request at INFO
NOISY_LOGGERS = ("paramiko", "httpx", "httpcore")


def configure_logging(level: str = "warning", json_output: bool = False) -> None:
    """Route stdlib logging and structlog to stderr at ``level``.

    ``json_output`` swaps the console renderer for one JSON object per line,
    for runs driven by automation.
    """
    log_level = getattr(logging, level.upper(), logging.WARNING)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    logging.basicConfig(level=log_level, handlers=[handler], format="%(message)s", force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
