"""structlog setup shared by the CLI and the library modules.

Library code only calls :func:`get_logger`. The CLI calls
:func:`configure_logging` once, which routes structlog and stdlib records
(libvirt-python, urllib3 and friends) through one stderr handler.
"""

import logging
import sys
import time
from contextlib import contextmanager
from typing import Iterator, List

import structlog

Processor = structlog.types.Processor


def _pre_chain() -> List[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="%H:%M:%S"),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderer(json_output: bool) -> Processor:
    if json_output:
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Send every log record to stderr, as console lines or JSON lines."""
    pre_chain = _pre_chain()
    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(json_output),
            ],
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())


def get_logger(name: str = "libvirtdev") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def log_operation(
    logger: structlog.stdlib.BoundLogger, operation: str, **context
) -> Iterator[structlog.stdlib.BoundLogger]:
    """Log ``<operation>.started`` and then ``.completed`` or ``.failed``.

    The bound logger is yielded so the body can log with the same context.
    Exceptions are logged with their type and re-raised.
    """
    bound = logger.bind(operation=operation, **context)
    bound.info(f"{operation}.started")
    started = time.monotonic()
    try:
        yield bound
    except Exception as e:
        bound.error(
            f"{operation}.failed",
            error=str(e),
            error_type=type(e).__name__,
            duration_ms=_since(started),
        )
        raise
    bound.info(f"{operation}.completed", duration_ms=_since(started))


def _since(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)
