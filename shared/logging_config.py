"""JSON logging with a correlation ID carried through executions and requests."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator
from pythonjsonlogger import jsonlogger

correlation_id_var: ContextVar[str] = ContextVar('correlation_id', default='')


class CorrelationIdFilter(logging.Filter):
    """Adds correlation_id to all log records"""

    def filter(self, record):
        record.correlation_id = correlation_id_var.get('')
        return True


def setup_logging(service_name: str, level: int = logging.INFO) -> None:
    """Routes the root logger to stdout as JSON, tagged with the service name"""
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(jsonlogger.JsonFormatter(
        '%(asctime)s %(name)s %(levelname)s %(correlation_id)s %(message)s',
        rename_fields={
            'asctime': 'timestamp',
            'name': 'logger',
            'levelname': 'level',
        },
        static_fields={'service': service_name},
    ))
    handler.addFilter(CorrelationIdFilter())
    root.addHandler(handler)
    logging.info(f"{service_name} logging configured")


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Binds a correlation ID for the duration of the block, unless one is already set"""
    if correlation_id_var.get(''):
        yield correlation_id_var.get('')
        return

    token = correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)
