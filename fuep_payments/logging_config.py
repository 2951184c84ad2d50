"""
Structured logging configuration using structlog.

Everything is rendered as one JSON object per line on stdout. Two channels
exist: module loggers from ``get_logger`` and the operator channel from
``get_operator_logger``, which carries webhook rejections, amount mismatches
and orphaned gateway references that someone has to look at.
"""
import logging
import sys
from typing import Any, Dict

import structlog

from fuep_payments.config import Settings, settings

OPERATOR_CHANNEL = "fuep_payments.operator"

# Third-party loggers that log every outbound request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore")


def app_context(s: Settings):
    def add_app_context(logger: Any, method_name: str, event_dict: Dict) -> Dict:
        event_dict.setdefault('app', s.APP_NAME.lower())
        event_dict.setdefault('environment', s.ENVIRONMENT)
        return event_dict
    return add_app_context


def configure_logging(s: Settings = settings) -> None:
    level = getattr(logging, s.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            app_context(s),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str = __name__):
    return structlog.get_logger(name)


def get_operator_logger():
    """Logger for events that need a human: alert on ``channel == "operator"``."""
    return structlog.get_logger(OPERATOR_CHANNEL).bind(channel="operator")
