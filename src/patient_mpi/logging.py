"""
Structured Logging

structlog setup for the MPI engine: ISO timestamps, log level, logger
name, and a processor that drops demographic values before rendering.
"""

import logging
import sys
from typing import Any

import structlog

REDACTED = "[REDACTED]"

# Event keys whose values are patient demographics and must never be logged.
PHI_KEYS = frozenset({
    "first_name", "last_name", "middle_name",
    "first_name_normalized", "last_name_normalized", "middle_name_normalized",
    "date_of_birth", "dob", "ssn", "ssn_last_four",
    "phone", "phone_normalized", "email", "email_normalized",
    "address", "address_normalized", "city", "city_normalized", "zip_code",
    "demographics", "criteria",
})


def phi_scrub_processor(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor replacing PHI values with a redaction marker."""
    for key in PHI_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def configure_logging(level: str = "INFO", json: bool = True) -> None:
    """Configure stdlib logging and structlog for the process."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            phi_scrub_processor,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
