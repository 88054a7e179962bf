import logging
import re

import structlog

_SECRET_PATTERN = re.compile(r"sk-[A-Za-z0-9]{10,}")
_REDACTED = "sk-***REDACTED***"


def redact_secrets(_logger, _method_name, event_dict):
    """
    masks OpenAI-style API keys in every string value of the event.
    """
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _SECRET_PATTERN.sub(_REDACTED, value)
    return event_dict


def setup_logging(level: "str", json_output: "bool" = False) -> "None":
    """
    maps string log level to logging module levels and configures
    structlog with timestamping, secret redaction and either a console
    or a JSON renderer.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
