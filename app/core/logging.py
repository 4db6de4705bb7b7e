import logging
import re
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

# Webhook signatures, provider credentials and tokens must never reach log sinks.
SECRET_KEY_RE = re.compile(
    r"secret|token|password|api[_-]?key|authorization|signature|transmission[_-]?sig",
    re.IGNORECASE,
)
SECRET_VALUE_RES = (
    re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"\b(?:sk|pk)_(?:live|test)_[A-Za-z0-9]{8,}"),
)
REDACTED_VALUE = "[REDACTED]"
_MAX_DEPTH = 8


def _redact(value: Any, depth: int = 0) -> Any:
    if depth > _MAX_DEPTH:
        return value
    if isinstance(value, dict):
        return {
            key: REDACTED_VALUE
            if isinstance(key, str) and SECRET_KEY_RE.search(key)
            else _redact(item, depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item, depth + 1) for item in value]
    if isinstance(value, str):
        for pattern in SECRET_VALUE_RES:
            value = pattern.sub(REDACTED_VALUE, value)
    return value


def redact_secrets(
    logger: Any,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    del logger, method_name
    for key, value in list(event_dict.items()):
        if key != "event" and SECRET_KEY_RE.search(key):
            event_dict[key] = REDACTED_VALUE
        else:
            event_dict[key] = _redact(value)
    return event_dict


def configure_logging(log_level: str = "INFO") -> None:
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
    # SQLAlchemy echoes every statement at INFO on the engine logger.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            timestamper,
            redact_secrets,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
