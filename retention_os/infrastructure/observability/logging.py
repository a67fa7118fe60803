"""
structlog configuration shared by the API process and the worker.

Production emits one JSON object per line on stdout. Development gets the
console renderer. Both merge request-scoped contextvars and tag entries
with the service name.
"""

import logging
import sys

import structlog

from retention_os.config import settings

SERVICE_NAME = "retention-engine"

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _add_service(logger, method_name, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def setup_logging(log_level: str = "INFO", json_logs: bool | None = None) -> None:
    """
    Configure structlog over the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_logs: force the renderer; defaults to JSON outside development
    """
    if json_logs is None:
        json_logs = settings.environment != "development"

    if json_logs:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderers = [structlog.dev.ConsoleRenderer()]
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_service,
            *renderers,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level.upper())
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_request(
    method: str, path: str, status_code: int, duration_ms: float, api_key_id: str | None = None
) -> None:
    """One access-log line per request; level follows the status class."""
    fields = {"method": method, "path": path, "status_code": status_code, "duration_ms": duration_ms}
    if api_key_id:
        fields["api_key_id"] = api_key_id

    http_logger = get_logger("http")
    if status_code >= 500:
        http_logger.error("HTTP request failed", **fields)
    elif status_code >= 400:
        http_logger.warning("HTTP request rejected", **fields)
    else:
        http_logger.info("HTTP request completed", **fields)
