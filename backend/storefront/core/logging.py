"""structlog setup shared by the webhook API and the fulfillment worker.

Both processes log one JSON object per line with the same keys, so an event
can be followed from `stripe_webhook_received` on the API through
`job_completed` or `job_dead_lettered` on the worker:
- `service` names the emitting process (storefront-api / storefront-worker)
- `correlation_id` carries the API request's X-Request-ID
- `job_key` / `event_id` / `attempt` are bound by the worker per job
Debug mode switches to the console renderer. Records from uvicorn, SQLAlchemy,
stripe, redis and botocore go through the same formatter.
"""

import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "stripe", "redis", "botocore", "boto3")


def add_correlation_id(logger, method, event_dict):
    """Attach the X-Request-ID of the webhook request being handled, if any."""
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def service_name_adder(service: str):
    """Processor stamping every entry with the emitting process."""

    def add_service_name(logger, method, event_dict):
        event_dict.setdefault("service", service)
        return event_dict

    return add_service_name


def configure_structlog(log_level: str = "INFO", json_logs: bool = True, service: str = "storefront-api") -> None:
    """Configure structlog and route stdlib logging through it.

    Must run before other storefront modules log: structlog caches the
    processor chain on first use.

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: JSON lines (production) or ConsoleRenderer (debug)
        service: Value of the `service` key on every entry
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        service_name_adder(service),
        add_correlation_id,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structlog": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structlog",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
    })

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
