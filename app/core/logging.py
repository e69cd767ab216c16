import logging
import sys

import structlog

SERVICE_NAME = "section-studio"


def _add_service(logger, method_name, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def configure_logging(debug: bool = False, json_logs: bool | None = None, db_echo: bool = False) -> None:
    """Console output in debug, one JSON object per line otherwise (override with json_logs)."""
    log_level = logging.DEBUG if debug else logging.INFO
    render_json = (not debug) if json_logs is None else json_logs
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    # SQLAlchemy logs through stdlib
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if db_echo else logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_service,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks if render_json else structlog.dev.set_exc_info,
            structlog.processors.JSONRenderer() if render_json else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def bind_request_id(request_id: str) -> None:
    # One request per context; drop whatever the previous request bound
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)


def bind_account_id(account_id: int) -> None:
    structlog.contextvars.bind_contextvars(account_id=account_id)
