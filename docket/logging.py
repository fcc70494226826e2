import logging

import structlog

from docket.config import settings

# Applied to records from plain ``logging.getLogger(__name__)`` loggers.
_PRE_CHAIN = [
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.stdlib.ExtraAdder(),
]


def build_formatter(fmt: str | None = None) -> logging.Formatter:
    if (fmt or settings.log_format) == "json":
        return structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_PRE_CHAIN,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
        )
    return logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(build_formatter(fmt))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    # SQLAlchemy echoes every statement at INFO otherwise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
