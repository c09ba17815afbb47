import logging
import sys
from typing import Optional

import structlog

from config import get_settings


def configure_logging(level: Optional[str] = None, as_json: Optional[bool] = None) -> None:
    """
    route structlog through stdlib logging.
    level / as_json default to the REFERRAL_LOG_LEVEL / REFERRAL_LOG_JSON settings.
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()
    as_json = settings.log_json if as_json is None else as_json

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if as_json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    formatter = structlog.stdlib.ProcessorFormatter(processor=renderer)

    for handler in logging.root.handlers:
        handler.setFormatter(formatter)
