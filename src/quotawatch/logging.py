import logging

import structlog


def setup_logging(level: "str") -> "None":
    """
    routes quotawatch's structlog events through stdlib logging at the
    --log.level threshold, with ISO timestamps and console output.
    Unknown level names fall back to info. The httpx logger never
    drops below warning, so usage and token endpoint URLs are not
    logged once per request.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
    )
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
