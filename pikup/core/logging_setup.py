# pikup/core/logging_setup.py
import json
import logging
import sys

from loguru import logger

from pikup.core.config import Settings, get_settings

SERVICE_NAME = "pikup-client"


def serialize_record(record) -> str:
    """Flatten a loguru record into one JSON line."""
    subset = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "service": SERVICE_NAME,
        "logger": record["name"],
        "function": record["function"],
        "line": record["line"],
    }
    subset.update(record["extra"])
    if record["exception"]:
        exc_type, exc_value, _ = record["exception"]
        subset["exception"] = {"type": exc_type.__name__ if exc_type else None, "value": str(exc_value)}
    return json.dumps(subset, default=str)


def _json_sink(message):
    print(serialize_record(message.record), file=sys.stderr)


class InterceptHandler(logging.Handler):
    """Routes standard logging records (httpx, asyncio) into loguru."""

    def emit(self, record: logging.LogRecord):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(settings: Settings | None = None):
    settings = settings or get_settings()
    level = settings.log_level.upper()

    logger.remove()
    if settings.log_json:
        logger.add(_json_sink, level=level)
    else:
        logger.add(
            sys.stderr,
            level=level,
            format="<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {name}:{function} - {message} | {extra}",
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("httpx").setLevel(logging.WARNING if level != "DEBUG" else logging.INFO)
    logger.debug(f"Logging configured. Level: {level}")
