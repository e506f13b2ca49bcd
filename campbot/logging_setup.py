import asyncio
import logging
import logging.handlers
import os

from campbot.config import LOG_DIR
from campbot.errors import is_destroyed_connection_crash

logger = logging.getLogger("campbot")


def configure_logging() -> None:
    log_level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    log_level = getattr(logging, log_level_name, logging.INFO)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    stdout_handler = logging.StreamHandler()
    stdout_handler.setFormatter(formatter)
    file_handler = logging.handlers.RotatingFileHandler(
        LOG_DIR / "campbot.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)
    root_logger.addHandler(stdout_handler)
    root_logger.addHandler(file_handler)
    logger.info("logging_configured level=%s", logging.getLevelName(log_level))


def register_loop_exception_handler(loop: asyncio.AbstractEventLoop) -> None:
    if getattr(loop, "_campbot_exception_handler_installed", False):
        return
    default_handler = loop.get_exception_handler()

    def _loop_exception_handler(active_loop: asyncio.AbstractEventLoop, context: dict[str, object]) -> None:
        message = context.get("message", "Unhandled asyncio loop exception")
        exception = context.get("exception")
        if isinstance(exception, BaseException) and is_destroyed_connection_crash(exception):
            # reconnect path already owns this; do not let it surface as a crash
            logger.warning("loop_exception_suppressed message=%s error=%s", message, exception)
            return
        if exception is not None:
            logger.exception("loop_exception message=%s context=%r", message, context, exc_info=exception)
        else:
            logger.error("loop_exception message=%s context=%r", message, context)
        if default_handler is not None:
            default_handler(active_loop, context)
        else:
            active_loop.default_exception_handler(context)

    loop.set_exception_handler(_loop_exception_handler)
    setattr(loop, "_campbot_exception_handler_installed", True)
    logger.info("loop_exception_handler_registered")
