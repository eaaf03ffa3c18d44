"""
Unified logging for the gateway.

Loguru replaces the standard ``logging`` handlers; uvicorn and fastapi records
are intercepted so the whole process writes through one set of sinks.
"""
import logging
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .config import LoggingConfig


class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk out of the logging module so file:line point at the caller
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logger(cfg: Optional[LoggingConfig] = None):
    """
    Configure the global logger.

    :param cfg: logging section of the gateway config; defaults apply when omitted
    """
    cfg = cfg or LoggingConfig()

    logger.remove()

    logger.add(
        sys.stderr,
        level=cfg.level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    )

    if cfg.file_enabled:
        log_dir = Path(cfg.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_dir / "gateway.log"),
            rotation="00:00",
            retention="10 days",
            compression="zip",
            enqueue=True,
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {extra} | {message}",
        )
        logger.add(
            str(log_dir / "error.log"),
            rotation="10 MB",
            retention="30 days",
            level="ERROR",
            backtrace=True,
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi"):
        mod_logger = logging.getLogger(logger_name)
        mod_logger.handlers = [InterceptHandler()]
        mod_logger.propagate = False

    logger.info("Logging initialized (level={})", cfg.level)
    return logger
