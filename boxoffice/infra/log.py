import sys

from loguru import logger

from ..config import LOG_DIR, LOG_LEVEL

log_format = " | ".join(
    (
        "<lk>{time:YYYY-MM-DD HH:mm:ss.SSS}</>",
        "<lvl>{level:<8}</>",
        "<c>{name}::{function}:{line}</>",
        "{message}",
    )
)


def configure_logging(level: str = LOG_LEVEL, log_dir: str = LOG_DIR) -> None:
    # drop loguru's default stderr handler so records are not duplicated
    logger.remove()
    logger.add(sys.stdout, format=log_format, level=level)
    if log_dir:
        logger.add(
            f"{log_dir}/boxoffice_{{time:YYYY-MM-DD}}.log",
            format=log_format,
            level=level,
            rotation="1 day",
            retention="30 days",
            compression="zip",
            enqueue=True,
        )


def short_token(token: str) -> str:
    # never put a full scan token into the logs
    return f"{token[:8]}..." if token else "<empty>"
