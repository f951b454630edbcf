import sys

from loguru import logger

from leadflow.config import Settings


def configure_logging(settings: Settings) -> None:
    """Route loguru output to stderr and, optionally, a rotating log file."""
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())

    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation="1 day",
            retention="7 days",
            level=settings.log_level.upper(),
        )

    logger.debug(f"Logging configured (level={settings.log_level})")
