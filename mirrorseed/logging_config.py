import sys
from pathlib import Path

from loguru import logger


CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


def configure_logger(level: str = "INFO", log_file: str | Path | None = None):
    """
    Configure loguru for a seeding run.

    Progress goes to stderr, leaving stdout for the JSON run summary. The
    optional file sink rotates like the rest of our batch jobs.
    """
    # Remove default handler to avoid duplicate logs
    logger.remove()

    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            path,
            rotation="10 MB",
            retention="10 days",
            level=level,
            format=FILE_FORMAT,
            backtrace=True,
            diagnose=False,
        )
