"""Logging configuration for the chainctl package."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(
    level: str = "INFO",
    debug_mode: bool = False,
    log_file: Optional[str] = None,
    max_size_mb: int = 20,
    backup_count: int = 3,
) -> logging.Logger:
    """
    Configure the ``chainctl`` logger hierarchy.

    Args:
        level: Logging level name used when debug mode is off
        debug_mode: Force DEBUG level
        log_file: Optional path of a rotating log file
        max_size_mb: Maximum log file size before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The configured ``chainctl`` root logger
    """
    log_level = logging.DEBUG if debug_mode else getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger("chainctl")
    logger.setLevel(log_level)

    # Don't add handlers if they're already configured
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(handler)

        if log_file:
            path = Path(log_file).expanduser().absolute()
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                filename=path,
                maxBytes=max_size_mb * 1024 * 1024,
                backupCount=backup_count,
            )
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(file_handler)
            logger.debug(f"Logging to file: {path}")

    for handler in logger.handlers:
        handler.setLevel(log_level)

    # Disable debug logging for noisy libraries
    if not debug_mode:
        logging.getLogger('urllib3').setLevel(logging.WARNING)

    return logger
