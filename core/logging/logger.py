import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union


# Global set to track configured loggers and prevent duplicate handlers
_configured_loggers = set()

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(
    name: str,
    log_file: Optional[str] = None,
    level: Optional[Union[int, str]] = None,
    console: bool = True,
    log_dir: Optional[str] = None
):
    """
    Setup a logger with rotating file handler and console handler.

    Configuring a package logger ("core", "backend") covers every module
    logger below it.

    Args:
        name: Logger name (will write to <log_dir>/<name>.log by default)
        log_file: Optional custom log file path
        level: Logging level (defaults to config.settings.LOG_LEVEL)
        console: Whether to add console handler
        log_dir: Directory for the default log file (defaults to config.settings.LOG_DIR)

    Returns:
        Configured logger instance
    """
    # Import here to avoid circular imports
    try:
        from config.settings import LOG_LEVEL, LOG_DIR
    except ImportError:
        LOG_LEVEL, LOG_DIR = "INFO", "logs"

    # Convert string level to int if needed
    if level is None:
        level = getattr(logging, LOG_LEVEL.upper(), logging.INFO)
    elif isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    # Create logger
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Prevent adding duplicate handlers if logger was already configured
    if name in _configured_loggers:
        return logger

    # Set propagate to False to prevent root logger duplication
    logger.propagate = False

    # Set up file handler with rotation (10MB, 5 backups)
    if log_file is None:
        logs_dir = Path(log_dir or LOG_DIR)
        logs_dir.mkdir(parents=True, exist_ok=True)
        log_file = logs_dir / f"{name}.log"
    else:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        str(log_file),
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler.setLevel(level)
    logger.addHandler(file_handler)

    # Add console handler if requested
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        console_handler.setLevel(level)
        logger.addHandler(console_handler)

    # Mark logger as configured to prevent duplicate handlers
    _configured_loggers.add(name)

    return logger
