"""
Logging configuration for the tunnel server.
Sets up logging with console and rotating file handlers.
"""
import os
import sys
import logging
import logging.handlers
from typing import Optional


DEFAULT_FORMAT = '%(asctime)s - %(name)s - [%(process)d:%(threadName)s] - %(levelname)s - %(message)s'


def setup_logging(
    app_name: str,
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_to_console: bool = True,
    log_format: Optional[str] = None,
    max_size: int = 10485760,  # 10 MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure logging for the application

    Handlers go on the root logger so that the component loggers
    ("tunnel", "session", "linux", ...) share them.

    Args:
        app_name: Name of the application logger
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (None for no file logging)
        log_to_console: Whether to log to console
        log_format: Custom log format (None for default)
        max_size: Maximum log file size in bytes
        backup_count: Number of backup log files

    Returns:
        The application logger
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicate logging
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(log_format or DEFAULT_FORMAT)

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    logger = logging.getLogger(app_name)

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_size,
                backupCount=backup_count
            )
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

            logger.info(f"Logging to file: {log_file}")
        except OSError as e:
            logger.error(f"Failed to setup file logging: {e}")

    logger.info(f"Logging initialized for {app_name} at level {log_level}")
    return logger
