"""
Logging utilities for the novel video agent.

Provides console logging for every stage plus optional daily-rotated log files.
"""

import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler
from typing import Optional


# Track if logging has been set up to avoid duplicate handlers
_logging_configured = False


def setup_logging(
    level: str = "INFO",
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    date_format: str = "%Y-%m-%d %H:%M:%S",
    log_file: Optional[str] = None
) -> None:
    """Set up logging configuration for the project.
    
    Configures the root logger with specified level and format.
    Idempotent - safe to call multiple times.
    
    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR).
        format: Log message format string.
        date_format: Date format for timestamps.
        log_file: Optional path of a daily-rotated log file.
        
    Examples:
        >>> setup_logging(level="DEBUG", log_file="logs/agent.log")
        >>> logger = get_logger(__name__)
        >>> logger.debug("Debug message")
    """
    global _logging_configured
    
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    formatter = logging.Formatter(format, date_format)
    
    if _logging_configured:
        # Already configured, just refresh level and formatter
        for handler in root_logger.handlers:
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
        if log_file and not _has_file_handler(root_logger, log_file):
            root_logger.addHandler(_build_file_handler(log_file, numeric_level, formatter))
        return
    
    root_logger.handlers = []
    
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)
    
    if log_file:
        root_logger.addHandler(_build_file_handler(log_file, numeric_level, formatter))
    
    _logging_configured = True


def _build_file_handler(log_file: str, level: int,
                        formatter: logging.Formatter) -> TimedRotatingFileHandler:
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    
    handler = TimedRotatingFileHandler(
        log_file,
        when='D',           # Daily rotation
        interval=1,
        backupCount=10,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _has_file_handler(root_logger: logging.Logger, log_file: str) -> bool:
    target = os.path.abspath(log_file)
    return any(
        isinstance(h, TimedRotatingFileHandler) and h.baseFilename == target
        for h in root_logger.handlers
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the specified module.
    
    If logging hasn't been set up yet, sets it up with defaults.
    
    Args:
        name: Name of the module/component requesting the logger.
        
    Returns:
        Configured logger instance.
        
    Examples:
        >>> logger = get_logger(__name__)
        >>> logger.info("Starting processing")
    """
    if not _logging_configured:
        setup_logging()
    
    return logging.getLogger(name)
