"""
Logging configuration for MarketPulse
Console logging with color support and per-logger structured context
"""

import copy
import functools
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
import colorama
from colorama import Fore, Style

# Initialize colorama for Windows support
colorama.init()

LOG_COLORS = {
    'DEBUG': Fore.CYAN,
    'INFO': Fore.GREEN,
    'WARNING': Fore.YELLOW,
    'ERROR': Fore.RED,
    'CRITICAL': Fore.MAGENTA
}


class ColoredFormatter(logging.Formatter):
    """Formatter that colors level and logger name on a TTY"""

    def __init__(self, fmt=None, datefmt=None, use_colors=True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record):
        # Work on a copy so file handlers keep the plain level name
        record = copy.copy(record)
        if self.use_colors and record.levelname in LOG_COLORS:
            record.levelname = f"{LOG_COLORS[record.levelname]}{record.levelname}{Style.RESET_ALL}"
            record.name = f"{Fore.BLUE}{record.name}{Style.RESET_ALL}"

        record.timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

        context = getattr(record, 'context', None)
        message = super().format(record)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())
            message = f"{message} [{pairs}]"
        return message


class StructuredLogger:
    """Wrapper for structured logging with context"""

    def __init__(self, logger: logging.Logger, context: Optional[Dict[str, Any]] = None):
        self.logger = logger
        self.context = dict(context or {})

    def add_context(self, **kwargs):
        """Add persistent context to all log messages"""
        self.context.update(kwargs)

    def clear_context(self):
        self.context = {}

    def bind(self, **kwargs) -> 'StructuredLogger':
        """Child logger sharing the handler with extra context"""
        return StructuredLogger(self.logger, {**self.context, **kwargs})

    def _log(self, level, msg, *args, **kwargs):
        extra = dict(kwargs.pop('extra', None) or {})
        merged = {**self.context, **extra}
        if merged:
            kwargs['extra'] = {'context': merged}
        getattr(self.logger, level)(msg, *args, **kwargs)

    def debug(self, msg, *args, **kwargs):
        self._log('debug', msg, *args, **kwargs)

    def info(self, msg, *args, **kwargs):
        self._log('info', msg, *args, **kwargs)

    def warning(self, msg, *args, **kwargs):
        self._log('warning', msg, *args, **kwargs)

    def error(self, msg, *args, **kwargs):
        self._log('error', msg, *args, **kwargs)

    def exception(self, msg, *args, **kwargs):
        kwargs.setdefault('exc_info', True)
        self._log('error', msg, *args, **kwargs)

    def critical(self, msg, *args, **kwargs):
        self._log('critical', msg, *args, **kwargs)


def setup_logger(
    name: str,
    level: Optional[str] = None,
    log_file: Optional[Path] = None,
    use_colors: bool = True
) -> StructuredLogger:
    """
    Set up a logger with console and optional file output

    Args:
        name: Logger name (usually __name__)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for logging
        use_colors: Whether to use colored output

    Returns:
        StructuredLogger instance
    """
    from ..config.settings import get_config

    if level is None:
        level = get_config().system.log_level

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Replace handlers so repeated setup does not duplicate output
    logger.handlers = []

    console_handler = logging.StreamHandler(sys.stderr)
    console_format = "%(timestamp)s [%(levelname)s] %(name)s: %(message)s"
    console_handler.setFormatter(ColoredFormatter(console_format, use_colors=use_colors))
    logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setFormatter(ColoredFormatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s", use_colors=False
        ))
        logger.addHandler(file_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return StructuredLogger(logger)


def get_logger(name: str) -> StructuredLogger:
    """Get or create a logger instance"""
    return setup_logger(name)


def log_async_performance(logger: Optional[StructuredLogger] = None):
    """Decorator to log async function duration"""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            log = logger or get_logger(func.__module__)
            start_time = time.perf_counter()
            log.debug(f"Starting async {func.__name__}")

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                elapsed = time.perf_counter() - start_time
                log.error(
                    f"Failed async {func.__name__}: {e}",
                    extra={'duration_ms': int(elapsed * 1000)}
                )
                raise

            elapsed = time.perf_counter() - start_time
            log.info(
                f"Completed async {func.__name__}",
                extra={'duration_ms': int(elapsed * 1000)}
            )
            return result

        return wrapper
    return decorator
