"""
Logging configuration

Every record is stamped with the short id of the chat turn it was logged in,
so the lines of concurrent streams can be told apart. Records logged outside
a turn carry ``-``.
"""
import asyncio
import logging
import sys
import time
from typing import Optional
from pathlib import Path

from ragchat.tracing.rag_trace import get_turn_trace


LOG_FORMAT = "%(asctime)s | %(levelname)-8s | turn=%(turn)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# provider SDK transports log every request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "openai", "sentence_transformers")

LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}


class TurnContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        trace = get_turn_trace()
        record.turn = trace.trace_id[:8] if trace else "-"
        return True


class ColorFormatter(logging.Formatter):
    """Colours the whole line by level; INFO stays plain"""

    def format(self, record):
        line = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        return f"{color}{line}\033[0m" if color else line


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    use_color: bool = True,
) -> None:
    """
    Configure the root logger for the chat service

    Args:
        level: root log level name, unknown names fall back to INFO
        log_file: optional file receiving an uncoloured copy of every record
        use_color: colour console lines when stdout is a TTY
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    turn_filter = TurnContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    formatter_cls = ColorFormatter if use_color and sys.stdout.isatty() else logging.Formatter
    console_handler.setFormatter(formatter_cls(LOG_FORMAT, DATE_FORMAT))
    console_handler.addFilter(turn_filter)
    handlers = [console_handler]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        file_handler.addFilter(turn_filter)
        handlers.append(file_handler)

    root_logger.handlers = handlers

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class OperationLogger:
    """
    Times one pipeline stage and logs its outcome

    Usable with ``with`` or ``async with``. Cancellation is logged at INFO
    because a client abort is not a failure.
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.INFO):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.elapsed_ms: Optional[float] = None
        self._started: float = 0.0

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed_ms = (time.perf_counter() - self._started) * 1000
        if exc_type is None:
            self.logger.log(self.level, f"{self.operation} took {self.elapsed_ms:.1f}ms")
        elif issubclass(exc_type, asyncio.CancelledError):
            self.logger.info(f"{self.operation} cancelled after {self.elapsed_ms:.1f}ms")
        else:
            self.logger.error(f"{self.operation} failed after {self.elapsed_ms:.1f}ms: {exc_val}")
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)
