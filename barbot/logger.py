"""
Structured logging for BarBot.

Every entry carries a category and a level, is kept in an in-memory ring
buffer for the /api/logs endpoints, is written to rotating text and JSONL
files, and is forwarded to the standard ``logging`` tree so console output
follows the level configured in settings.yaml.
"""

import os
import json
import logging
import threading
import traceback
from datetime import datetime
from pathlib import Path
from collections import deque
from logging.handlers import RotatingFileHandler
from enum import Enum
from typing import Optional, Dict, Any, List


class LogCategory(str, Enum):
    SYSTEM = "SYSTEM"       # Startup, shutdown, configuration load
    API = "API"             # HTTP requests and responses
    MODBUS = "MODBUS"       # Connection lifecycle, coil reads and writes
    ORDER = "ORDER"         # Command sequences for cocktails
    RESET = "RESET"         # Address reset routine
    EVENTS = "EVENTS"       # SSE sessions and detected transitions
    CONFIG = "CONFIG"       # Modbus settings changes
    ERROR = "ERROR"         # Errors and exceptions


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


LEVEL_MAP = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}

LEVEL_PRIORITY = {level: index for index, level in enumerate(LogLevel)}


class LogEntry:
    """A single structured log record."""

    _counter = 0
    _counter_lock = threading.Lock()

    def __init__(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        source: str = "",
        details: Optional[Dict[str, Any]] = None
    ):
        with LogEntry._counter_lock:
            LogEntry._counter += 1
            self.id = LogEntry._counter

        self.timestamp = datetime.now()
        self.level = level
        self.category = category
        self.message = message
        self.source = source
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "source": self.source,
            "details": self.details
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def __str__(self) -> str:
        ts = self.timestamp.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        src = f"[{self.source}]" if self.source else ""
        return f"{ts} [{self.level.value}] [{self.category.value}] {src} {self.message}"


class LogBuffer:
    """Thread-safe ring buffer of recent entries."""

    def __init__(self, max_size: int = 2000):
        self.max_size = max_size
        self.buffer: deque = deque(maxlen=max_size)
        self.lock = threading.Lock()

    def add(self, entry: LogEntry) -> None:
        with self.lock:
            self.buffer.append(entry)

    def get_filtered(
        self,
        level: Optional[LogLevel] = None,
        category: Optional[LogCategory] = None,
        since_id: Optional[int] = None,
        limit: int = 500
    ) -> List[Dict[str, Any]]:
        """Newest-last list of entries at ``level`` or above."""
        with self.lock:
            result = []
            for entry in reversed(self.buffer):
                if since_id is not None and entry.id <= since_id:
                    continue
                if level is not None and LEVEL_PRIORITY[entry.level] < LEVEL_PRIORITY[level]:
                    continue
                if category is not None and entry.category != category:
                    continue
                result.append(entry.to_dict())
                if len(result) >= limit:
                    break
            return list(reversed(result))

    def clear(self) -> None:
        with self.lock:
            self.buffer.clear()


class BarBotLogger:
    """Process-wide structured logger."""

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._initialized = True
        self.buffer = LogBuffer()
        self._std = logging.getLogger("barbot")
        self.text_handler: Optional[RotatingFileHandler] = None
        self.json_handler: Optional[RotatingFileHandler] = None
        self._setup_file_logging()

    def _setup_file_logging(self) -> None:
        """Open rotating text and JSONL sinks under BARBOT_LOG_DIR."""
        log_dir = Path(os.environ.get("BARBOT_LOG_DIR", Path.cwd() / "logs"))
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            self.text_handler = RotatingFileHandler(
                log_dir / "barbot.log",
                maxBytes=5 * 1024 * 1024,
                backupCount=3,
                encoding="utf-8"
            )
            self.json_handler = RotatingFileHandler(
                log_dir / "barbot.jsonl",
                maxBytes=5 * 1024 * 1024,
                backupCount=3,
                encoding="utf-8"
            )
        except OSError as e:
            # Read-only deployments still get the buffer and console output
            self._std.warning("File logging disabled (%s): %s", log_dir, e)

    def _write(self, handler: Optional[RotatingFileHandler], line: str) -> None:
        if handler is None:
            return
        with self._lock:
            try:
                handler.stream.write(line + "\n")
                handler.stream.flush()
            except (OSError, ValueError) as e:
                self._std.warning("Log file write failed: %s", e)

    def log(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        source: str = "",
        details: Optional[Dict[str, Any]] = None
    ) -> LogEntry:
        entry = LogEntry(level, category, message, source, details)
        self.buffer.add(entry)
        self._write(self.text_handler, str(entry))
        self._write(self.json_handler, entry.to_json())
        self._std.log(LEVEL_MAP[level], "[%s] %s", category.value, message)
        return entry

    def debug(self, category: LogCategory, message: str, source: str = "", details: Dict = None):
        return self.log(LogLevel.DEBUG, category, message, source, details)

    def info(self, category: LogCategory, message: str, source: str = "", details: Dict = None):
        return self.log(LogLevel.INFO, category, message, source, details)

    def warning(self, category: LogCategory, message: str, source: str = "", details: Dict = None):
        return self.log(LogLevel.WARNING, category, message, source, details)

    def error(self, category: LogCategory, message: str, source: str = "", details: Dict = None):
        return self.log(LogLevel.ERROR, category, message, source, details)

    # Category shortcuts
    def system(self, message: str, level: LogLevel = LogLevel.INFO, source: str = "", details: Dict = None):
        return self.log(level, LogCategory.SYSTEM, message, source, details)

    def api(self, message: str, level: LogLevel = LogLevel.INFO, source: str = "", details: Dict = None):
        return self.log(level, LogCategory.API, message, source, details)

    def modbus(self, message: str, level: LogLevel = LogLevel.DEBUG, source: str = "", details: Dict = None):
        return self.log(level, LogCategory.MODBUS, message, source, details)

    def order(self, message: str, level: LogLevel = LogLevel.INFO, source: str = "", details: Dict = None):
        return self.log(level, LogCategory.ORDER, message, source, details)

    def reset(self, message: str, level: LogLevel = LogLevel.INFO, source: str = "", details: Dict = None):
        return self.log(level, LogCategory.RESET, message, source, details)

    def events(self, message: str, level: LogLevel = LogLevel.INFO, source: str = "", details: Dict = None):
        return self.log(level, LogCategory.EVENTS, message, source, details)

    def config(self, message: str, level: LogLevel = LogLevel.INFO, source: str = "", details: Dict = None):
        return self.log(level, LogCategory.CONFIG, message, source, details)

    def get_logs(
        self,
        level: Optional[str] = None,
        category: Optional[str] = None,
        since_id: Optional[int] = None,
        limit: int = 500
    ) -> List[Dict[str, Any]]:
        """Filtered view of the buffer; raises ValueError on unknown level/category."""
        lvl = LogLevel(level) if level else None
        cat = LogCategory(category) if category else None
        return self.buffer.get_filtered(lvl, cat, since_id, limit)

    def clear(self) -> None:
        """Clear the buffer (files are kept)."""
        self.buffer.clear()


logger = BarBotLogger()


def get_logger() -> BarBotLogger:
    """Get the global logger instance."""
    return logger


def log_exception(category: LogCategory, message: str, exception: Exception, source: str = ""):
    """Log an exception with its traceback attached as details."""
    details = {
        "exception_type": type(exception).__name__,
        "exception_message": str(exception),
        "traceback": traceback.format_exc()
    }
    return logger.error(category, f"{message}: {exception}", source, details)


def get_log_categories() -> List[str]:
    return [c.value for c in LogCategory]


def get_log_levels() -> List[str]:
    return [lvl.value for lvl in LogLevel]
