"""Logging framework for specexec.
Provides structured logging with configurable verbosity. Units log from
worker threads, so every write to the stream and to the entry history is
serialised by a lock.
Categories used by the engine:
    loader    specification validation and load-time probes
    hooks     hook registration and firing
    runner    unit lifecycle and verdicts
    solver    solver queries
    batch     scheduling, global timeout
"""

from __future__ import annotations

import logging
import os
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, TextIO


class LogLevel(IntEnum):
    """Log levels for specexec."""

    QUIET = 0
    NORMAL = 1
    VERBOSE = 2
    DEBUG = 3
    TRACE = 4


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    GRAY = "\033[90m"


VERDICT_COLORS = {
    "PROVED": Colors.GREEN,
    "REFUTED": Colors.RED,
    "VACUOUS": Colors.YELLOW,
    "UNKNOWN": Colors.MAGENTA,
    "ERROR": Colors.RED,
}


def supports_color(stream: TextIO) -> bool:
    """Check if the stream supports ANSI colors."""
    if not hasattr(stream, "isatty") or not stream.isatty():
        return False
    if os.environ.get("NO_COLOR"):
        return False
    if sys.platform == "win32":
        return bool(os.environ.get("TERM") or "ANSICON" in os.environ)
    return True


@dataclass
class LogEntry:
    """A log entry with metadata."""

    level: LogLevel
    message: str
    category: str = "general"
    timestamp: float = field(default_factory=time.time)
    thread: str = field(default_factory=lambda: threading.current_thread().name)
    context: dict[str, Any] = field(default_factory=dict)

    def format(self, color: bool = True, show_time: bool = True) -> str:
        """Format the log entry for display."""
        parts = []
        if show_time:
            stamp = time.strftime("%H:%M:%S", time.localtime(self.timestamp))
            parts.append(f"{Colors.GRAY}{stamp}{Colors.RESET}" if color else stamp)
        marker = self._level_str(color)
        if marker:
            parts.append(marker)
        if self.category != "general":
            tag = f"[{self.category}]"
            parts.append(f"{Colors.CYAN}{tag}{Colors.RESET}" if color else tag)
        parts.append(self.message)
        return " ".join(parts)

    def _level_str(self, color: bool) -> str:
        if self.level == LogLevel.QUIET:
            return ""
        indicators = {
            LogLevel.NORMAL: ("•", Colors.WHITE),
            LogLevel.VERBOSE: ("→", Colors.BLUE),
            LogLevel.DEBUG: ("⚙", Colors.MAGENTA),
            LogLevel.TRACE: ("⋯", Colors.GRAY),
        }
        char, col = indicators.get(self.level, ("", ""))
        return f"{col}{char}{Colors.RESET}" if color else char


class SpecExecLogger:
    """Main logger for specexec."""

    def __init__(
        self,
        level: LogLevel = LogLevel.NORMAL,
        color: bool = True,
        stream: TextIO | None = None,
        file_path: Path | None = None,
        max_entries: int = 10000,
    ):
        self.level = level
        self._stream = stream or sys.stderr
        self._color = color and supports_color(self._stream)
        self._file_handle: TextIO | None = None
        self._entries: list[LogEntry] = []
        self._max_entries = max_entries
        self._counters: dict[str, int] = {}
        self._lock = threading.RLock()
        if file_path is not None:
            self.open_file(file_path)

    def set_level(self, level: LogLevel) -> None:
        self.level = level

    def _should_log(self, level: LogLevel) -> bool:
        return level <= self.level

    def _write(self, text: str) -> None:
        self._stream.write(text + "\n")
        self._stream.flush()

    def _emit(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                del self._entries[: len(self._entries) - self._max_entries]
            if self._should_log(entry.level):
                self._write(entry.format(color=self._color))
                if self._file_handle:
                    self._file_handle.write(entry.format(color=False) + "\n")
                    self._file_handle.flush()

    def log(self, level: LogLevel, message: str, category: str = "general", **context: Any) -> None:
        """Log a message at the specified level."""
        self._emit(LogEntry(level=level, message=message, category=category, context=context))

    def info(self, message: str, **context: Any) -> None:
        self.log(LogLevel.NORMAL, message, **context)

    def verbose(self, message: str, **context: Any) -> None:
        self.log(LogLevel.VERBOSE, message, **context)

    def debug(self, message: str, **context: Any) -> None:
        self.log(LogLevel.DEBUG, message, **context)

    def trace(self, message: str, **context: Any) -> None:
        self.log(LogLevel.TRACE, message, **context)

    def warning(self, message: str, category: str = "general") -> None:
        """Log a warning (shown unless QUIET)."""
        with self._lock:
            self._entries.append(LogEntry(LogLevel.NORMAL, message, category))
            if self._should_log(LogLevel.NORMAL):
                prefix = f"{Colors.YELLOW}⚠{Colors.RESET}" if self._color else "⚠"
                self._write(f"{prefix} {message}")

    def error(self, message: str, category: str = "general") -> None:
        """Log an error message (always shown)."""
        with self._lock:
            self._entries.append(LogEntry(LogLevel.QUIET, message, category))
            prefix = f"{Colors.RED}✗{Colors.RESET}" if self._color else "✗"
            self._write(f"{prefix} {message}")

    def verdict(self, item: str, verdict: str, detail: str = "") -> None:
        """Report the verdict of a specification item."""
        message = f"{item}: {verdict}" + (f" ({detail})" if detail else "")
        with self._lock:
            self._entries.append(LogEntry(LogLevel.NORMAL, message, "runner"))
            if not self._should_log(LogLevel.NORMAL):
                return
            if self._color:
                col = VERDICT_COLORS.get(verdict, Colors.WHITE)
                message = f"{item}: {Colors.BOLD}{col}{verdict}{Colors.RESET}" + (
                    f" {Colors.DIM}({detail}){Colors.RESET}" if detail else ""
                )
            self._write(message)

    def header(self, message: str) -> None:
        if not self._should_log(LogLevel.NORMAL):
            return
        with self._lock:
            if self._color:
                self._write(f"\n{Colors.BOLD}{Colors.CYAN}{message}{Colors.RESET}")
                self._write(f"{Colors.CYAN}{'─' * len(message)}{Colors.RESET}")
            else:
                self._write(f"\n{message}\n{'─' * len(message)}")

    @contextmanager
    def timer(self, name: str, category: str = "timing"):
        """Context manager for timing operations (logged at TRACE)."""
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start
            self.trace(f"{name}: {elapsed:.3f}s", category=category)

    def count(self, name: str, increment: int = 1) -> int:
        """Increment a counter and return new value."""
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + increment
            return self._counters[name]

    def get_count(self, name: str) -> int:
        return self._counters.get(name, 0)

    def get_entries(self, level: LogLevel | None = None, category: str | None = None) -> list[LogEntry]:
        """Get logged entries, optionally filtered."""
        with self._lock:
            entries = list(self._entries)
        if level is not None:
            entries = [e for e in entries if e.level == level]
        if category is not None:
            entries = [e for e in entries if e.category == category]
        return entries

    def open_file(self, path: Path) -> None:
        """Mirror log output to a file."""
        self._file_handle = open(path, "w", encoding="utf-8")

    def close(self) -> None:
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None


_logger: SpecExecLogger | None = None
_logger_lock = threading.Lock()


def get_logger() -> SpecExecLogger:
    """Get the global logger instance."""
    global _logger
    with _logger_lock:
        if _logger is None:
            _logger = SpecExecLogger()
        return _logger


def set_logger(logger: SpecExecLogger) -> None:
    """Set the global logger instance."""
    global _logger
    with _logger_lock:
        _logger = logger


def configure_logging(
    level: LogLevel = LogLevel.NORMAL,
    color: bool = True,
    file_path: Path | None = None,
    stream: TextIO | None = None,
) -> SpecExecLogger:
    """Configure and return the global logger."""
    logger = SpecExecLogger(level=level, color=color, stream=stream, file_path=file_path)
    set_logger(logger)
    return logger


class PythonLoggingBridge(logging.Handler):
    """Route records of the ``specexec`` stdlib logger into SpecExecLogger."""

    def __init__(self, target: SpecExecLogger):
        super().__init__()
        self.target = target
        self._level_map = {
            logging.DEBUG: LogLevel.DEBUG,
            logging.INFO: LogLevel.NORMAL,
        }

    def emit(self, record: logging.LogRecord) -> None:
        message = self.format(record)
        if record.levelno >= logging.ERROR:
            self.target.error(message, category="python")
        elif record.levelno >= logging.WARNING:
            self.target.warning(message, category="python")
        else:
            level = self._level_map.get(record.levelno, LogLevel.NORMAL)
            self.target.log(level, message, category="python")


def setup_python_logging(level: int = logging.INFO) -> None:
    """Send the ``specexec`` stdlib logger hierarchy through the global logger."""
    logger = logging.getLogger("specexec")
    logger.setLevel(level)
    logger.addHandler(PythonLoggingBridge(get_logger()))


__all__ = [
    "LogLevel",
    "LogEntry",
    "Colors",
    "SpecExecLogger",
    "get_logger",
    "set_logger",
    "configure_logging",
    "PythonLoggingBridge",
    "setup_python_logging",
    "supports_color",
]
