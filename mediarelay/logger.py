"""Leveled logging to standard output, a file or the system log."""

from __future__ import annotations

import enum
import os
import sys
import threading
from datetime import datetime
from typing import Iterable

try:
    import syslog as _syslog
except ImportError:  # not available on Windows
    _syslog = None

SYSLOG_IDENT = "mediarelay"


class Level(enum.IntEnum):
    """Severity of a log entry."""

    DEBUG = 1
    INFO = 2
    WARN = 3
    ERROR = 4


class Destination(enum.Enum):
    """Where log entries are written."""

    STDOUT = "stdout"
    FILE = "file"
    SYSLOG = "syslog"


_GRAY = "90"
_LEVEL_STYLES = {
    Level.DEBUG: ("DEB", "36"),
    Level.INFO: ("INF", "32"),
    Level.WARN: ("WAR", "33"),
    Level.ERROR: ("ERR", "31"),
}


def _render(code: str, text: str) -> str:
    return f"\x1b[{code}m{text}\x1b[0m"


def format_entry(t: datetime, level: Level, message: str, use_color: bool) -> str:
    """Build one log line: date, time, level label and message."""
    stamp = (
        f"{t.year:04d}/{t.month:02d}/{t.day:02d} "
        f"{t.hour:02d}:{t.minute:02d}:{t.second:02d} "
    )
    parts = [_render(_GRAY, stamp) if use_color else stamp]

    try:
        label, code = _LEVEL_STYLES[Level(level)]
    except ValueError:
        label, code = "", ""
    if label:
        parts.append(_render(code, label) if use_color else label)
    parts.append(" ")

    parts.append(message)
    parts.append("\n")
    return "".join(parts)


class _StdoutDestination:
    def __init__(self) -> None:
        try:
            self._use_color = sys.stdout.isatty()
        except (AttributeError, ValueError):
            self._use_color = False

    def write(self, t: datetime, level: Level, message: str) -> None:
        sys.stdout.write(format_entry(t, level, message, self._use_color))
        sys.stdout.flush()

    def close(self) -> None:
        try:
            sys.stdout.flush()
        except (AttributeError, ValueError):
            pass


class _FileDestination:
    def __init__(self, file_path: str | os.PathLike) -> None:
        fd = os.open(file_path, os.O_APPEND | os.O_CREAT | os.O_WRONLY, 0o644)
        self._file = os.fdopen(fd, "a", encoding="utf-8")

    def write(self, t: datetime, level: Level, message: str) -> None:
        self._file.write(format_entry(t, level, message, False))
        self._file.flush()

    def close(self) -> None:
        self._file.close()


class _SyslogDestination:
    def __init__(self) -> None:
        if _syslog is None:
            raise OSError("syslog is not supported on this platform")
        _syslog.openlog(SYSLOG_IDENT, 0, _syslog.LOG_DAEMON)

    def write(self, t: datetime, level: Level, message: str) -> None:
        entry = format_entry(t, level, message, False).rstrip("\n")
        _syslog.syslog(_syslog.LOG_INFO | _syslog.LOG_DAEMON, entry)

    def close(self) -> None:
        _syslog.closelog()


class Logger:
    """Writes entries at or above a minimum level to a set of destinations."""

    def __init__(
        self,
        level: Level,
        destinations: Iterable[Destination],
        file_path: str | os.PathLike | None = None,
    ) -> None:
        self.level = Level(level)
        self._lock = threading.Lock()
        self._destinations: list = []

        try:
            for dest in destinations:
                dest = Destination(dest)
                if dest is Destination.STDOUT:
                    self._destinations.append(_StdoutDestination())
                elif dest is Destination.FILE:
                    if file_path is None:
                        raise ValueError("a file destination requires a file path")
                    self._destinations.append(_FileDestination(file_path))
                else:
                    self._destinations.append(_SyslogDestination())
        except BaseException:
            self.close()
            raise

    def log(self, level: Level, format: str, *args) -> None:
        """Write a printf-style entry if its level is high enough."""
        if level < self.level:
            return
        message = format % args if args else format

        with self._lock:
            now = datetime.now()
            for dest in self._destinations:
                dest.write(now, Level(level), message)

    def close(self) -> None:
        """Close every destination."""
        for dest in self._destinations:
            dest.close()
        self._destinations = []

    def __enter__(self) -> "Logger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()