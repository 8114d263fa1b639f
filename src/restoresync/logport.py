"""Log capability: indentation-leveled, multi-part messages."""

import threading
from dataclasses import dataclass
from typing import List

from rich.console import Console

ICONS = {
    "info": "ℹ️ ",
    "success": "✅",
    "warning": "⚠️ ",
    "error": "❌",
}


class LogPort:
    """Receives log messages from the engine.

    level is an indentation depth (0 = top level); parts are joined with no
    separator, so callers pass ("Copied ", path, " to ", other).
    """

    def log(self, level: int, *parts, severity: str = "info") -> None:
        raise NotImplementedError

    def info(self, level: int, *parts) -> None:
        self.log(level, *parts, severity="info")

    def success(self, level: int, *parts) -> None:
        self.log(level, *parts, severity="success")

    def warning(self, level: int, *parts) -> None:
        self.log(level, *parts, severity="warning")

    def error(self, level: int, *parts) -> None:
        self.log(level, *parts, severity="error")


def format_message(level: int, parts, severity: str = "info") -> str:
    icon = ICONS.get(severity, ICONS["info"])
    return f"{'  ' * max(level, 0)}{icon} {''.join(str(p) for p in parts)}"


class ConsoleLog(LogPort):
    """LogPort that prints emoji-prefixed lines through a rich Console."""

    def __init__(self, console: Console = None, verbose: bool = True):
        self.console = console or Console(highlight=False)
        self.verbose = verbose

    def log(self, level: int, *parts, severity: str = "info") -> None:
        if severity == "info" and not self.verbose and level > 0:
            return
        self.console.print(format_message(level, parts, severity), markup=False, highlight=False)


@dataclass
class LogRecord:
    level: int
    severity: str
    message: str


class MemoryLog(LogPort):
    """LogPort that keeps records in memory (tests, reports)."""

    def __init__(self):
        self.records: List[LogRecord] = []
        self._lock = threading.Lock()

    def log(self, level: int, *parts, severity: str = "info") -> None:
        with self._lock:
            self.records.append(LogRecord(level, severity, "".join(str(p) for p in parts)))

    def messages(self, severity: str = None) -> List[str]:
        return [r.message for r in self.records if severity is None or r.severity == severity]

    def contains(self, text: str, severity: str = None) -> bool:
        return any(text in m for m in self.messages(severity))
