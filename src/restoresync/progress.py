"""Two-line terminal progress: the pair being worked on above a tqdm meter."""

import shutil
import sys
import threading
import time
import unicodedata

from tqdm import tqdm


def _char_width(ch: str) -> int:
    if unicodedata.combining(ch):
        return 0
    if unicodedata.east_asian_width(ch) in ("W", "F", "A"):
        return 2
    return 1


def display_width(text: str) -> int:
    return sum(_char_width(ch) for ch in text)


def _take(text: str, max_width: int, from_end: bool = False) -> str:
    chars = reversed(text) if from_end else iter(text)
    width = 0
    out = []
    for ch in chars:
        width += _char_width(ch)
        if width > max_width:
            break
        out.append(ch)
    return "".join(reversed(out) if from_end else out)


def fit(text: str, width: int) -> str:
    """Shorten text to width columns (keeping both ends) and pad it."""
    if width <= 0:
        return ""
    if display_width(text) > width:
        if width <= 3:
            text = _take(text, width)
        else:
            head = width // 2 - 1
            text = f"{_take(text, head)}...{_take(text, width - head - 3, from_end=True)}"
    return text + " " * max(0, width - display_width(text))


class TwoLineProgress:
    """Status line plus tqdm meter, redrawn in place.

    Updates may come from worker threads. Disabled (a no-op) unless stdout
    is a terminal.

    Example:
        with TwoLineProgress(total=len(pairs), prefix="🔁 Syncing", unit="files") as progress:
            progress.update(desc=pair.rel_path, advance=1)
    """

    def __init__(self, total: int, prefix: str = "Processing", unit: str = "files", enabled: bool = None):
        if enabled is None:
            enabled = sys.stdout.isatty()
        self.enabled = enabled
        self.file = sys.stdout
        self.total = total
        self.prefix = prefix
        self.unit = unit
        self.start = time.monotonic()
        self.n = 0
        self.desc = ""
        self._lock = threading.Lock()
        if self.enabled:
            self.file.write("\r\x1b[2K\n\n")
            self.file.flush()

    def _width(self) -> int:
        return max(10, shutil.get_terminal_size((120, 20)).columns - 2)

    def update(self, *, desc: str = None, advance: int = 0) -> None:
        with self._lock:
            if desc is not None:
                self.desc = desc.replace("\n", " ")
            self.n += advance
            if not self.enabled:
                return
            width = self._width()
            meter = tqdm.format_meter(self.n, self.total, max(time.monotonic() - self.start, 1e-9),
                                      ncols=width, prefix=self.prefix, unit=self.unit)
            self.file.write("\x1b[2A\r\x1b[2K" + fit(self.desc, width))
            self.file.write("\x1b[1B\r\x1b[2K" + fit(meter, width))
            self.file.write("\x1b[1B\r")
            self.file.flush()

    def close(self) -> None:
        if self.enabled:
            self.file.write("\x1b[2A\r\x1b[2K\x1b[1B\r")
            self.file.flush()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
