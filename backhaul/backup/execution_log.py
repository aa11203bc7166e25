"""
Per-run execution log shown to operators alongside each history entry.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Iterable, List, Optional


class ExecutionLog:
    """
    Accumulates timestamped lines for one run or destination.

    Lines are mirrored to the given module logger. Any string in ``redact``
    is replaced by ``****`` before it is recorded.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, redact: Iterable[str] = ()):
        self._lines: List[str] = []
        self._lock = threading.Lock()
        self._logger = logger or logging.getLogger(__name__)
        self._redact = [value for value in redact if value]

    def add_redaction(self, value: Optional[str]):
        if value:
            self._redact.append(value)

    def _scrub(self, message: str) -> str:
        for secret in self._redact:
            message = message.replace(secret, '****')
        return message

    def log(self, message: str, level: int = logging.INFO):
        """Append a line stamped with the current UTC time."""
        message = self._scrub(message)
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
        with self._lock:
            self._lines.append(f"[{timestamp}] {message}")
        self._logger.log(level, message)

    def error(self, message: str):
        self.log(f"ERROR: {message}", level=logging.ERROR)

    def extend(self, text: Optional[str]):
        """Append already-formatted lines, e.g. another log's output."""
        if not text:
            return
        with self._lock:
            self._lines.extend(self._scrub(line) for line in text.splitlines())

    def output(self, text: str, prefix: str = ''):
        """Record captured tool output, one log line per non-empty line."""
        for line in (text or '').splitlines():
            line = line.rstrip()
            if line:
                self.log(f"{prefix}{line}")

    @property
    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def __str__(self):
        return '\n'.join(self.lines)

    def __len__(self):
        return len(self._lines)
