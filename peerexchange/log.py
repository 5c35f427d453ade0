"""Logging helpers: console setup and a short in-memory tail of recent lines."""

from __future__ import annotations

import collections
import logging
from typing import Deque, List


LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


class RecentLines(logging.Handler):
    """Keeps the last ``size`` formatted records, oldest first."""

    def __init__(self, size: int = 5, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._lines: Deque[str] = collections.deque(maxlen=size)
        self.setFormatter(logging.Formatter("[%(asctime)s] %(message)s", "%H:%M:%S"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._lines.append(self.format(record))
        except Exception:
            self.handleError(record)

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    def text(self) -> str:
        return "\n".join(self._lines)


class PeerLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with the short id of the exchange that logged them."""

    def process(self, msg, kwargs):
        return f"[{self.extra['peer']}] {msg}", kwargs


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
