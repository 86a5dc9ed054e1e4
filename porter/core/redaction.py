"""Log redaction for sensitive parameter, credential and output values."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

MASK = "*******"


def redact(text: str, values: Iterable[str]) -> str:
    """Replace every occurrence of each sensitive value in ``text``."""
    # Longest first so a value that contains another is masked whole
    for value in sorted({v for v in values if v}, key=len, reverse=True):
        text = text.replace(value, MASK)
    return text


class SensitiveValueFilter(logging.Filter):
    """Mask registered sensitive values in every record passing through.

    The formatted message is computed once, redacted, and stored back on
    the record with its arguments cleared.
    """

    def __init__(self) -> None:
        super().__init__()
        self._values: set[str] = set()
        self._lock = threading.Lock()

    def add(self, values: Iterable[str]) -> None:
        with self._lock:
            self._values.update(v for v in values if v)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()

    @property
    def values(self) -> set[str]:
        with self._lock:
            return set(self._values)

    def filter(self, record: logging.LogRecord) -> bool:
        values = self.values
        if values:
            record.msg = redact(record.getMessage(), values)
            record.args = None
        return True
