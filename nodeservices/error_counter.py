"""Counting consecutive critical errors."""

from __future__ import annotations

import threading
from typing import Callable


class ErrorCounter:
    """Tells when too many consecutive critical errors were seen."""

    def __init__(self, max_errors: int, is_critical: Callable[[BaseException], bool]) -> None:
        self.max_errors = max_errors
        self._is_critical = is_critical
        self._count = 0
        self._lock = threading.Lock()

    def too_many_errs(self, err: BaseException | None) -> bool:
        with self._lock:
            if err is None or not self._is_critical(err):
                self._count = 0
                return False
            self._count += 1
            return self._count >= self.max_errors