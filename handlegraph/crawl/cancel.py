"""Cooperative cancellation for a single driver invocation."""
from __future__ import annotations

import threading
import time
from typing import Optional

from ..errors import TickCancelledError


class CancelToken:
    """Shared flag plus optional monotonic deadline.

    Ticks call :meth:`check` before each upstream call and store write.
    """

    def __init__(self, timeout_seconds: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def check(self, what: str = "tick") -> None:
        if self.cancelled:
            raise TickCancelledError(f"{what} cancelled")
