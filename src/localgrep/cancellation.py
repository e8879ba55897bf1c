"""
Cooperative cancellation for downloads and remote embedding batches.
"""

from __future__ import annotations

import threading

from .errors import OperationCancelledError


class CancelToken:
    """Thread-safe flag checked between units of work."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelledError(f"{what} cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*, returning True early if cancelled."""
        return self._event.wait(timeout=seconds)
