"""
Cooperative cancellation shared by the orchestrator and the estimators.

Estimators call raise_if_cancelled() at the start of each major step; a
native backend call in flight cannot be interrupted, so its result is
simply discarded once the token fires.
"""

import threading
from typing import Optional

from tempokey.errors import AnalysisCancelledError


class CancellationToken:
    """Thread-safe one-shot cancellation flag."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise AnalysisCancelledError(f"Analysis {self.reason or 'cancelled'}", stage=stage)


def check_cancelled(token: Optional[CancellationToken], stage: str) -> None:
    """raise_if_cancelled() that tolerates a missing token."""
    if token is not None:
        token.raise_if_cancelled(stage)
