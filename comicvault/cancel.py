from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import OperationCancelled, OperationTimeout


class CancelToken:
    """Cooperative cancellation flag with an optional deadline.

    Long-running loops call ``check()`` at natural checkpoints (one per
    chunk read or written). ``check()`` raises ``OperationCancelled`` after
    ``cancel()`` and ``OperationTimeout`` once the deadline has passed.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        if self._event.is_set():
            raise OperationCancelled()
        if self.expired:
            raise OperationTimeout()


def check(token: Optional[CancelToken]) -> None:
    if token is not None:
        token.check()
