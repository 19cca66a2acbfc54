# deadline.py
from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import DeadlineExceeded


class Deadline:
    """
    Bounded lifetime for one job (or for the whole run, as a parent).

    A deadline is done when its timeout elapses, when it is cancelled, or
    when its parent is done. Children never affect their parent, so one
    job timing out leaves its siblings alone.
    """

    def __init__(self, timeout: Optional[float] = None, parent: Optional["Deadline"] = None):
        self._cancelled = threading.Event()
        self._parent = parent
        self._expires_at = None if timeout is None else time.monotonic() + timeout

        # a child can never outlive its parent
        if parent is not None and parent._expires_at is not None:
            if self._expires_at is None or parent._expires_at < self._expires_at:
                self._expires_at = parent._expires_at

    def child(self, timeout: Optional[float] = None) -> "Deadline":
        return Deadline(timeout, parent=self)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._parent.cancelled if self._parent is not None else False

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def done(self) -> bool:
        if self.cancelled:
            return True
        left = self.remaining()
        return left is not None and left <= 0

    def reason(self) -> str:
        return "cancelled" if self.cancelled else "deadline exceeded"

    def check(self, what: str = "operation") -> None:
        """Raise DeadlineExceeded if this deadline is done."""
        if self.done():
            raise DeadlineExceeded(f"{what}: {self.reason()}")

    def sleep(self, seconds: float) -> bool:
        """
        Sleep up to `seconds`, waking early when the deadline is done.

        Returns:
            True if the full duration elapsed, False if the deadline ended it.
        """
        end = time.monotonic() + seconds
        while True:
            if self.done():
                return False
            now = time.monotonic()
            if now >= end:
                return True
            step = min(end - now, 0.05)
            left = self.remaining()
            if left is not None:
                step = min(step, left)
            self._cancelled.wait(max(step, 0.0))
