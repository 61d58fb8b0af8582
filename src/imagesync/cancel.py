"""
Cancellation context threaded through a sync job.

A CancelContext carries an optional deadline and an explicit cancel signal.
Resolution and every copy attempt share one context, so a command timeout
that fires in the middle of a retry wait aborts the whole job.
"""
from __future__ import annotations

import threading
import time
from typing import List, Optional

from .errors import DeadlineExceeded, OperationCancelled

__all__ = ["CancelContext"]


class CancelContext:
    """
    Cancellation signal with an optional monotonic deadline.

    Children created with with_timeout() are cancelled when their parent is,
    and never outlive the parent's deadline.
    """

    def __init__(self, deadline: Optional[float] = None, parent: Optional[CancelContext] = None):
        self._event = threading.Event()
        self._parent = parent
        self._children: List[CancelContext] = []
        self._lock = threading.Lock()
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

    @classmethod
    def background(cls) -> CancelContext:
        """Context that is never cancelled and has no deadline."""
        return cls()

    def with_timeout(self, seconds: Optional[float]) -> CancelContext:
        """Derive a child context that expires `seconds` from now."""
        deadline = None if seconds is None else time.monotonic() + seconds
        child = CancelContext(deadline=deadline, parent=self)
        with self._lock:
            self._children.append(child)
        if self.done:
            child.cancel()
        return child

    def cancel(self) -> None:
        """Cancel this context and every child derived from it."""
        self._event.set()
        with self._lock:
            children = list(self._children)
        for child in children:
            child.cancel()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def done(self) -> bool:
        return self.error() is not None

    def error(self) -> Optional[OperationCancelled]:
        """Why the context finished, or None while it is still live."""
        if self._event.is_set() or (self._parent is not None and self._parent._event.is_set()):
            return OperationCancelled()
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return DeadlineExceeded()
        return None

    def raise_if_done(self) -> None:
        err = self.error()
        if err is not None:
            raise err

    def wait(self, seconds: float) -> bool:
        """
        Block for up to `seconds`.

        Returns True if the context was cancelled or hit its deadline before
        the time elapsed, False if the full wait completed.
        """
        if self.done:
            return True
        timeout = seconds
        remaining = self.remaining()
        if remaining is not None and remaining < timeout:
            timeout = remaining
        self._event.wait(timeout)
        return self.done
