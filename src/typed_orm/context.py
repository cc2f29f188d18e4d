"""Cancellation and deadlines for store operations."""

from __future__ import annotations

import threading
import time

from typed_orm.errors import ContextCancelledError, DeadlineExceededError


class Context:
    """Carries a cancellation flag and an optional deadline.

    A context is passed to every engine operation and every row-store call.
    Calls check it before doing work and abort with ``ContextCancelledError``
    or ``DeadlineExceededError`` instead of blocking.

    Child contexts created with ``with_timeout`` observe the cancellation of
    their parent, and their deadline never outlives the parent's.
    """

    def __init__(
        self, deadline: float | None = None, parent: Context | None = None
    ) -> None:
        self._cancelled = threading.Event()
        self._parent = parent
        if parent is not None and parent.deadline is not None:
            if deadline is None or parent.deadline < deadline:
                deadline = parent.deadline
        self.deadline = deadline

    @classmethod
    def background(cls) -> Context:
        """Return a context that is never cancelled and has no deadline."""
        return cls()

    def with_timeout(self, seconds: float) -> Context:
        """Return a child context that expires after ``seconds``."""
        return Context(deadline=time.monotonic() + seconds, parent=self)

    def cancel(self) -> None:
        """Cancel this context and every context derived from it."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def remaining(self) -> float | None:
        """Return the seconds left before the deadline, or None."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        """Raise if the context is cancelled or its deadline has passed."""
        if self.cancelled:
            raise ContextCancelledError("Operation cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise DeadlineExceededError("Operation deadline exceeded")

    def __repr__(self) -> str:
        return f"Context(deadline={self.deadline!r}, cancelled={self.cancelled})"
