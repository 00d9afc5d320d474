"""
Core Module - Operation Context.

============================================================
RESPONSIBILITY
============================================================
Carries a caller's deadline and cancellation signal into every
repository call.

- Repositories call raise_if_cancelled() before each statement
- On PostgreSQL the remaining budget becomes a statement timeout
- Thread-safe: cancel() may be called from another worker

============================================================
"""

import threading
from datetime import datetime, timedelta
from typing import Optional

from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.exceptions import OperationCancelledError


class OperationContext:
    """
    Deadline and cancellation token for one request or event.

    Usage:
        ctx = OperationContext.with_timeout(timedelta(seconds=5))
        repos = Repositories(session, engine, context=ctx)
    """

    def __init__(
        self,
        deadline: Optional[datetime] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._deadline = ensure_utc(deadline)
        self._clock = clock or SystemClock()
        self._cancelled = threading.Event()
        self._reason: Optional[str] = None

    @classmethod
    def with_timeout(
        cls,
        timeout: timedelta,
        clock: Optional[ClockProtocol] = None,
    ) -> "OperationContext":
        clock = clock or SystemClock()
        return cls(deadline=clock.now() + timeout, clock=clock)

    @classmethod
    def background(cls) -> "OperationContext":
        """Context with no deadline that is only cancelled explicitly."""
        return cls()

    @property
    def deadline(self) -> Optional[datetime]:
        return self._deadline

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self._reason = reason
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set() or self.expired

    @property
    def expired(self) -> bool:
        return self._deadline is not None and self._clock.now() >= self._deadline

    def remaining(self) -> Optional[timedelta]:
        """Time left before the deadline, or None without a deadline."""
        if self._deadline is None:
            return None
        return max(self._deadline - self._clock.now(), timedelta(0))

    def raise_if_cancelled(self, operation: str = "") -> None:
        """
        Raise if the caller has given up on this operation.

        Raises:
            OperationCancelledError: On explicit cancel or passed deadline
        """
        if self._cancelled.is_set():
            raise OperationCancelledError(
                self._reason or "operation cancelled",
                context={"operation": operation},
            )
        if self.expired:
            raise OperationCancelledError(
                "deadline exceeded",
                context={"operation": operation, "deadline": self._deadline.isoformat()},
            )
