import threading
import time
from typing import Optional

from app.services.errors import OperationCancelled


class RequestContext:
    """Cancellation flag plus optional deadline shared by one request's calls."""

    def __init__(self, timeout_seconds: Optional[float] = None) -> None:
        self._cancelled = threading.Event()
        self._deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )

    @classmethod
    def background(cls) -> "RequestContext":
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float) -> "RequestContext":
        return cls(timeout_seconds=seconds)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        if self._cancelled.is_set():
            raise OperationCancelled("operation cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise OperationCancelled("operation deadline exceeded")


def check_context(ctx: Optional[RequestContext]) -> None:
    if ctx is not None:
        ctx.check()
