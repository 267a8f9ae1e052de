"""Cancellation and deadline propagation for collect calls."""

from __future__ import annotations

import threading
import time

from gpumon._errors import CollectionCancelled


class CollectContext:
    """Bounds one collect call: cancelled when ``cancel`` is set or ``deadline`` passes.

    ``deadline`` is a ``time.monotonic()`` timestamp. Collectors poll the
    context between short blocking waits, so a cancellation is honored within
    one wait slice.
    """

    def __init__(
        self,
        *,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
    ) -> None:
        self.cancel_event = cancel if cancel is not None else threading.Event()
        self.deadline = deadline

    @classmethod
    def with_timeout(
        cls, timeout_s: float | None, *, cancel: threading.Event | None = None
    ) -> CollectContext:
        deadline = None if timeout_s is None else time.monotonic() + timeout_s
        return cls(cancel=cancel, deadline=deadline)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def done(self) -> bool:
        return self.cancelled or self.expired

    def remaining(self) -> float | None:
        """Seconds until the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def wait_slice(self, max_s: float) -> float:
        """Length of the next blocking wait: ``max_s`` capped by the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return max_s
        return min(max_s, remaining)

    def check(self, what: str) -> None:
        """Raise ``CollectionCancelled`` if the context is done."""
        if self.cancelled:
            raise CollectionCancelled(f"{what}: cancelled")
        if self.expired:
            raise CollectionCancelled(f"{what}: deadline exceeded")
