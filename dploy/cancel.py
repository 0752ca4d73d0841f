from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from dploy.errors import Cancelled, DeadlineExceeded


@dataclass
class _Signal:
    event: asyncio.Event = field(default_factory=asyncio.Event)
    reason: str = ""


class CancelToken:
    """Cooperative cancellation signal with an optional monotonic deadline.

    Waits and pauses in a rollout go through :meth:`sleep`, and every poll
    tick or shaping step calls :meth:`check` first. A token built without a
    timeout never expires on its own, so a readiness wait using it can block
    for as long as the instances take to register.
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._signal = _Signal()
        self._deadline: Optional[float] = None
        if timeout_seconds:
            self._deadline = clock() + timeout_seconds

    def with_timeout(self, timeout_seconds: Optional[float]) -> "CancelToken":
        """Token sharing this one's cancel signal, with its own (tighter) deadline."""
        child = CancelToken(timeout_seconds, clock=self._clock)
        child._signal = self._signal
        if self._deadline is not None and (
            child._deadline is None or self._deadline < child._deadline
        ):
            child._deadline = self._deadline
        return child

    @property
    def cancelled(self) -> bool:
        return self._signal.event.is_set()

    @property
    def reason(self) -> str:
        return self._signal.reason

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def cancel(self, reason: str = "cancelled by operator") -> None:
        if not self._signal.event.is_set():
            self._signal.reason = reason
            self._signal.event.set()

    def check(self) -> None:
        if self._signal.event.is_set():
            raise Cancelled(self._signal.reason)
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise DeadlineExceeded("deadline exceeded")

    async def sleep(self, seconds: float) -> None:
        """Pause for ``seconds``, waking early with an error on cancel or deadline."""
        self.check()
        timeout = seconds
        remaining = self.remaining()
        if remaining is not None and remaining < timeout:
            timeout = remaining
        try:
            await asyncio.wait_for(self._signal.event.wait(), timeout=timeout)
        except TimeoutError:
            pass
        self.check()
