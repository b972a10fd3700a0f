"""
Cooperative cancellation for long-running scans.

A CancellationSignal is set explicitly (client disconnected) or trips on
its own once an optional deadline passes. Workers poll it between chunks
and before every single-place query.
"""

from __future__ import annotations

import asyncio
import time

from services.timeline.visits.errors import ScanCancelled


class CancellationSignal:
    def __init__(self, timeout_s: float | None = None) -> None:
        self._event = asyncio.Event()
        self._deadline = time.monotonic() + timeout_s if timeout_s else None
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    def remaining(self) -> float | None:
        """Seconds until the deadline, or None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ScanCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()
