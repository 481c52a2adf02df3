"""Cooperative cancellation token passed through stages and workers."""

from __future__ import annotations

from takeoffcalc.errors import JobCancelledError


class CancellationToken:
    """Signals a cancellation request to cooperating tasks.

    Workers check the token at item boundaries; nothing is interrupted
    mid-call, so in-flight provider requests finish normally.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "Cancelled") -> None:
        if not self._cancelled:
            self.reason = reason
            self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise JobCancelledError(self.reason or "Cancelled")


class _NeverCancelled(CancellationToken):
    def cancel(self, reason: str = "Cancelled") -> None:  # pragma: no cover - guard
        raise RuntimeError("The shared NEVER token cannot be cancelled")


NEVER = _NeverCancelled()
