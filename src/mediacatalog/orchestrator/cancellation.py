"""Cooperative cancellation passed from the scheduler into collaborators."""

from __future__ import annotations

from .exceptions import TaskCancelledError


class CancellationToken:
    """One-shot cancellation flag.

    Collaborators receive the token with their call and check it at each
    suspension point via :meth:`raise_if_cancelled`. Cancelling twice is
    harmless.
    """

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TaskCancelledError()
