"""Throttled progress delivery for running jobs."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProgressChannel(Generic[T]):
    """Latest-value channel drained at a fixed cadence.

    Producers call :meth:`send` as often as they like. A drain task delivers
    the most recent value at most once per ``interval`` seconds; values sent
    between two deliveries are coalesced into the newest one. The first value
    after an idle period is delivered without waiting, and :meth:`aclose`
    flushes whatever is still pending so the final update is never lost.
    """

    def __init__(self, deliver: Callable[[T], None], *, interval: float = 0.25) -> None:
        self._deliver = deliver
        self._interval = interval
        self._latest: Optional[T] = None
        self._pending = False
        self._closed = False
        self._wakeup = asyncio.Event()
        self._drain_task: Optional[asyncio.Task] = None
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, value: T) -> None:
        self._latest = value
        self._pending = True
        if self._closed:
            return
        if self._drain_task is None:
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())
        self._wakeup.set()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._drain_task is not None:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None
        if self._pending:
            self._flush()

    async def _drain(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            if self._pending:
                self._flush()
            await asyncio.sleep(self._interval)

    def _flush(self) -> None:
        value = self._latest
        self._pending = False
        try:
            self._deliver(value)  # type: ignore[arg-type]
            self.delivered += 1
        except Exception:  # noqa: BLE001
            logger.debug("Progress delivery failed", exc_info=True)
