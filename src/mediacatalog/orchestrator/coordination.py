"""Scan coordinator shared by the scheduler and the change monitor."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional, Protocol, Set

from .cancellation import CancellationToken
from .models import utcnow
from .ports import PersistentStore, ScanOptions, ScanResult

logger = logging.getLogger(__name__)


class LibraryScanner(Protocol):
    """Provider-specific scanning of one library."""

    async def scan(self, source_id: str, library_id: str, options: ScanOptions) -> ScanResult:
        ...


class LibraryScanCoordinator:
    """Routes every scan through one place.

    The coordinator is the single source of truth for whether a manual
    (full, user or scheduler driven) scan is running, and ``stop_scan``
    cancels whichever scans are in flight regardless of who started them.
    Successful full and incremental scans record the library's last-scan
    timestamp so later incremental checks know where to start.
    """

    def __init__(self, *, scanner: LibraryScanner, store: PersistentStore) -> None:
        self._scanner = scanner
        self._store = store
        self._active: Set[CancellationToken] = set()
        self._manual_scans = 0

    def is_manual_scan_in_progress(self) -> bool:
        return self._manual_scans > 0

    @property
    def active_scans(self) -> int:
        return len(self._active)

    def stop_scan(self) -> None:
        if not self._active:
            return
        logger.info("Stopping active scans", extra={"active_scans": len(self._active)})
        for token in list(self._active):
            token.cancel()

    async def scan_library(
        self,
        source_id: str,
        library_id: str,
        options: Optional[ScanOptions] = None,
    ) -> ScanResult:
        options = options or ScanOptions()
        token = options.cancel_token or CancellationToken()
        options = replace(options, cancel_token=token)
        manual = options.is_manual
        started_at = utcnow()

        self._active.add(token)
        if manual:
            self._manual_scans += 1
        try:
            token.raise_if_cancelled()
            result = await self._scanner.scan(source_id, library_id, options)
            token.raise_if_cancelled()
        finally:
            self._active.discard(token)
            if manual:
                self._manual_scans -= 1

        logger.debug(
            "Library scan finished",
            extra={
                "source_id": source_id,
                "library_id": library_id,
                "success": result.success,
                "items_scanned": result.items_scanned,
                "duration_ms": result.duration_ms,
            },
        )
        if result.success and not options.target_files:
            self._store.set_last_scan_time(source_id, library_id, started_at)
        return result
