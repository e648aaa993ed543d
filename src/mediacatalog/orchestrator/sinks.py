"""Change sink adapters."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .ports import ChangeSink

logger = logging.getLogger(__name__)


class SafeChangeSink:
    """Wraps a sink so delivery is best-effort.

    A missing sink is a no-op and any exception raised by the wrapped sink
    is logged at debug level and swallowed.
    """

    def __init__(self, sink: Optional[ChangeSink] = None) -> None:
        self._sink = sink

    def __getattr__(self, name: str) -> Callable[..., None]:
        if name.startswith("_"):
            raise AttributeError(name)

        def deliver(*args: Any, **kwargs: Any) -> None:
            if self._sink is None:
                return
            try:
                getattr(self._sink, name)(*args, **kwargs)
            except Exception:  # noqa: BLE001
                logger.debug(
                    "Change sink delivery failed",
                    extra={"sink_method": name},
                    exc_info=True,
                )

        return deliver
