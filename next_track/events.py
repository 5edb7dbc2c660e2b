"""In-process event channel and a time-based trailing debouncer."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

SESSION_ENDED = "session_ended"

Handler = Callable[[Any], None]


class EventChannel:
    """Named publish/subscribe channel.

    Handlers run synchronously in subscription order. A failing handler is
    logged and does not prevent the remaining handlers from running.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``name``; returns an unsubscribe function."""

        self._handlers[name].append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers[name].remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, name: str, payload: Any = None) -> None:
        for handler in list(self._handlers.get(name, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception("Handler for event %r failed", name)


class Debouncer:
    """Run ``callback`` once, ``delay_seconds`` after the last trigger.

    Triggers arriving inside the window restart it. Scheduling uses the
    running asyncio loop; when triggered outside any loop there is nothing to
    coalesce with, so the callback runs immediately.
    """

    def __init__(self, delay_seconds: float, callback: Callable[[], None]) -> None:
        self._delay = max(0.0, float(delay_seconds))
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self, _payload: Any = None) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Debouncer triggered outside an event loop; running now")
            self._callback()
            return
        self.cancel()
        self._handle = loop.call_later(self._delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._callback()
