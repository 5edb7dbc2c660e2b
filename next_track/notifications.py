"""Local notifications and observable prompt flags for the UI layer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from next_track.models import new_id
from next_track.timeutils import utc_now

logger = logging.getLogger(__name__)

AUTO_START_NOTIFICATION_ID = "auto-start-tracking"

INTERRUPTED_TRACKING_PROMPT = "interrupted_tracking"
SESSION_RECOVERY_PROMPT = "session_recovery"


@dataclass(frozen=True, slots=True)
class LocalNotification:
    """A notification posted to the user."""

    identifier: str
    title: str
    body: str
    posted_at: datetime


class NotificationCenter:
    """Collects posted notifications in delivery order.

    ``deliver`` is the hook a platform integration replaces to actually show
    the notification; by default notifications are only logged and kept.
    """

    def __init__(
        self,
        deliver: Callable[[LocalNotification], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._deliver = deliver
        self._clock = clock
        self._posted: list[LocalNotification] = []

    @property
    def posted(self) -> list[LocalNotification]:
        return list(self._posted)

    def post(self, title: str, body: str, identifier: str | None = None) -> LocalNotification:
        notification = LocalNotification(
            identifier=identifier or new_id(),
            title=title,
            body=body,
            posted_at=self._clock(),
        )
        self._posted.append(notification)
        logger.info("Notification %s: %s - %s", notification.identifier, title, body)
        if self._deliver is not None:
            try:
                self._deliver(notification)
            except Exception:
                logger.warning("Failed to deliver notification %s", notification.identifier, exc_info=True)
        return notification


class PromptFlags:
    """Observable booleans that ask the UI to show a prompt."""

    def __init__(self) -> None:
        self._flags: dict[str, bool] = {}
        self._observers: list[Callable[[str, bool], None]] = []

    def observe(self, callback: Callable[[str, bool], None]) -> None:
        self._observers.append(callback)

    def is_set(self, name: str) -> bool:
        return self._flags.get(name, False)

    def raise_prompt(self, name: str) -> None:
        self._set(name, True)

    def dismiss(self, name: str) -> None:
        self._set(name, False)

    def _set(self, name: str, value: bool) -> None:
        if self._flags.get(name, False) == value:
            return
        self._flags[name] = value
        for callback in list(self._observers):
            callback(name, value)
