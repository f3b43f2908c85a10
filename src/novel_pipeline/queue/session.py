"""Usage-window tracking for the completion service quota."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

from novel_pipeline.storage.common import utc_now


class SessionTracker(Protocol):
    """Reports how long until the completion service quota resets."""

    def record_request(self) -> None: ...

    def time_until_reset(self) -> timedelta | None: ...

    def clear_session(self) -> None: ...


class UsageWindowTracker:
    """Rolling usage window opened by the first request after a reset.

    The provider resets quota a fixed interval after a session starts, so the
    remaining time is ``started + window - now``. Without a session there is
    nothing to wait for and ``time_until_reset`` returns None.
    """

    def __init__(
        self,
        *,
        window: timedelta = timedelta(hours=5),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._session_started_at: datetime | None = None
        self.requests_in_session = 0

    @property
    def session_started_at(self) -> datetime | None:
        return self._session_started_at

    def record_request(self) -> None:
        with self._lock:
            now = self._clock()
            if self._session_started_at is None or now >= self._session_started_at + self.window:
                self._session_started_at = now
                self.requests_in_session = 0
            self.requests_in_session += 1

    def time_until_reset(self) -> timedelta | None:
        with self._lock:
            if self._session_started_at is None:
                return None
            remaining = self._session_started_at + self.window - self._clock()
        return max(remaining, timedelta(0))

    def clear_session(self) -> None:
        with self._lock:
            self._session_started_at = None
            self.requests_in_session = 0
