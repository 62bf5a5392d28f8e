"""Daily quota budget for the external data source.

The allocator is the only writer of the quota counter. Reservation and
consumption are one step because the data source bills every request whether
or not it returns anything new. The window resets lazily: the first
reservation after the configured boundary zeroes the counter before it is
evaluated, mirroring the data source's own reset rather than a local timer.
"""

import threading
from collections.abc import Callable
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from uploadwatch.common.errors import StorageUnavailable
from uploadwatch.common.logging import logger
from uploadwatch.common.metrics import quota_consumed_units, quota_denials_total, quota_units_consumed_total


class QuotaSnapshot(BaseModel):
    """Read-only view of the current window."""

    daily_budget: int
    consumed: int
    remaining: int
    window_started_at: datetime
    next_reset_at: datetime


def last_reset_boundary(now: datetime, reset_hour: int, tz: ZoneInfo) -> datetime:
    """Most recent `reset_hour:00` in `tz` at or before `now`, as UTC."""

    local_now = now.astimezone(tz)
    boundary = datetime.combine(local_now.date(), time(hour=reset_hour), tzinfo=tz)
    if boundary > local_now:
        boundary = datetime.combine(local_now.date() - timedelta(days=1), time(hour=reset_hour), tzinfo=tz)
    return boundary.astimezone(timezone.utc)


def next_reset_boundary(now: datetime, reset_hour: int, tz: ZoneInfo) -> datetime:
    last = last_reset_boundary(now, reset_hour, tz).astimezone(tz)
    following = datetime.combine(last.date() + timedelta(days=1), time(hour=reset_hour), tzinfo=tz)
    return following.astimezone(timezone.utc)


class QuotaAllocator:
    """Grants or denies spending against a fixed daily budget."""

    def __init__(
        self,
        daily_budget: int,
        reset_hour: int = 0,
        reset_timezone: str = "America/Los_Angeles",
        clock: Callable[[], datetime] | None = None,
        on_change: Callable[[int, datetime], None] | None = None,
        consumed: int = 0,
        window_started_at: datetime | None = None,
        service_name: str = "uploadwatch",
    ) -> None:
        self.daily_budget = daily_budget
        self.reset_hour = reset_hour
        self.tz = ZoneInfo(reset_timezone)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.on_change = on_change
        self.service_name = service_name
        self._lock = threading.Lock()
        self._consumed = consumed
        self._window_started_at = window_started_at or last_reset_boundary(self.clock(), reset_hour, self.tz)

    @classmethod
    def from_state(cls, store, daily_budget: int, **kwargs) -> "QuotaAllocator":
        """Restore the persisted window, or start empty when none exists."""

        try:
            state = store.load_quota_state()
        except StorageUnavailable as exc:
            logger.warning("quota_state_unavailable starting_from_zero error=%s", exc)
            state = None
        consumed, window_started_at = state if state is not None else (0, None)
        return cls(
            daily_budget,
            consumed=consumed,
            window_started_at=window_started_at,
            on_change=store.save_quota_state,
            **kwargs,
        )

    def _roll_window(self) -> None:
        boundary = last_reset_boundary(self.clock(), self.reset_hour, self.tz)
        if self._window_started_at < boundary:
            logger.info(
                "quota_window_reset consumed=%s previous_window=%s",
                self._consumed,
                self._window_started_at.isoformat(),
            )
            self._consumed = 0
            self._window_started_at = boundary

    def try_reserve(self, cost: int) -> bool:
        """Spend `cost` units if the budget allows it; denial changes nothing."""

        with self._lock:
            self._roll_window()
            granted = self._consumed + cost <= self.daily_budget
            if granted:
                self._consumed += cost
            consumed, window = self._consumed, self._window_started_at
        if not granted:
            quota_denials_total.labels(service=self.service_name).inc()
            logger.info("quota_denied cost=%s consumed=%s budget=%s", cost, consumed, self.daily_budget)
            return False
        quota_units_consumed_total.labels(service=self.service_name).inc(cost)
        self._persist(consumed, window)
        return True

    def record(self, cost: int) -> None:
        """Charge units billed beyond a reservation; never denies."""

        if cost <= 0:
            return
        with self._lock:
            self._roll_window()
            self._consumed += cost
            consumed, window = self._consumed, self._window_started_at
        quota_units_consumed_total.labels(service=self.service_name).inc(cost)
        self._persist(consumed, window)

    def _persist(self, consumed: int, window_started_at: datetime) -> None:
        quota_consumed_units.labels(service=self.service_name).set(consumed)
        if self.on_change is None:
            return
        try:
            self.on_change(consumed, window_started_at)
        except Exception as exc:
            # The in-memory counter stays authoritative for this process.
            logger.warning("quota_state_persist_failed consumed=%s error=%s", consumed, exc)

    def snapshot(self) -> QuotaSnapshot:
        with self._lock:
            consumed, window = self._consumed, self._window_started_at
        now = self.clock()
        if window < last_reset_boundary(now, self.reset_hour, self.tz):
            consumed = 0
        return QuotaSnapshot(
            daily_budget=self.daily_budget,
            consumed=consumed,
            remaining=max(0, self.daily_budget - consumed),
            window_started_at=window,
            next_reset_at=next_reset_boundary(now, self.reset_hour, self.tz),
        )
