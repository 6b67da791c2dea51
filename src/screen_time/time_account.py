"""TimeAccount: the screen-time balance and its background-debit state machine.

All time values are integer epoch milliseconds; the balance is whole
seconds. The clock is injected and every handler also accepts an explicit
``now_ms``, so tests drive it deterministically.

States:
    FOREGROUND  host app active, nothing is debited
    TRACKING    host backgrounded with balance > 0, debited every second
    EXPIRED     host backgrounded with balance == 0

Debits are derived from the last tick timestamp, never from a count of
ticks. A tick that runs late, twice, or after a suspended process still
debits exactly the wall-clock time that passed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger

from .events import (
    CreditsAdded,
    EventChannel,
    TimeExpired,
    TimeUpdate,
    TrackingStarted,
    TrackingStopped,
)
from .lifecycle import AppState, LifecycleSource
from .notifications import NotificationScheduler
from .store import TIMER_KEY, RecordStore

logger = logging.getLogger(__name__)


TICK_INTERVAL_SECONDS = 1
PERSIST_INTERVAL_MS = 30 * 1000
LOW_TIME_WARNING_MINUTES = (5, 1)
TICK_JOB_ID = "time_account_tick"
EXPIRED_NOTIFICATION_ID = "time-expired"


def now_ms() -> int:
    return int(time.time() * 1000)


def format_time(seconds: int) -> str:
    """Format seconds as 'H:MM:SS', or 'M:SS' under an hour."""
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


class AccountState(str, Enum):
    FOREGROUND = "foreground"
    TRACKING = "tracking"
    EXPIRED = "expired"


@dataclass
class TrackingStatus:
    state: AccountState
    is_tracking: bool
    is_expired: bool
    app_state: AppState
    available_time: int
    background_entered_at: Optional[int]
    last_tick_at: Optional[int]


class TimeAccount:
    """Owns the balance. Mutated only by its own tick and by credits."""

    def __init__(
        self,
        events: EventChannel,
        records: RecordStore,
        scheduler,
        notifier: NotificationScheduler,
        lifecycle: LifecycleSource,
        clock: Callable[[], int] = now_ms,
    ):
        self._events = events
        self._records = records
        self.scheduler = scheduler
        self._notifier = notifier
        self._lifecycle = lifecycle
        self._clock = clock

        self._available_time: int = 0
        self._app_state: AppState = AppState.ACTIVE
        self._is_tracking: bool = False
        self._is_expired: bool = False
        self._background_entered_ms: Optional[int] = None
        self._last_tick_ms: Optional[int] = None
        self._last_persisted_ms: int = 0

        self._active = True
        self._unsubscribe_lifecycle: Optional[Callable[[], None]] = None

    # ---- Read-only properties ----

    @property
    def available_time(self) -> int:
        return self._available_time

    @property
    def app_state(self) -> AppState:
        return self._app_state

    @property
    def is_backgrounded(self) -> bool:
        return self._app_state.is_backgrounded

    @property
    def is_tracking(self) -> bool:
        return self._is_tracking

    @property
    def is_expired(self) -> bool:
        return self._is_expired

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def state(self) -> AccountState:
        if self._is_tracking:
            return AccountState.TRACKING
        if self._is_expired:
            return AccountState.EXPIRED
        return AccountState.FOREGROUND

    @property
    def background_entered_ms(self) -> Optional[int]:
        return self._background_entered_ms

    @property
    def last_persisted_ms(self) -> int:
        return self._last_persisted_ms

    def get_available_time(self) -> int:
        return self._available_time

    def get_tracking_status(self) -> TrackingStatus:
        return TrackingStatus(
            state=self.state,
            is_tracking=self._is_tracking,
            is_expired=self._is_expired,
            app_state=self._app_state,
            available_time=self._available_time,
            background_entered_at=self._background_entered_ms,
            last_tick_at=self._last_tick_ms,
        )

    # ---- Startup ----

    async def load(self, now_ms: Optional[int] = None) -> int:
        """Restore the balance from storage, debiting time spent while dead.

        If the process died while tracking, the wall-clock time between the
        last persisted debit and now is subtracted once.
        """
        now = self._clock() if now_ms is None else now_ms
        record = await self._records.load(TIMER_KEY)
        self._last_persisted_ms = now
        if record is None:
            logger.info("No saved time data, starting with 0s")
            return self._available_time

        if self._restore(record, now):
            self.persist(now)
            if self._available_time == 0:
                logger.info("Time ran out while the app was closed")
                self._events.publish(TimeExpired(at_ms=now, expired_during="foreground"))
        logger.info("Loaded available time: %ds", self._available_time)
        return self._available_time

    def _restore(self, record: dict, now: int) -> bool:
        """Apply a persisted record. Returns True if a catch-up debit was made."""
        try:
            available = max(0, int(record.get("availableTime", 0)))
            was_tracking = bool(record.get("wasTracking", False))
            started = record.get("backgroundStartTime")
            started = int(started) if started is not None else None
            last_updated = record.get("lastUpdated")
            # Older records stored an ISO string here; fall back to the start time
            last_updated = int(last_updated) if isinstance(last_updated, (int, float)) else None
        except (TypeError, ValueError) as e:
            logger.warning("Malformed timer record, using defaults: %s", e)
            return False

        self._available_time = available
        if not (was_tracking and started is not None):
            return False

        # The saved balance is already debited up to lastUpdated
        since = max(started, last_updated) if last_updated is not None else started
        elapsed_ms = now - since
        if elapsed_ms < 0:
            logger.warning("Clock is behind saved timer data by %dms; no catch-up debit", -elapsed_ms)
            return False
        elapsed_s = elapsed_ms // 1000
        if elapsed_s == 0 or available == 0:
            return False

        self._available_time = max(0, available - elapsed_s)
        logger.info(
            "App was closed during background tracking: deducted %ds, %ds remaining",
            available - self._available_time, self._available_time,
        )
        return True

    def start(self, now_ms: Optional[int] = None) -> None:
        """Subscribe to lifecycle changes and apply the current host state."""
        if not self._active or self._unsubscribe_lifecycle is not None:
            return
        self._unsubscribe_lifecycle = self._lifecycle.subscribe(self.handle_app_state)
        current = self._lifecycle.current_state
        if current.is_backgrounded:
            self.handle_app_state(current, now_ms)

    # ---- Lifecycle ----

    def handle_app_state(self, next_state: AppState, now_ms: Optional[int] = None) -> None:
        if not self._active:
            logger.debug("Ignoring lifecycle change after cleanup: %s", next_state)
            return
        now = self._clock() if now_ms is None else now_ms
        next_state = AppState(next_state)
        previous = self._app_state
        self._app_state = next_state

        if not previous.is_backgrounded and next_state.is_backgrounded:
            self._enter_background(now)
        elif previous.is_backgrounded and not next_state.is_backgrounded:
            self._enter_foreground(now)

    def _enter_background(self, now: int) -> None:
        self._background_entered_ms = now
        if self._available_time > 0:
            self._start_tracking(now)
        else:
            logger.info("Backgrounded with no time available")
            self._expire(now)

    def _enter_foreground(self, now: int) -> None:
        if self._is_tracking:
            self._stop_tick_job()
            previous = self._available_time
            elapsed_s = self._take_elapsed(now)
            if elapsed_s > 0:
                self._available_time = max(0, previous - elapsed_s)
                self._events.publish(TimeUpdate(self._available_time, elapsed_s, previous))
            self._is_tracking = False
            self._cancel_low_time_warnings()

            entered = self._background_entered_ms
            background_seconds = max(0, (now - entered) // 1000) if entered is not None else 0
            logger.info(
                "Stopped background tracking after %ds, %ds remaining",
                background_seconds, self._available_time,
            )
            self._events.publish(TrackingStopped(self._available_time, background_seconds, now))
            if previous > 0 and self._available_time == 0:
                self._events.publish(TimeExpired(at_ms=now, expired_during="foreground"))

        self._is_expired = False
        self._background_entered_ms = None
        self._last_tick_ms = None
        self.persist(now)

    # ---- Tracking ----

    def _start_tracking(self, now: int) -> None:
        if self._is_tracking:
            return
        self._is_tracking = True
        self._is_expired = False
        self._last_tick_ms = now
        self.scheduler.add_job(
            self._tick_job,
            trigger=IntervalTrigger(seconds=TICK_INTERVAL_SECONDS),
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Started background tracking with %ds available", self._available_time)
        self._events.publish(TrackingStarted(self._available_time, now))
        self._schedule_low_time_warnings(now)
        self.persist(now)

    def _stop_tick_job(self) -> None:
        try:
            self.scheduler.remove_job(TICK_JOB_ID)
        except JobLookupError:
            pass

    async def _tick_job(self) -> None:
        try:
            self.tick(self._clock())
        except Exception:
            logger.exception("Time account tick failed")

    def settle(self, now_ms: Optional[int] = None) -> int:
        """Apply any pending background debit up to now. Returns the balance."""
        self.tick(self._clock() if now_ms is None else now_ms)
        return self._available_time

    def tick(self, now_ms: int) -> None:
        """Debit whole seconds elapsed since the last tick."""
        if not self._active or not self._is_tracking:
            return
        last_tick = self._last_tick_ms
        elapsed_s = self._take_elapsed(now_ms)
        if elapsed_s == 0:
            return

        previous = self._available_time
        self._available_time = max(0, previous - elapsed_s)
        logger.debug("Background debit -%ds, remaining %ds", elapsed_s, self._available_time)
        self._events.publish(TimeUpdate(self._available_time, elapsed_s, previous))

        if self._available_time == 0:
            # Balance hit 0 at last_tick + previous, possibly before now
            zero_at = last_tick + previous * 1000 if last_tick is not None else now_ms
            self._expire(now_ms, expired_at_ms=min(zero_at, now_ms))
        elif now_ms - self._last_persisted_ms >= PERSIST_INTERVAL_MS:
            self.persist(now_ms)

    def _take_elapsed(self, now: int) -> int:
        """Consume whole seconds since the last tick, keeping the remainder."""
        if self._last_tick_ms is None:
            self._last_tick_ms = now
            return 0
        elapsed_ms = now - self._last_tick_ms
        if elapsed_ms < 0:
            logger.warning("Clock moved backwards by %dms; skipping debit", -elapsed_ms)
            self._last_tick_ms = now
            return 0
        elapsed_s = elapsed_ms // 1000
        self._last_tick_ms += elapsed_s * 1000
        return elapsed_s

    def _expire(self, now: int, expired_at_ms: Optional[int] = None) -> None:
        self._stop_tick_job()
        self._is_tracking = False
        self._is_expired = True
        self._cancel_low_time_warnings()
        logger.info("Time expired while backgrounded")
        self._notify(
            "schedule_at",
            EXPIRED_NOTIFICATION_ID,
            "Screen time is up! Answer a few quizzes to earn more.",
            now,
        )
        at_ms = now if expired_at_ms is None else expired_at_ms
        self._events.publish(TimeExpired(at_ms=at_ms, expired_during="background"))
        self.persist(now)

    # ---- Credits ----

    def add_time_credits(self, seconds: int, now_ms: Optional[int] = None) -> int:
        """Add (or, if negative, remove) seconds. Clamped at 0; never raises."""
        if not self._active:
            logger.debug("Ignoring credit after cleanup: %r", seconds)
            return self._available_time
        try:
            seconds = int(seconds)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid credit amount: %r", seconds)
            return self._available_time
        now = self._clock() if now_ms is None else now_ms

        if self._is_tracking:
            # Settle the running debit so the credit is not debited retroactively
            self.tick(now)

        previous = self._available_time
        self._available_time = max(0, previous + seconds)
        logger.info("Added %ds of screen time: %ds -> %ds", seconds, previous, self._available_time)
        self._events.publish(CreditsAdded(seconds, self._available_time))

        if self._is_expired and self.is_backgrounded and self._available_time > 0:
            self._start_tracking(now)
        elif self._is_tracking and self._available_time == 0:
            self._expire(now)
        else:
            if self._is_tracking:
                self._schedule_low_time_warnings(now)
            self.persist(now)
        return self._available_time

    # ---- Notifications ----

    def _schedule_low_time_warnings(self, now: int) -> None:
        self._cancel_low_time_warnings()
        for minutes in LOW_TIME_WARNING_MINUTES:
            threshold = minutes * 60
            if self._available_time > threshold:
                when = now + (self._available_time - threshold) * 1000
                plural = "s" if minutes != 1 else ""
                self._notify(
                    "schedule_at",
                    f"time-warning-{minutes}",
                    f"Only {minutes} minute{plural} of screen time left!",
                    when,
                )

    def _cancel_low_time_warnings(self) -> None:
        for minutes in LOW_TIME_WARNING_MINUTES:
            self._notify("cancel", f"time-warning-{minutes}")

    def _notify(self, method: str, *args) -> None:
        try:
            getattr(self._notifier, method)(*args)
        except Exception as e:
            logger.warning("Notification %s failed: %s", method, e)

    # ---- Persistence ----

    def to_record(self, now_ms: int) -> dict:
        return {
            "availableTime": self._available_time,
            "wasTracking": self._is_tracking,
            "backgroundStartTime": self._background_entered_ms,
            # Instant up to which availableTime is already debited
            "lastUpdated": self._last_tick_ms if self._is_tracking else now_ms,
        }

    def persist(self, now_ms: Optional[int] = None) -> None:
        """Fire-and-forget save of the current state."""
        now = self._clock() if now_ms is None else now_ms
        self._records.save_nowait(TIMER_KEY, self.to_record(now))
        self._last_persisted_ms = now

    # ---- Reset / cleanup ----

    def reset(self, now_ms: Optional[int] = None) -> None:
        """Erase the balance and stop tracking. Keeps the host state."""
        now = self._clock() if now_ms is None else now_ms
        previous = self._available_time
        self._stop_tick_job()
        self._cancel_low_time_warnings()
        self._available_time = 0
        self._is_tracking = False
        self._is_expired = self.is_backgrounded
        self._background_entered_ms = now if self.is_backgrounded else None
        self._last_tick_ms = None
        logger.info("Time account reset")
        self._events.publish(TimeUpdate(0, 0, previous, self.is_backgrounded))

    def cleanup(self) -> None:
        """Stop all jobs and subscriptions. Safe to call more than once."""
        if not self._active:
            return
        if self._is_tracking:
            now = self._clock()
            self.tick(now)
            if self._is_tracking:
                # Keep wasTracking in the record so a relaunch debits the gap
                self.persist(now)
        self._active = False
        self._stop_tick_job()
        if self._unsubscribe_lifecycle is not None:
            self._unsubscribe_lifecycle()
            self._unsubscribe_lifecycle = None
        self._notify("cancel_all")
        logger.info("Time account cleaned up")
