"""Event channel: in-process broadcast of typed engine events.

Each event is a frozen dataclass tagged with an ``EventType``. Listeners
subscribe with a callback and get back an unsubscribe function. A
listener that raises is logged and skipped so that one bad consumer can
never break a periodic tick.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, ClassVar, Iterable, Optional, Union

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TIME_UPDATE = "timeUpdate"
    CREDITS_ADDED = "creditsAdded"
    TIME_EXPIRED = "timeExpired"
    TRACKING_STARTED = "trackingStarted"
    TRACKING_STOPPED = "trackingStopped"
    SCORE_UPDATE = "scoreUpdate"
    DAILY_RESET = "dailyReset"
    PENALTY_APPLIED = "penaltyApplied"
    SHOW_MESSAGE = "showMessage"


@dataclass(frozen=True)
class TimeUpdate:
    type: ClassVar[EventType] = EventType.TIME_UPDATE
    remaining: int
    elapsed: int
    previous: int
    is_background: bool = True


@dataclass(frozen=True)
class CreditsAdded:
    type: ClassVar[EventType] = EventType.CREDITS_ADDED
    seconds: int
    new_total: int


@dataclass(frozen=True)
class TimeExpired:
    type: ClassVar[EventType] = EventType.TIME_EXPIRED
    at_ms: int
    expired_during: str = "background"


@dataclass(frozen=True)
class TrackingStarted:
    type: ClassVar[EventType] = EventType.TRACKING_STARTED
    available_time: int
    started_at_ms: int


@dataclass(frozen=True)
class TrackingStopped:
    type: ClassVar[EventType] = EventType.TRACKING_STOPPED
    available_time: int
    background_seconds: int
    stopped_at_ms: int


@dataclass(frozen=True)
class ScoreUpdate:
    type: ClassVar[EventType] = EventType.SCORE_UPDATE
    is_correct: bool
    points: int
    daily_score: int
    current_streak: int
    highest_streak: int
    is_streak_milestone: bool = False
    streak_broken: bool = False
    category: Optional[str] = None


@dataclass(frozen=True)
class DailyReset:
    type: ClassVar[EventType] = EventType.DAILY_RESET
    previous_date: str
    new_date: str
    yesterday_score: int
    rollover_bonus: int
    rollover_minutes: int
    was_new_record: bool
    all_time_high_score: int
    new_day_score: int
    total_days_played: int
    monthly_total: int


@dataclass(frozen=True)
class PenaltyApplied:
    type: ClassVar[EventType] = EventType.PENALTY_APPLIED
    penalty: int
    overtime_minutes: int
    daily_score: int
    total_penalty: int


@dataclass(frozen=True)
class ShowMessage:
    type: ClassVar[EventType] = EventType.SHOW_MESSAGE
    kind: str
    message: str
    priority: str = "normal"


Event = Union[
    TimeUpdate,
    CreditsAdded,
    TimeExpired,
    TrackingStarted,
    TrackingStopped,
    ScoreUpdate,
    DailyReset,
    PenaltyApplied,
    ShowMessage,
]

Listener = Callable[[Event], None]


def event_to_dict(event: Event) -> dict:
    """Flatten an event into a JSON-friendly dict with its ``event`` tag."""
    return {"event": event.type.value, **asdict(event)}


@dataclass
class _Subscription:
    callback: Listener
    types: Optional[frozenset] = None
    active: bool = field(default=True)


class EventChannel:
    """Synchronous fan-out to subscribed listeners, in subscription order."""

    def __init__(self):
        self._subscriptions: list[_Subscription] = []

    def subscribe(
        self, callback: Listener, types: Optional[Iterable[EventType]] = None
    ) -> Callable[[], None]:
        """Register ``callback``. Returns an idempotent unsubscribe function."""
        sub = _Subscription(callback, frozenset(types) if types is not None else None)
        self._subscriptions.append(sub)

        def unsubscribe() -> None:
            if sub.active:
                sub.active = False
                self._subscriptions.remove(sub)

        return unsubscribe

    def publish(self, event: Event) -> None:
        # Copy so listeners may unsubscribe while being notified
        for sub in list(self._subscriptions):
            if not sub.active:
                continue
            if sub.types is not None and event.type not in sub.types:
                continue
            try:
                sub.callback(event)
            except Exception:
                logger.exception("Event listener failed on %s", event.type.value)

    def clear(self) -> None:
        for sub in self._subscriptions:
            sub.active = False
        self._subscriptions.clear()

    def __len__(self) -> int:
        return len(self._subscriptions)
