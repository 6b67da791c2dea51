"""TimeEconomy: the context object that wires the engine together.

Built once at startup and handed to consumers (HTTP layer, CLI, tests).
It owns the event channel and record store and composes a TimeAccount
with a ScoreLedger.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .config import Settings
from .events import EventChannel, Listener, ShowMessage
from .lifecycle import LifecycleSource
from .notifications import NotificationScheduler
from .score_ledger import AnswerResult, ScoreInfo, ScoreLedger
from .store import ALL_KEYS, KeyValueStore, RecordStore
from .time_account import TimeAccount, TrackingStatus, format_time, now_ms

logger = logging.getLogger(__name__)


class TimeEconomy:
    """Public operation set of the screen-time engine."""

    def __init__(
        self,
        store: KeyValueStore,
        lifecycle: LifecycleSource,
        notifier: NotificationScheduler,
        scheduler,
        settings: Optional[Settings] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.settings = settings or Settings()
        self.events = EventChannel()
        self.records = RecordStore(store)
        self.lifecycle = lifecycle
        self._clock = clock
        self.account = TimeAccount(
            self.events, self.records, scheduler, notifier, lifecycle, clock=clock
        )
        self.ledger = ScoreLedger(
            self.account, self.events, self.records, scheduler,
            clock=clock, tz=self.settings.tzinfo,
        )
        self._started = False
        self._closed = False

    async def start(self) -> None:
        """Load persisted state and begin reacting to lifecycle and timers."""
        if self._started:
            return
        now = self._clock()
        # Balance first: the ledger's catch-up rollover reads it
        await self.account.load(now)
        await self.ledger.load(now)
        # Ledger subscribes before the account can emit timeExpired
        self.ledger.start()
        self.account.start(now)
        self._started = True
        logger.info("Time economy started with %s available", format_time(self.account.available_time))

    # ---- Queries ----

    def get_available_time(self) -> int:
        return self.account.get_available_time()

    @staticmethod
    def format_time(seconds: int) -> str:
        return format_time(seconds)

    def get_score_info(self) -> ScoreInfo:
        return self.ledger.get_score_info()

    def get_tracking_status(self) -> TrackingStatus:
        return self.account.get_tracking_status()

    def add_event_listener(self, callback: Listener) -> Callable[[], None]:
        return self.events.subscribe(callback)

    # ---- Commands ----

    def add_time_credits(self, seconds: int) -> int:
        return self.account.add_time_credits(seconds)

    def record_answer(
        self,
        is_correct: bool,
        elapsed_answer_seconds: float,
        category: Optional[str] = None,
    ) -> AnswerResult:
        """Score an answer and credit the matching time reward."""
        result = self.ledger.record_answer(is_correct, elapsed_answer_seconds, category)
        if not result.recorded or not result.is_correct:
            return result
        if result.is_streak_milestone:
            self.account.add_time_credits(self.settings.milestone_reward_seconds)
        else:
            self.account.add_time_credits(self.settings.correct_reward_seconds)
        return result

    async def erase_all_progress(self) -> None:
        """Delete persisted records and reset balance, ledger and history."""
        if self._closed:
            return
        now = self._clock()
        self.account.reset(now)
        self.ledger.reset(now)
        await self.records.remove(ALL_KEYS)
        logger.info("All progress erased")
        self.events.publish(ShowMessage(kind="progressErased", message="All progress has been reset."))

    # ---- Shutdown ----

    def cleanup(self) -> None:
        """Halt all timers and subscriptions. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.account.cleanup()
        self.ledger.cleanup()

    async def shutdown(self) -> None:
        self.cleanup()
        await self.records.flush()
        self.events.clear()
