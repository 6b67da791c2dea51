"""ScoreLedger: daily score, streaks, overtime penalties and daily rollover.

Scoring, penalty and rollover math is plain integer arithmetic on
injected epoch-millisecond timestamps. Two periodic jobs drive it: a
10 second overtime-penalty check and a 60 second daily-rollover poll.
Both derive their deltas from stored timestamps, so they tolerate being
run late, early, or interleaved with the balance tick.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, tzinfo
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger

from .events import (
    CreditsAdded,
    DailyReset,
    EventChannel,
    EventType,
    PenaltyApplied,
    ScoreUpdate,
    ShowMessage,
    TimeExpired,
)
from .store import DAILY_SCORE_KEY, SCORE_HISTORY_KEY, RecordStore
from .time_account import TimeAccount, now_ms

logger = logging.getLogger(__name__)


# Scoring
SCORE_BASE = 100
TIME_BONUS_WINDOW_SECONDS = 20
TIME_BONUS_MULTIPLIER = 0.5     # up to 1.5x base for an instant answer
STREAK_MULTIPLIER = 0.5         # +50% of base per streak level
STREAK_MILESTONE = 5

# Overtime
OVERTIME_PENALTY_PER_MINUTE = 50
MS_PER_PENALTY_POINT = 60 * 1000 // OVERTIME_PENALTY_PER_MINUTE
PENALTY_WARNING_STEP = 50
SCORE_FLOOR = -9999

# Rollover
ROLLOVER_BONUS_PER_MINUTE = 10
MAX_ROLLOVER_MINUTES = 120
WEEKLY_WINDOW = 7

PENALTY_CHECK_INTERVAL_SECONDS = 10
DAILY_RESET_CHECK_INTERVAL_SECONDS = 60
PENALTY_JOB_ID = "score_ledger_penalty_check"
DAILY_RESET_JOB_ID = "score_ledger_daily_reset"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_points(is_correct: bool, elapsed_answer_seconds: float, current_streak: int) -> int:
    """Points for one answer, given the streak *before* this answer."""
    if not is_correct:
        return 0
    elapsed = max(0.0, float(elapsed_answer_seconds))
    speed = max(0.0, (TIME_BONUS_WINDOW_SECONDS - elapsed) / TIME_BONUS_WINDOW_SECONDS)
    time_bonus = speed * SCORE_BASE * TIME_BONUS_MULTIPLIER
    streak_bonus = max(0, current_streak) * SCORE_BASE * STREAK_MULTIPLIER
    return round_half_up(SCORE_BASE + time_bonus + streak_bonus)


def calculate_rollover_bonus(available_seconds: int) -> int:
    minutes = max(0, available_seconds) // 60
    return min(minutes, MAX_ROLLOVER_MINUTES) * ROLLOVER_BONUS_PER_MINUTE


def day_key(now_ms: int, tz: Optional[tzinfo] = None) -> str:
    """Calendar day (YYYY-MM-DD) of an epoch-ms timestamp."""
    return datetime.fromtimestamp(now_ms / 1000, tz).date().isoformat()


@dataclass
class AnswerResult:
    is_correct: bool
    points: int
    current_streak: int
    highest_streak: int
    daily_score: int
    is_streak_milestone: bool = False
    streak_broken: bool = False
    previous_streak: int = 0
    recorded: bool = True


@dataclass
class DailyResetResult:
    previous_date: str
    new_date: str
    yesterday_score: int
    rollover_bonus: int
    rollover_minutes: int
    was_new_record: bool
    new_day_score: int
    total_days_played: int
    monthly_total: int


@dataclass
class ScoreInfo:
    daily_score: int
    current_streak: int
    highest_streak: int
    overtime_penalty_accum: int
    daily_rollover_bonus: int
    all_time_high_score: int
    total_days_played: int
    weekly_average: int
    yesterday_score: int = 0
    session_score: int = 0
    weekly_scores: list = field(default_factory=list)
    weekly_total: int = 0
    monthly_total: int = 0
    streak_level: int = 0
    next_milestone: int = STREAK_MILESTONE
    milestone_progress: float = 0.0
    overtime_minutes: int = 0

    def to_export_dict(self) -> dict:
        """CamelCase dict for JSON export."""
        return {_camel(k): v for k, v in asdict(self).items()}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _clean_weekly(entries) -> list[dict]:
    cleaned = []
    for entry in entries or []:
        try:
            cleaned.append({
                "date": str(entry["date"]),
                "score": int(entry["score"]),
                "streak": int(entry.get("streak", 0)),
            })
        except (KeyError, TypeError, ValueError):
            logger.warning("Dropping malformed weekly score entry: %r", entry)
    return cleaned[-WEEKLY_WINDOW:]


class ScoreLedger:
    """Owns the daily ledger and score history."""

    def __init__(
        self,
        account: TimeAccount,
        events: EventChannel,
        records: RecordStore,
        scheduler,
        clock: Callable[[], int] = now_ms,
        tz: Optional[tzinfo] = None,
    ):
        self._account = account
        self._events = events
        self._records = records
        self.scheduler = scheduler
        self._clock = clock
        self._tz = tz

        # Daily ledger
        self._date: Optional[str] = None
        self._daily_score = 0
        self._current_streak = 0
        self._highest_streak = 0
        self._overtime_penalty_accum = 0
        self._daily_rollover_bonus = 0
        self._session_score = 0
        self._session_answers = 0
        self._last_milestone_streak = 0

        # History
        self._all_time_high_score = 0
        self._total_days_played = 0
        self._weekly_scores: list[dict] = []
        self._monthly_total = 0
        self._yesterday_score = 0

        # Overtime window
        self._penalty_window_ms: Optional[int] = None
        self._last_penalty_check_ms: Optional[int] = None

        self._active = True
        self._unsubscribe_events: Optional[Callable[[], None]] = None

    # ---- Read-only properties ----

    @property
    def date(self) -> Optional[str]:
        return self._date

    @property
    def daily_score(self) -> int:
        return self._daily_score

    @property
    def current_streak(self) -> int:
        return self._current_streak

    @property
    def highest_streak(self) -> int:
        return self._highest_streak

    @property
    def overtime_penalty_accum(self) -> int:
        return self._overtime_penalty_accum

    @property
    def daily_rollover_bonus(self) -> int:
        return self._daily_rollover_bonus

    @property
    def all_time_high_score(self) -> int:
        return self._all_time_high_score

    @property
    def total_days_played(self) -> int:
        return self._total_days_played

    @property
    def weekly_scores(self) -> list[dict]:
        return [dict(entry) for entry in self._weekly_scores]

    @property
    def monthly_total(self) -> int:
        return self._monthly_total

    @property
    def yesterday_score(self) -> int:
        return self._yesterday_score

    @property
    def session_score(self) -> int:
        return self._session_score

    @property
    def session_answers(self) -> int:
        return self._session_answers

    @property
    def penalty_window_started_ms(self) -> Optional[int]:
        return self._penalty_window_ms

    def get_score_info(self) -> ScoreInfo:
        weekly_total = sum(entry["score"] for entry in self._weekly_scores)
        weekly_average = (
            round_half_up(weekly_total / len(self._weekly_scores)) if self._weekly_scores else 0
        )
        level = self._current_streak // STREAK_MILESTONE
        return ScoreInfo(
            daily_score=self._daily_score,
            current_streak=self._current_streak,
            highest_streak=self._highest_streak,
            overtime_penalty_accum=self._overtime_penalty_accum,
            daily_rollover_bonus=self._daily_rollover_bonus,
            all_time_high_score=self._all_time_high_score,
            total_days_played=self._total_days_played,
            weekly_average=weekly_average,
            yesterday_score=self._yesterday_score,
            session_score=self._session_score,
            weekly_scores=self.weekly_scores,
            weekly_total=weekly_total,
            monthly_total=self._monthly_total,
            streak_level=level,
            next_milestone=(level + 1) * STREAK_MILESTONE,
            milestone_progress=(self._current_streak % STREAK_MILESTONE) / STREAK_MILESTONE,
            overtime_minutes=self._overtime_penalty_accum // OVERTIME_PENALTY_PER_MINUTE,
        )

    # ---- Startup ----

    async def load(self, now_ms: Optional[int] = None) -> ScoreInfo:
        """Restore ledger and history, then roll over if the stored day is stale."""
        now = self._clock() if now_ms is None else now_ms
        history = await self._records.load(SCORE_HISTORY_KEY)
        if history is not None:
            self._restore_history(history)
        daily = await self._records.load(DAILY_SCORE_KEY)
        if daily is not None:
            self._restore_daily(daily)

        if self._date is None:
            self._date = day_key(now, self._tz)
            self.persist()
        else:
            self.check_daily_reset(now)
        logger.info(
            "Loaded score data: daily=%d streak=%d best=%d",
            self._daily_score, self._highest_streak, self._all_time_high_score,
        )
        return self.get_score_info()

    def _restore_daily(self, record: dict) -> None:
        try:
            date = record.get("date")
            date = str(date) if date else None
            daily_score = max(SCORE_FLOOR, int(record.get("dailyScore", 0)))
            current_streak = max(0, int(record.get("currentStreak", 0)))
            highest_streak = max(0, int(record.get("highestStreak", 0)))
            penalty = max(0, int(record.get("overtimePenaltyAccum", 0)))
            rollover = max(0, int(record.get("dailyRolloverBonus", 0)))
        except (TypeError, ValueError) as e:
            logger.warning("Malformed daily score record, using defaults: %s", e)
            return
        self._date = date
        self._daily_score = daily_score
        self._current_streak = current_streak
        self._highest_streak = max(highest_streak, current_streak)
        self._overtime_penalty_accum = penalty
        self._daily_rollover_bonus = rollover
        self._last_milestone_streak = current_streak if current_streak % STREAK_MILESTONE == 0 else 0

    def _restore_history(self, record: dict) -> None:
        try:
            all_time_high = int(record.get("allTimeHighScore", 0))
            days_played = max(0, int(record.get("totalDaysPlayed", 0)))
            monthly_total = int(record.get("monthlyTotal", 0))
            yesterday = int(record.get("yesterdayScore", 0))
            weekly = record.get("weeklyScores", [])
            if not isinstance(weekly, list):
                raise TypeError("weeklyScores is not a list")
        except (TypeError, ValueError) as e:
            logger.warning("Malformed score history record, using defaults: %s", e)
            return
        self._all_time_high_score = all_time_high
        self._total_days_played = days_played
        self._monthly_total = monthly_total
        self._yesterday_score = yesterday
        self._weekly_scores = _clean_weekly(weekly)

    def start(self) -> None:
        """Subscribe to balance events and register the periodic jobs."""
        if not self._active or self._unsubscribe_events is not None:
            return
        self._unsubscribe_events = self._events.subscribe(
            self._on_account_event,
            types=[EventType.TIME_EXPIRED, EventType.CREDITS_ADDED],
        )
        self.scheduler.add_job(
            self._penalty_job,
            trigger=IntervalTrigger(seconds=PENALTY_CHECK_INTERVAL_SECONDS),
            id=PENALTY_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self._daily_reset_job,
            trigger=IntervalTrigger(seconds=DAILY_RESET_CHECK_INTERVAL_SECONDS),
            id=DAILY_RESET_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    # ---- Answers ----

    def record_answer(
        self,
        is_correct: bool,
        elapsed_answer_seconds: float,
        category: Optional[str] = None,
        now_ms: Optional[int] = None,
    ) -> AnswerResult:
        if not self._active:
            logger.debug("Ignoring answer after cleanup")
            return AnswerResult(
                is_correct=bool(is_correct),
                points=0,
                current_streak=self._current_streak,
                highest_streak=self._highest_streak,
                daily_score=self._daily_score,
                previous_streak=self._current_streak,
                recorded=False,
            )
        now = self._clock() if now_ms is None else now_ms
        # An answer just after midnight belongs to the new day
        self.check_daily_reset(now)

        previous_streak = self._current_streak
        previous_score = self._daily_score
        points = calculate_points(is_correct, elapsed_answer_seconds, previous_streak)
        self._daily_score += points
        self._session_score += points
        self._session_answers += 1

        is_milestone = False
        if is_correct:
            self._current_streak += 1
            self._highest_streak = max(self._highest_streak, self._current_streak)
            if (
                self._current_streak % STREAK_MILESTONE == 0
                and self._current_streak != self._last_milestone_streak
            ):
                is_milestone = True
                self._last_milestone_streak = self._current_streak
                logger.info("Streak milestone reached: %d", self._current_streak)
        else:
            self._current_streak = 0
            self._last_milestone_streak = 0
        self._apply_negative_score_rule(previous_score)

        result = AnswerResult(
            is_correct=bool(is_correct),
            points=points,
            current_streak=self._current_streak,
            highest_streak=self._highest_streak,
            daily_score=self._daily_score,
            is_streak_milestone=is_milestone,
            streak_broken=not is_correct and previous_streak > 0,
            previous_streak=previous_streak,
        )
        self._events.publish(ScoreUpdate(
            is_correct=result.is_correct,
            points=points,
            daily_score=self._daily_score,
            current_streak=self._current_streak,
            highest_streak=self._highest_streak,
            is_streak_milestone=is_milestone,
            streak_broken=result.streak_broken,
            category=category,
        ))
        self.persist()
        return result

    def _apply_negative_score_rule(self, previous_score: int) -> None:
        """Crossing below zero breaks the streak and costs one highest-streak level."""
        if previous_score >= 0 and self._daily_score < 0:
            self._current_streak = 0
            self._last_milestone_streak = 0
            self._highest_streak = max(0, self._highest_streak - 1)
            logger.info("Daily score went negative; streak reset, highest streak now %d", self._highest_streak)

    # ---- Overtime penalties ----

    def _on_account_event(self, event) -> None:
        if not self._active:
            return
        if isinstance(event, TimeExpired):
            if event.expired_during == "background":
                self.start_penalty_window(event.at_ms)
        elif isinstance(event, CreditsAdded) and event.new_total > 0:
            self.stop_penalty_window()

    def start_penalty_window(self, now_ms: int) -> None:
        logger.info("Starting penalty accumulation, user is overtime")
        self._penalty_window_ms = now_ms
        self._last_penalty_check_ms = now_ms

    def stop_penalty_window(self) -> None:
        if self._penalty_window_ms is not None:
            logger.info("Stopping penalty accumulation, user has time credits")
        self._penalty_window_ms = None
        self._last_penalty_check_ms = None

    async def _penalty_job(self) -> None:
        try:
            self.check_penalties(self._clock())
        except Exception:
            logger.exception("Overtime penalty check failed")

    def check_penalties(self, now_ms: int) -> int:
        """Deduct points for overtime since the last check. Returns the penalty."""
        if not self._active:
            return 0
        # Overtime after midnight is billed to the new day
        self.check_daily_reset(now_ms)
        if self._last_penalty_check_ms is None:
            return 0
        if self._account.available_time > 0 or not self._account.is_backgrounded:
            return 0

        elapsed_ms = now_ms - self._last_penalty_check_ms
        if elapsed_ms < 0:
            logger.warning("Clock moved backwards by %dms; skipping penalty check", -elapsed_ms)
            self._last_penalty_check_ms = now_ms
            return 0
        penalty = elapsed_ms // MS_PER_PENALTY_POINT
        if penalty <= 0:
            return 0
        # Advance only by the time billed so sub-point remainders carry over
        self._last_penalty_check_ms += penalty * MS_PER_PENALTY_POINT

        previous_score = self._daily_score
        previous_accum = self._overtime_penalty_accum
        self._daily_score = max(SCORE_FLOOR, previous_score - penalty)
        self._overtime_penalty_accum += penalty
        self._apply_negative_score_rule(previous_score)

        overtime_minutes = (now_ms - self._penalty_window_ms) // 60000
        logger.info(
            "Applied overtime penalty: -%d points (%d minutes overtime)", penalty, overtime_minutes
        )
        self._events.publish(PenaltyApplied(
            penalty=penalty,
            overtime_minutes=overtime_minutes,
            daily_score=self._daily_score,
            total_penalty=self._overtime_penalty_accum,
        ))
        if self._overtime_penalty_accum // PENALTY_WARNING_STEP > previous_accum // PENALTY_WARNING_STEP:
            self._events.publish(ShowMessage(
                kind="penalty",
                message=(
                    f"Overtime alert! You've lost {self._overtime_penalty_accum} points today. "
                    f"Daily score: {self._daily_score}. Complete quizzes to earn time "
                    "and stop losing points."
                ),
                priority="high",
            ))
        self.persist()
        return penalty

    # ---- Daily rollover ----

    async def _daily_reset_job(self) -> None:
        try:
            self.check_daily_reset(self._clock())
        except Exception:
            logger.exception("Daily reset check failed")

    def check_daily_reset(self, now_ms: int) -> Optional[DailyResetResult]:
        """Roll the ledger over if the calendar day changed."""
        if not self._active:
            return None
        today = day_key(now_ms, self._tz)
        if self._date is None:
            self._date = today
            self.persist()
            return None
        if self._date == today:
            return None
        # Bonus is paid on the balance as of now, not as of the last tick
        self._account.settle(now_ms)
        return self._perform_daily_reset(today)

    def _perform_daily_reset(self, today: str) -> DailyResetResult:
        previous_date = self._date
        yesterday_score = self._daily_score
        available = self._account.available_time
        rollover_minutes = max(0, available) // 60
        rollover_bonus = calculate_rollover_bonus(available)
        logger.info("New day detected (%s -> %s), performing daily reset", previous_date, today)

        was_new_record = yesterday_score > self._all_time_high_score
        if was_new_record:
            self._all_time_high_score = yesterday_score

        self._archive_day(previous_date, yesterday_score, today)
        self._yesterday_score = yesterday_score

        self._daily_score = rollover_bonus
        self._daily_rollover_bonus = rollover_bonus
        self._current_streak = 0
        self._last_milestone_streak = 0
        self._session_score = 0
        self._session_answers = 0
        self._overtime_penalty_accum = 0
        if yesterday_score > 0:
            self._total_days_played += 1
        self._date = today

        result = DailyResetResult(
            previous_date=previous_date,
            new_date=today,
            yesterday_score=yesterday_score,
            rollover_bonus=rollover_bonus,
            rollover_minutes=rollover_minutes,
            was_new_record=was_new_record,
            new_day_score=self._daily_score,
            total_days_played=self._total_days_played,
            monthly_total=self._monthly_total,
        )
        if rollover_bonus:
            logger.info("Rollover bonus: %d points for unused time", rollover_bonus)
        self._events.publish(DailyReset(
            previous_date=previous_date,
            new_date=today,
            yesterday_score=yesterday_score,
            rollover_bonus=rollover_bonus,
            rollover_minutes=rollover_minutes,
            was_new_record=was_new_record,
            all_time_high_score=self._all_time_high_score,
            new_day_score=self._daily_score,
            total_days_played=self._total_days_played,
            monthly_total=self._monthly_total,
        ))
        self._events.publish(ShowMessage(
            kind="dailyReset",
            message=_daily_reset_message(yesterday_score, was_new_record, rollover_bonus),
            priority="high",
        ))
        self.persist()
        return result

    def _archive_day(self, date: str, score: int, today: str) -> None:
        self._weekly_scores.append({"date": date, "score": score, "streak": self._highest_streak})
        del self._weekly_scores[:-WEEKLY_WINDOW]

        # Month is compared against the oldest day still in the window
        if self._weekly_scores[0]["date"][:7] != today[:7]:
            self._monthly_total = score
        else:
            self._monthly_total = sum(entry["score"] for entry in self._weekly_scores)

    # ---- Persistence ----

    def to_daily_record(self) -> dict:
        return {
            "date": self._date,
            "dailyScore": self._daily_score,
            "currentStreak": self._current_streak,
            "highestStreak": self._highest_streak,
            "overtimePenaltyAccum": self._overtime_penalty_accum,
            "dailyRolloverBonus": self._daily_rollover_bonus,
        }

    def to_history_record(self) -> dict:
        return {
            "allTimeHighScore": self._all_time_high_score,
            "totalDaysPlayed": self._total_days_played,
            "weeklyScores": self.weekly_scores,
            "monthlyTotal": self._monthly_total,
            "yesterdayScore": self._yesterday_score,
        }

    def persist(self) -> None:
        self._records.save_nowait(DAILY_SCORE_KEY, self.to_daily_record())
        self._records.save_nowait(SCORE_HISTORY_KEY, self.to_history_record())

    # ---- Reset / cleanup ----

    def reset(self, now_ms: Optional[int] = None) -> None:
        """Return every ledger and history value to its default."""
        now = self._clock() if now_ms is None else now_ms
        self._date = day_key(now, self._tz)
        self._daily_score = 0
        self._current_streak = 0
        self._highest_streak = 0
        self._overtime_penalty_accum = 0
        self._daily_rollover_bonus = 0
        self._session_score = 0
        self._session_answers = 0
        self._last_milestone_streak = 0
        self._all_time_high_score = 0
        self._total_days_played = 0
        self._weekly_scores = []
        self._monthly_total = 0
        self._yesterday_score = 0
        self.stop_penalty_window()
        logger.info("Score ledger reset")

    def cleanup(self) -> None:
        """Stop jobs and subscriptions. Safe to call more than once."""
        if not self._active:
            return
        self._active = False
        for job_id in (PENALTY_JOB_ID, DAILY_RESET_JOB_ID):
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                pass
        if self._unsubscribe_events is not None:
            self._unsubscribe_events()
            self._unsubscribe_events = None
        logger.info("Score ledger cleaned up")


def _daily_reset_message(yesterday_score: int, was_new_record: bool, rollover_bonus: int) -> str:
    lines = ["Good morning!"]
    if yesterday_score > 0:
        lines.append(f"Yesterday's score: {yesterday_score:,} points")
        if was_new_record:
            lines.append("New personal best!")
    if rollover_bonus > 0:
        lines.append(f"Rollover bonus: +{rollover_bonus} points for saving screen time")
    lines.append("Ready for a new day of learning?")
    return "\n".join(lines)
