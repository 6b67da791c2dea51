"""Screen-time economy engine.

Earned screen time is debited while the host app is backgrounded; quiz
answers earn points, overtime costs points, and unused time rolls over
into the next day's score.
"""

from .economy import TimeEconomy
from .events import EventChannel, EventType
from .lifecycle import AppState, ManualLifecycleSource
from .score_ledger import ScoreLedger, calculate_points
from .store import RecordStore, SqliteStore
from .time_account import TimeAccount, format_time

__all__ = [
    "AppState",
    "EventChannel",
    "EventType",
    "ManualLifecycleSource",
    "RecordStore",
    "ScoreLedger",
    "SqliteStore",
    "TimeAccount",
    "TimeEconomy",
    "calculate_points",
    "format_time",
]
