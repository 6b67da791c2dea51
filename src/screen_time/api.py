"""
Screen-Time API: FastAPI local server for the screen-time economy.

This server provides:
- Balance queries and time credits
- Host lifecycle reports (foreground/background)
- Quiz answer scoring
- Score snapshots, recent events and recent logs
"""

import asyncio
import logging
import sys
import traceback
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Deque, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .economy import TimeEconomy
from .events import event_to_dict
from .lifecycle import AppState, ManualLifecycleSource
from .notifications import LogNotifier, WebhookNotifier
from .store import SqliteStore

logger = logging.getLogger("screen_time")
logger.setLevel(logging.INFO)


# ============ Server-side Log Buffer ============

# Circular buffer to store recent log entries (max 100)
log_buffer: Deque[dict] = deque(maxlen=100)


class LogBufferHandler(logging.Handler):
    """Logging handler that captures records to the circular buffer."""

    def emit(self, record: logging.LogRecord):
        try:
            log_buffer.append({
                "timestamp": datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
                "level": record.levelname,
                "message": self.format(record),
            })
        except Exception:
            self.handleError(record)


buffer_handler = LogBufferHandler()
buffer_handler.setLevel(logging.DEBUG)
buffer_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
if not any(isinstance(h, LogBufferHandler) for h in logger.handlers):
    logger.addHandler(buffer_handler)


def _asyncio_exception_handler(loop, context):
    """Log uncaught exceptions in asyncio tasks, then defer to the default handler."""
    exception = context.get("exception")
    if exception:
        tb = "".join(traceback.format_exception(type(exception), exception, exception.__traceback__))
        logger.error("CRASH [asyncio]: %s", tb)
        print(f"CRASH [asyncio]: {type(exception).__name__}: {exception}", file=sys.stderr)
    else:
        logger.error("ASYNCIO ERROR: %s", context.get("message"))
    loop.default_exception_handler(context)


# ============ Request / Response Models ============

class CreditRequest(BaseModel):
    seconds: int


class LifecycleRequest(BaseModel):
    state: AppState


class AnswerRequest(BaseModel):
    is_correct: bool
    elapsed_answer_seconds: float = Field(ge=0)
    category: Optional[str] = None


class TimeResponse(BaseModel):
    available_time: int
    formatted: str
    state: str
    app_state: AppState
    is_tracking: bool
    background_entered_at: Optional[int] = None


class AnswerResponse(BaseModel):
    is_correct: bool
    points: int
    current_streak: int
    highest_streak: int
    daily_score: int
    is_streak_milestone: bool
    streak_broken: bool
    previous_streak: int
    available_time: int


class LogEntry(BaseModel):
    timestamp: str
    level: str
    message: str


class LogsResponse(BaseModel):
    logs: List[LogEntry]
    count: int


# ============ Application ============

def build_economy(settings: Settings, scheduler: AsyncIOScheduler) -> TimeEconomy:
    """Construct the engine context with its concrete collaborators."""
    if settings.webhook_url:
        notifier = WebhookNotifier(scheduler, settings.webhook_url)
    else:
        notifier = LogNotifier()
    return TimeEconomy(
        store=SqliteStore(settings.db_path),
        lifecycle=ManualLifecycleSource(),
        notifier=notifier,
        scheduler=scheduler,
        settings=settings,
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    event_buffer: Deque[dict] = deque(maxlen=100)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(_asyncio_exception_handler)

        scheduler = AsyncIOScheduler()
        economy = build_economy(settings, scheduler)
        await economy.records.store.init()
        economy.add_event_listener(lambda event: event_buffer.append(event_to_dict(event)))
        scheduler.start()
        logger.info("Scheduler started")
        await economy.start()
        app.state.economy = economy
        yield

        await economy.shutdown()
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    app = FastAPI(
        title="Screen-Time API",
        description="Local server for earned screen time and quiz scoring",
        version="0.1.0",
        lifespan=lifespan,
    )

    def economy_of(request: Request) -> TimeEconomy:
        economy = getattr(request.app.state, "economy", None)
        if economy is None:
            raise HTTPException(status_code=503, detail="Engine not started")
        return economy

    def time_response(economy: TimeEconomy) -> TimeResponse:
        status = economy.get_tracking_status()
        return TimeResponse(
            available_time=status.available_time,
            formatted=economy.format_time(status.available_time),
            state=status.state.value,
            app_state=status.app_state,
            is_tracking=status.is_tracking,
            background_entered_at=status.background_entered_at,
        )

    @app.get("/")
    async def root():
        return {"service": "screen-time-api", "status": "ok"}

    @app.get("/api/time", response_model=TimeResponse)
    async def get_time(request: Request):
        return time_response(economy_of(request))

    @app.post("/api/time/credits", response_model=TimeResponse)
    async def add_credits(body: CreditRequest, request: Request):
        economy = economy_of(request)
        economy.add_time_credits(body.seconds)
        return time_response(economy)

    @app.post("/api/lifecycle", response_model=TimeResponse)
    async def report_lifecycle(body: LifecycleRequest, request: Request):
        economy = economy_of(request)
        economy.lifecycle.set_state(body.state)
        return time_response(economy)

    @app.post("/api/answers", response_model=AnswerResponse)
    async def record_answer(body: AnswerRequest, request: Request):
        economy = economy_of(request)
        result = economy.record_answer(body.is_correct, body.elapsed_answer_seconds, body.category)
        return AnswerResponse(
            is_correct=result.is_correct,
            points=result.points,
            current_streak=result.current_streak,
            highest_streak=result.highest_streak,
            daily_score=result.daily_score,
            is_streak_milestone=result.is_streak_milestone,
            streak_broken=result.streak_broken,
            previous_streak=result.previous_streak,
            available_time=economy.get_available_time(),
        )

    @app.get("/api/score")
    async def get_score(request: Request):
        return economy_of(request).get_score_info().to_export_dict()

    @app.post("/api/progress/erase")
    async def erase_progress(request: Request):
        await economy_of(request).erase_all_progress()
        return {"erased": True}

    @app.get("/api/events/recent")
    async def get_recent_events(limit: int = 50):
        limit = max(0, min(limit, 100))
        events = list(event_buffer)[-limit:] if limit else []
        return {"events": events, "count": len(events)}

    @app.get("/api/logs/recent", response_model=LogsResponse)
    async def get_recent_logs(limit: int = 50):
        limit = max(0, min(limit, 100))
        recent_logs = list(log_buffer)[-limit:] if limit else []
        return {"logs": recent_logs, "count": len(recent_logs)}

    return app
