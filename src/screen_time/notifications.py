"""Best-effort reminder delivery.

The engine only ever calls ``schedule_at``, ``cancel`` and
``cancel_all``. ``WebhookNotifier`` turns each reminder into a one-shot
APScheduler job that POSTs the message to a webhook when it fires.
``LogNotifier`` is used when no webhook is configured.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Protocol

import requests
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger

logger = logging.getLogger(__name__)

JOB_PREFIX = "notify_"


class NotificationScheduler(Protocol):
    def schedule_at(self, notification_id: str, message: str, when_ms: int) -> None: ...

    def cancel(self, notification_id: str) -> None: ...

    def cancel_all(self) -> None: ...


def send_webhook(webhook_url: str, message: str, data: Optional[dict] = None) -> dict:
    """POST a notification payload to a webhook."""
    payload = {
        "type": "notification",
        "message": message,
        "timestamp": datetime.now().isoformat(),
        **(data or {}),
    }
    try:
        response = requests.post(webhook_url, json=payload, timeout=5)
        if response.ok:
            return {"success": True, "method": "webhook", "url": webhook_url}
        return {"success": False, "error": f"Webhook failed: HTTP {response.status_code}"}
    except requests.RequestException as e:
        return {"success": False, "error": str(e)}


class WebhookNotifier:
    """Schedules reminders as APScheduler date jobs delivered by webhook."""

    def __init__(self, scheduler, webhook_url: str):
        self.scheduler = scheduler
        self.webhook_url = webhook_url
        self._ids: set[str] = set()

    def schedule_at(self, notification_id: str, message: str, when_ms: int) -> None:
        run_date = datetime.fromtimestamp(when_ms / 1000).astimezone()
        self.scheduler.add_job(
            self._deliver,
            trigger=DateTrigger(run_date=run_date),
            args=[notification_id, message],
            id=JOB_PREFIX + notification_id,
            replace_existing=True,
            misfire_grace_time=60,
        )
        self._ids.add(notification_id)
        logger.info("Scheduled notification %s for %s", notification_id, run_date.strftime("%H:%M:%S"))

    def cancel(self, notification_id: str) -> None:
        self._ids.discard(notification_id)
        try:
            self.scheduler.remove_job(JOB_PREFIX + notification_id)
        except JobLookupError:
            pass

    def cancel_all(self) -> None:
        for notification_id in list(self._ids):
            self.cancel(notification_id)

    def _deliver(self, notification_id: str, message: str) -> None:
        # Plain function: APScheduler runs it on a worker thread, off the loop
        self._ids.discard(notification_id)
        result = send_webhook(self.webhook_url, message, {"id": notification_id})
        if not result["success"]:
            logger.warning("Notification %s not delivered: %s", notification_id, result["error"])


class LogNotifier:
    """Notifier that only logs. Used when no delivery channel is configured."""

    def __init__(self):
        self.scheduled: dict[str, tuple[str, int]] = {}

    def schedule_at(self, notification_id: str, message: str, when_ms: int) -> None:
        self.scheduled[notification_id] = (message, when_ms)
        logger.info("Notification %s at %d: %s", notification_id, when_ms, message)

    def cancel(self, notification_id: str) -> None:
        self.scheduled.pop(notification_id, None)

    def cancel_all(self) -> None:
        self.scheduled.clear()
