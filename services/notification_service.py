"""
Trade Notification Service
Best-effort, fire-and-forget notifications emitted after ledger and trade
state changes commit. A failed delivery is logged and never retried or raised.
"""

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from sqlalchemy import event
from sqlalchemy.orm import Session

from config import Config

logger = logging.getLogger(__name__)

PENDING_KEY = "pending_notifications"


@dataclass
class TradeNotification:
    trade_id: int
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


class LoggingNotificationSink:
    """Default sink when no notification endpoint is configured"""

    def send(self, notification: TradeNotification) -> None:
        logger.info(
            f"📣 NOTIFICATION: trade={notification.trade_id} "
            f"event={notification.event_type} payload={notification.payload}"
        )


class HttpNotificationSink:
    """POSTs notifications to the notification collaborator"""

    def __init__(self, url: str, timeout: float = Config.NOTIFICATION_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    def send(self, notification: TradeNotification) -> None:
        response = requests.post(self.url, json=notification.to_dict(), timeout=self.timeout)
        response.raise_for_status()


def _default_sink():
    if Config.NOTIFICATION_WEBHOOK_URL:
        return HttpNotificationSink(Config.NOTIFICATION_WEBHOOK_URL)
    return LoggingNotificationSink()


class NotificationService:
    """Queues notifications on the session and delivers them after commit"""

    def __init__(self, sink=None, executor: Optional[Executor] = None, inline: bool = False):
        self.sink = sink or _default_sink()
        self.inline = inline
        self.executor = executor
        if self.executor is None and not inline:
            self.executor = ThreadPoolExecutor(
                max_workers=Config.NOTIFICATION_MAX_WORKERS, thread_name_prefix="TradeNotify"
            )

    def configure(self, sink=None, inline: Optional[bool] = None) -> None:
        """Swap the delivery sink (and optionally switch to inline delivery)"""
        if sink is not None:
            self.sink = sink
        if inline is not None:
            self.inline = inline
            if not inline and self.executor is None:
                self.executor = ThreadPoolExecutor(
                    max_workers=Config.NOTIFICATION_MAX_WORKERS, thread_name_prefix="TradeNotify"
                )

    def emit(self, session: Session, trade_id: int, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Queue a notification; it is delivered only if the session commits"""
        pending: List[TradeNotification] = session.info.setdefault(PENDING_KEY, [])
        pending.append(TradeNotification(trade_id=trade_id, event_type=event_type, payload=payload or {}))

    def dispatch(self, notifications: List[TradeNotification]) -> None:
        for notification in notifications:
            if self.inline:
                self._deliver(notification)
            else:
                self.executor.submit(self._deliver, notification)

    def _deliver(self, notification: TradeNotification) -> None:
        try:
            self.sink.send(notification)
        except Exception as e:
            logger.warning(
                f"⚠️ NOTIFICATION_FAILED: trade={notification.trade_id} "
                f"event={notification.event_type}: {e}"
            )


notification_service = NotificationService()


def _after_commit(session: Session) -> None:
    pending = session.info.pop(PENDING_KEY, None)
    if pending:
        notification_service.dispatch(pending)


def _after_rollback(session: Session) -> None:
    dropped = session.info.pop(PENDING_KEY, None)
    if dropped:
        logger.debug(f"Dropped {len(dropped)} notification(s) from rolled back transaction")


def register_session_hooks(session_factory) -> None:
    """Wire commit/rollback hooks so notifications follow the ledger transaction"""
    if not event.contains(session_factory, "after_commit", _after_commit):
        event.listen(session_factory, "after_commit", _after_commit)
        event.listen(session_factory, "after_rollback", _after_rollback)
