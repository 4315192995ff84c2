"""
Notification sink and the fire-and-forget dispatcher in front of it.

Transitions hand events to ``NotificationDispatcher.dispatch`` after the
store update has been applied. Sends run as background tasks, so a slow or
failing sink never delays or rolls back a transition.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import structlog
from supabase import AsyncClient

from models.trade import NotificationKind

logger = structlog.get_logger(__name__)

NOTIFICATION_TABLE = "notifications"

DEFAULT_NOTIFY_TIMEOUT = 5.0


class Notifier(Protocol):
    async def notify(self, user_id: str, kind: NotificationKind, fields: dict[str, Any]) -> None: ...


def build_message(kind: NotificationKind, fields: dict[str, Any]) -> str:
    """Human readable text for a notification row."""
    actor = fields.get("actor_username") or fields.get("actor_id") or "Someone"
    card = fields.get("card_name") or "your card"

    if kind == NotificationKind.OFFER_RECEIVED:
        return f"{actor} made an offer on {card}"
    if kind == NotificationKind.COUNTEROFFER_RECEIVED:
        return f"{actor} sent a counteroffer: {card}"
    if kind == NotificationKind.TRADE_ACCEPTED:
        return f"{actor} accepted your counteroffer for {card}"
    if kind == NotificationKind.OFFER_REJECTED:
        return f"{actor} rejected your counteroffer for {card}"
    return f"Trade update from {actor}"


class SupabaseNotifier:
    """Persists notifications to the notifications table."""

    def __init__(self, client: AsyncClient):
        self.client = client

    async def notify(self, user_id: str, kind: NotificationKind, fields: dict[str, Any]) -> None:
        data = {
            "user_id": user_id,
            "type": kind.value,
            "message": build_message(kind, fields),
            "viewed": False,
            "metadata": {key: str(value) for key, value in fields.items() if value is not None},
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        await self.client.table(NOTIFICATION_TABLE).insert(data).execute()


class NotificationDispatcher:
    """Schedules sends without awaiting them; failures are logged, never raised."""

    def __init__(self, notifier: Notifier, timeout: Optional[float] = DEFAULT_NOTIFY_TIMEOUT):
        self.notifier = notifier
        self.timeout = timeout
        self._pending: set[asyncio.Task] = set()

    def dispatch(self, user_id: str, kind: NotificationKind, **fields: Any) -> None:
        task = asyncio.get_running_loop().create_task(self._send(user_id, kind, fields))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, user_id: str, kind: NotificationKind, fields: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(self.notifier.notify(user_id, kind, fields), self.timeout)
        except Exception as exc:
            logger.warning(
                "notification_failed",
                user_id=user_id,
                kind=kind.value,
                error=repr(exc),
            )
            return
        logger.debug("notification_sent", user_id=user_id, kind=kind.value)

    async def drain(self) -> None:
        """Wait for in-flight sends; used at shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
