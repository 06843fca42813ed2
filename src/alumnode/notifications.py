from __future__ import annotations

import logging
from typing import Callable

from .errors import AlumNodeError
from .hub import INSERT, ChangeEvent, Subscription
from .models import Notification
from .store import Filter, Store

logger = logging.getLogger(__name__)

TYPE_MESSAGE = "message"
TYPE_CONNECTION_REQUEST = "connection_request"
TYPE_CONNECTION_ACCEPTED = "connection_accepted"


class NotificationStore:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def create(
        self, user_id: str, type: str, title: str, message: str, link: str | None = None
    ) -> Notification:
        row = await self._store.insert(
            "notifications",
            {"user_id": user_id, "type": type, "title": title, "message": message, "link": link, "is_read": False},
        )
        return Notification.from_row(row)

    async def notify(
        self, user_id: str, type: str, title: str, message: str, link: str | None = None
    ) -> Notification | None:
        """Create a notification as a side effect; failures are logged, not raised."""

        try:
            return await self.create(user_id, type, title, message, link)
        except AlumNodeError:
            logger.warning("could not notify %s (%s)", user_id, type, exc_info=True)
            return None

    async def list_for_user(self, user_id: str, limit: int = 20) -> list[Notification]:
        rows = await self._store.select(
            "notifications",
            Filter(eq={"user_id": user_id}),
            order_by=("created_at_ms", "seq"),
            descending=True,
            limit=limit,
        )
        return [Notification.from_row(row) for row in rows]

    async def unread_count(self, user_id: str) -> int:
        return await self._store.count("notifications", Filter(eq={"user_id": user_id, "is_read": False}))

    async def mark_as_read(self, notification_id: str, user_id: str) -> bool:
        rows = await self._store.update(
            "notifications",
            {"is_read": True},
            Filter(eq={"id": notification_id, "user_id": user_id, "is_read": False}),
        )
        return bool(rows)

    async def mark_all_as_read(self, user_id: str) -> int:
        rows = await self._store.update(
            "notifications", {"is_read": True}, Filter(eq={"user_id": user_id, "is_read": False})
        )
        return len(rows)

    def subscribe(self, user_id: str, callback: Callable[[Notification], None]) -> Subscription:
        def _deliver(event: ChangeEvent) -> None:
            callback(Notification.from_row(event.row))

        return self._store.subscribe("notifications", {"user_id": user_id}, _deliver, kinds=[INSERT])

    def unsubscribe(self, subscription: Subscription) -> None:
        self._store.unsubscribe(subscription)
