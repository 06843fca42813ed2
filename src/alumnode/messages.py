from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from .errors import (
    AlumNodeError,
    Conflict,
    EmptyMessage,
    MessageFetchFailed,
    MessageSendFailed,
    NotFound,
    TransportFailure,
)
from .models import Conversation, Message, Sender
from .notifications import TYPE_MESSAGE, NotificationStore
from .store import Filter, Store

logger = logging.getLogger(__name__)

MESSAGE_ORDER = ("created_at_ms", "seq")
PREVIEW_CHARS = 80


class MessageStore:
    """Appends messages to a conversation and reads its ordered history."""

    def __init__(
        self,
        store: Store,
        *,
        notifications: NotificationStore | None = None,
        page_size: int = 50,
    ) -> None:
        self._store = store
        self._notifications = notifications
        self._page_size = page_size

    async def send_message(self, conversation_id: str, sender_id: str, content: str) -> Message:
        """Append a trimmed message and touch the conversation's last activity.

        Blank content is rejected before the store is contacted. The sender
        must be one of the conversation's participants.
        """

        text = (content or "").strip()
        if not text:
            raise EmptyMessage()

        try:
            conv_row = await self._store.select_one("conversations", Filter(eq={"id": conversation_id}))
        except TransportFailure as exc:
            raise MessageSendFailed(exc) from exc
        if conv_row is None:
            raise NotFound(f"unknown conversation {conversation_id}")
        conversation = Conversation.from_row(conv_row)
        if sender_id not in conversation.participant_ids:
            raise PermissionError("forbidden")

        try:
            row = await self._store.insert(
                "messages",
                {"conversation_id": conversation_id, "sender_id": sender_id, "content": text, "is_read": False},
            )
        except (TransportFailure, Conflict) as exc:
            raise MessageSendFailed(exc) from exc
        try:
            await self._store.update(
                "conversations",
                {"last_message_at_ms": row["created_at_ms"]},
                Filter(eq={"id": conversation_id}),
            )
        except (TransportFailure, Conflict) as exc:
            await self._discard(row["id"])
            raise MessageSendFailed(exc) from exc

        try:
            senders = await self._senders([sender_id])
        except AlumNodeError:
            logger.warning("message %s stored but sender lookup failed", row["id"], exc_info=True)
            senders = {}
        message = Message.from_row(row, sender=senders.get(sender_id))
        await self._notify_recipient(conversation, message)
        return message

    async def get_messages(
        self, conversation_id: str, limit: int | None = None, after_seq: int = 0
    ) -> list[Message]:
        """Return up to ``limit`` messages oldest first.

        Pass the ``seq`` of the last message already held as ``after_seq`` to
        continue from where a previous page stopped.
        """

        if after_seq < 0:
            raise ValueError("after_seq must be non-negative")
        where = Filter(eq={"conversation_id": conversation_id}, gt={"seq": after_seq} if after_seq else {})
        try:
            rows = await self._store.select(
                "messages", where, order_by=MESSAGE_ORDER, limit=self._page_size if limit is None else limit
            )
            return await self._join(rows)
        except TransportFailure as exc:
            raise MessageFetchFailed(exc) from exc

    async def get_history(self, conversation_id: str, page_size: int | None = None) -> list[Message]:
        """Return the whole conversation oldest first, reading it page by page."""

        limit = page_size or self._page_size
        history: list[Message] = []
        after_seq = 0
        while True:
            page = await self.get_messages(conversation_id, limit=limit, after_seq=after_seq)
            history.extend(page)
            if len(page) < limit:
                return history
            after_seq = page[-1].seq

    async def get_message(self, message_id: str) -> Message:
        try:
            row = await self._store.select_one("messages", Filter(eq={"id": message_id}))
            if row is None:
                raise NotFound(f"unknown message {message_id}")
            return (await self._join([row]))[0]
        except TransportFailure as exc:
            raise MessageFetchFailed(exc) from exc

    async def count(self) -> int:
        return await self._store.count("messages")

    async def _discard(self, message_id: str) -> None:
        try:
            await self._store.delete("messages", Filter(eq={"id": message_id}))
        except TransportFailure:
            logger.error("could not remove message %s after a failed send", message_id, exc_info=True)

    async def _join(self, rows: list[Mapping[str, Any]]) -> list[Message]:
        senders = await self._senders(row["sender_id"] for row in rows)
        return [Message.from_row(row, sender=senders.get(row["sender_id"])) for row in rows]

    async def _senders(self, sender_ids: Iterable[str]) -> dict[str, Sender]:
        wanted = sorted(set(sender_ids))
        if not wanted:
            return {}
        rows = await self._store.select("users", Filter(isin={"id": wanted}))
        return {row["id"]: Sender(id=row["id"], name=row["name"], avatar_url=row.get("avatar_url")) for row in rows}

    async def _notify_recipient(self, conversation: Conversation, message: Message) -> None:
        if self._notifications is None:
            return
        recipient = conversation.other_participant(message.sender_id)
        if recipient is None:
            return
        sender_name = message.sender.name if message.sender else "Someone"
        preview = message.content if len(message.content) <= PREVIEW_CHARS else message.content[:PREVIEW_CHARS] + "..."
        await self._notifications.notify(
            recipient,
            TYPE_MESSAGE,
            f"New message from {sender_name}",
            preview,
            link=f"/messages?conversation={conversation.id}",
        )
