from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from .errors import Conflict, ConversationResolutionFailed, NotFound, SelfConversation, TransportFailure
from .models import Conversation, Message, pair_key
from .store import Filter, Store, _now_ms
from .users import UserDirectory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationSummary:
    conversation: Conversation
    other_user: dict[str, Any] | None
    last_message: Message | None
    unread_count: int

    def to_api_dict(self) -> dict[str, Any]:
        last = self.last_message
        return {
            "id": self.conversation.id,
            "created_at_ms": self.conversation.created_at_ms,
            "last_message_at_ms": self.conversation.last_message_at_ms,
            "other_user": self.other_user,
            "last_message": None
            if last is None
            else {"id": last.id, "sender_id": last.sender_id, "content": last.content, "is_read": last.is_read},
            "unread_count": self.unread_count,
        }


class ConversationResolver:
    """Finds or creates the single conversation shared by two users."""

    def __init__(self, store: Store, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._store = store
        self._users = UserDirectory(store)
        self._now = now_func

    async def get_or_create_conversation(self, user_a: str, user_b: str) -> tuple[str, bool]:
        """Return ``(conversation_id, is_new)`` for the unordered pair.

        The pair key is unique in the store, so when two callers race to
        create the same conversation the loser re-reads the winner's row.
        """

        if user_a == user_b:
            raise SelfConversation()
        try:
            existing = await self._find_pair(user_a, user_b)
            if existing is not None:
                return existing.id, False
            try:
                row = await self._store.insert(
                    "conversations",
                    {
                        "participant_ids": [user_a, user_b],
                        "pair_key": pair_key(user_a, user_b),
                        "last_message_at_ms": self._now(),
                    },
                )
            except Conflict:
                existing = await self._find_pair(user_a, user_b)
                if existing is None:
                    raise
                logger.info("conversation for %s already created concurrently", existing.pair_key)
                return existing.id, False
            return row["id"], True
        except (TransportFailure, Conflict) as exc:
            raise ConversationResolutionFailed(exc) from exc

    async def get_conversation(self, conversation_id: str) -> Conversation:
        row = await self._store.select_one("conversations", Filter(eq={"id": conversation_id}))
        if row is None:
            raise NotFound(f"unknown conversation {conversation_id}")
        return Conversation.from_row(row)

    async def list_conversations(self, user_id: str) -> list[ConversationSummary]:
        rows = await self._store.select(
            "conversations",
            Filter(contains={"participant_ids": [user_id]}),
            order_by=("last_message_at_ms", "seq"),
            descending=True,
        )
        conversations = [Conversation.from_row(row) for row in rows]
        if not conversations:
            return []

        others = {c.other_participant(user_id) for c in conversations} - {None}
        users = await self._users.get_many(others)

        summaries: list[ConversationSummary] = []
        for conversation in conversations:
            last_rows = await self._store.select(
                "messages",
                Filter(eq={"conversation_id": conversation.id}),
                order_by=("created_at_ms", "seq"),
                descending=True,
                limit=1,
            )
            unread = await self._store.count(
                "messages",
                Filter(eq={"conversation_id": conversation.id, "is_read": False}, neq={"sender_id": user_id}),
            )
            other_id = conversation.other_participant(user_id)
            other = users.get(other_id) if other_id else None
            summaries.append(
                ConversationSummary(
                    conversation=conversation,
                    other_user=other.public_profile() if other else None,
                    last_message=Message.from_row(last_rows[0]) if last_rows else None,
                    unread_count=unread,
                )
            )
        return summaries

    async def delete_conversation(self, conversation_id: str, user_id: str) -> None:
        conversation = await self.get_conversation(conversation_id)
        if user_id not in conversation.participant_ids:
            raise PermissionError("forbidden")
        # Conversation row first: a failure after it leaves only unreachable messages.
        await self._store.delete("conversations", Filter(eq={"id": conversation_id}))
        await self._store.delete("messages", Filter(eq={"conversation_id": conversation_id}))

    async def _find_pair(self, user_a: str, user_b: str) -> Conversation | None:
        rows = await self._store.select(
            "conversations", Filter(contains={"participant_ids": [user_a, user_b]})
        )
        for row in rows:
            conversation = Conversation.from_row(row)
            # Containment alone would also match a larger group conversation.
            if conversation.is_pair(user_a, user_b):
                return conversation
        return None
