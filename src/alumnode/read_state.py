from __future__ import annotations

from .store import Filter, Store


class ReadStateReconciler:
    """Flips read flags and counts what a user has not read yet.

    Read flags only ever move from unread to read, so marking is idempotent.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    async def mark_as_read(self, conversation_id: str, reader_id: str) -> int:
        """Mark every unread message the reader did not send; return how many flipped."""

        rows = await self._store.update(
            "messages",
            {"is_read": True},
            Filter(eq={"conversation_id": conversation_id, "is_read": False}, neq={"sender_id": reader_id}),
        )
        return len(rows)

    async def get_unread_count(self, user_id: str) -> int:
        conversation_ids = await self._conversation_ids(user_id)
        if not conversation_ids:
            return 0
        return await self._store.count(
            "messages",
            Filter(
                eq={"is_read": False},
                neq={"sender_id": user_id},
                isin={"conversation_id": conversation_ids},
            ),
        )

    async def unread_by_conversation(self, user_id: str) -> dict[str, int]:
        conversation_ids = await self._conversation_ids(user_id)
        if not conversation_ids:
            return {}
        rows = await self._store.select(
            "messages",
            Filter(
                eq={"is_read": False},
                neq={"sender_id": user_id},
                isin={"conversation_id": conversation_ids},
            ),
        )
        counts = {conversation_id: 0 for conversation_id in conversation_ids}
        for row in rows:
            counts[row["conversation_id"]] += 1
        return counts

    async def _conversation_ids(self, user_id: str) -> list[str]:
        rows = await self._store.select("conversations", Filter(contains={"participant_ids": [user_id]}))
        return [row["id"] for row in rows]
