import os
import tempfile
import unittest

from alumnode.errors import Conflict, UnknownField
from alumnode.hub import DELETE, INSERT, UPDATE
from alumnode.sqlite_backend import SQLiteBackend
from alumnode.sqlite_store import SQLiteStore
from alumnode.store import Filter, InMemoryStore

from .store_doubles import Clock


class StoreContract:
    """Behaviour shared by every store; mixed into one TestCase per backend."""

    def make_store(self, clock):
        raise NotImplementedError

    async def asyncSetUp(self) -> None:
        self.clock = Clock()
        self.store = self.make_store(self.clock)

    async def asyncTearDown(self) -> None:
        self.store.close()

    async def _message(self, conversation_id="c1", sender_id="u1", content="hi", is_read=False):
        return await self.store.insert(
            "messages",
            {"conversation_id": conversation_id, "sender_id": sender_id, "content": content, "is_read": is_read},
        )

    async def test_insert_stamps_id_seq_and_created_at(self):
        row = await self._message()

        self.assertTrue(row["id"].startswith("msg_"))
        self.assertEqual(row["seq"], 1)
        self.assertEqual(row["created_at_ms"], 1_000)
        self.assertIs(row["is_read"], False)

    async def test_created_at_never_goes_backwards(self):
        first = await self._message(content="one")
        self.clock.advance(-500)
        second = await self._message(content="two")

        self.assertGreaterEqual(second["created_at_ms"], first["created_at_ms"])
        self.assertGreater(second["seq"], first["seq"])

    async def test_select_orders_and_limits(self):
        for i in range(3):
            self.clock.advance(10)
            await self._message(content=f"m{i}")

        ascending = await self.store.select("messages", order_by=("created_at_ms", "seq"))
        descending = await self.store.select("messages", order_by=("created_at_ms", "seq"), descending=True, limit=2)

        self.assertEqual([row["content"] for row in ascending], ["m0", "m1", "m2"])
        self.assertEqual([row["content"] for row in descending], ["m2", "m1"])

    async def test_filters_combine(self):
        await self._message(sender_id="u1", content="mine")
        await self._message(sender_id="u2", content="theirs")
        await self._message(conversation_id="c2", sender_id="u2", content="elsewhere")

        rows = await self.store.select(
            "messages", Filter(eq={"conversation_id": "c1"}, neq={"sender_id": "u1"})
        )
        self.assertEqual([row["content"] for row in rows], ["theirs"])

        self.assertEqual(await self.store.count("messages", Filter(isin={"conversation_id": ["c1", "c2"]})), 3)
        self.assertEqual(await self.store.count("messages", Filter(isin={"conversation_id": []})), 0)
        self.assertEqual(await self.store.count("messages", Filter(gt={"seq": 2})), 1)

    async def test_contains_matches_list_members(self):
        await self.store.insert(
            "conversations", {"participant_ids": ["u1", "u2"], "pair_key": "u1:u2", "last_message_at_ms": 1}
        )
        await self.store.insert(
            "conversations", {"participant_ids": ["u1", "u3"], "pair_key": "u1:u3", "last_message_at_ms": 2}
        )

        both = await self.store.select("conversations", Filter(contains={"participant_ids": ["u1", "u2"]}))
        either = await self.store.select("conversations", Filter(contains={"participant_ids": ["u1"]}))

        self.assertEqual([row["pair_key"] for row in both], ["u1:u2"])
        self.assertEqual(both[0]["participant_ids"], ["u1", "u2"])
        self.assertEqual(len(either), 2)

    async def test_unique_column_conflicts(self):
        values = {"participant_ids": ["u1", "u2"], "pair_key": "u1:u2", "last_message_at_ms": 1}
        await self.store.insert("conversations", values)

        with self.assertRaises(Conflict):
            await self.store.insert("conversations", values)
        self.assertEqual(await self.store.count("conversations"), 1)

    async def test_update_returns_changed_rows(self):
        await self._message(sender_id="u1")
        await self._message(sender_id="u2")

        updated = await self.store.update(
            "messages", {"is_read": True}, Filter(eq={"is_read": False}, neq={"sender_id": "u1"})
        )
        again = await self.store.update(
            "messages", {"is_read": True}, Filter(eq={"is_read": False}, neq={"sender_id": "u1"})
        )

        self.assertEqual([row["sender_id"] for row in updated], ["u2"])
        self.assertIs(updated[0]["is_read"], True)
        self.assertEqual(again, [])

    async def test_delete_returns_count(self):
        await self._message()
        await self._message(conversation_id="c2")

        self.assertEqual(await self.store.delete("messages", Filter(eq={"conversation_id": "c1"})), 1)
        self.assertEqual(await self.store.count("messages"), 1)

    async def test_unknown_columns_are_rejected(self):
        with self.assertRaises(UnknownField):
            await self.store.insert("messages", {"conversation_id": "c1", "body": "x"})
        with self.assertRaises(UnknownField):
            await self.store.select("messages", Filter(eq={"body": "x"}))
        with self.assertRaises(ValueError):
            await self.store.select("nope")

    async def test_changes_are_published_to_matching_subscribers(self):
        seen = []
        subscription = self.store.subscribe(
            "messages", {"conversation_id": "c1"}, seen.append, kinds=[INSERT, UPDATE, DELETE]
        )

        row = await self._message()
        await self._message(conversation_id="c2")
        await self.store.update("messages", {"is_read": True}, Filter(eq={"id": row["id"]}))
        await self.store.delete("messages", Filter(eq={"id": row["id"]}))
        self.store.unsubscribe(subscription)
        await self._message()

        self.assertEqual([event.kind for event in seen], [INSERT, UPDATE, DELETE])
        self.assertTrue(all(event.row_id == row["id"] for event in seen))
        self.assertIs(seen[1].row["is_read"], True)

    async def test_subscriber_failure_does_not_block_others(self):
        seen = []

        def broken(_event):
            raise RuntimeError("boom")

        self.store.subscribe("messages", {}, broken)
        self.store.subscribe("messages", {}, seen.append)

        await self._message()
        self.assertEqual(len(seen), 1)


class InMemoryStoreTests(StoreContract, unittest.IsolatedAsyncioTestCase):
    def make_store(self, clock):
        return InMemoryStore(now_func=clock)

    async def test_returned_rows_are_copies(self):
        row = await self._message()
        row["content"] = "mutated"

        stored = await self.store.select_one("messages", Filter(eq={"id": row["id"]}))
        self.assertEqual(stored["content"], "hi")


class SQLiteStoreTests(StoreContract, unittest.IsolatedAsyncioTestCase):
    def make_store(self, clock):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.db_path = os.path.join(self.tmpdir.name, "alumnode.db")
        return SQLiteStore(SQLiteBackend(self.db_path), now_func=clock)

    async def test_rows_survive_reopen(self):
        row = await self._message(content="durable")
        self.store.close()

        self.store = SQLiteStore(SQLiteBackend(self.db_path), now_func=self.clock)
        stored = await self.store.select_one("messages", Filter(eq={"id": row["id"]}))

        self.assertEqual(stored, row)

    async def test_reopen_continues_created_at_from_stored_rows(self):
        self.clock.advance(10_000)
        first = await self._message()
        self.store.close()

        self.clock.now_ms = 0
        self.store = SQLiteStore(SQLiteBackend(self.db_path), now_func=self.clock)
        second = await self._message()

        self.assertEqual(second["created_at_ms"], first["created_at_ms"])
        self.assertEqual(second["seq"], first["seq"] + 1)

    async def test_conflict_rolls_back(self):
        values = {"participant_ids": ["u1", "u2"], "pair_key": "u1:u2", "last_message_at_ms": 1}
        await self.store.insert("conversations", values)
        with self.assertRaises(Conflict):
            await self.store.insert("conversations", values)

        self.assertFalse(self.store.backend.connection.in_transaction)
        await self.store.insert(
            "conversations", {"participant_ids": ["u1", "u3"], "pair_key": "u1:u3", "last_message_at_ms": 1}
        )
        self.assertEqual(await self.store.count("conversations"), 2)


if __name__ == "__main__":
    unittest.main()
