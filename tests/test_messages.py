import unittest

from alumnode.conversations import ConversationResolver
from alumnode.errors import EmptyMessage, MessageFetchFailed, MessageSendFailed, NotFound, TransportFailure
from alumnode.messages import MessageStore
from alumnode.notifications import TYPE_MESSAGE, NotificationStore
from alumnode.store import Filter
from alumnode.users import UserDirectory

from .store_doubles import Clock, FlakyStore


class MessageStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = Clock()
        self.store = FlakyStore(now_func=self.clock)
        self.notifications = NotificationStore(self.store)
        self.messages = MessageStore(self.store, notifications=self.notifications, page_size=3)
        users = UserDirectory(self.store)
        self.alice = await users.register(name="Alice", email="alice@example.edu", avatar_url="a.png")
        self.bob = await users.register(name="Bob", email="bob@example.edu")
        self.carol = await users.register(name="Carol", email="carol@example.edu")
        self.conv_id, _ = await ConversationResolver(self.store, now_func=self.clock).get_or_create_conversation(
            self.alice.id, self.bob.id
        )

    async def test_send_trims_and_joins_sender(self):
        message = await self.messages.send_message(self.conv_id, self.alice.id, "  hello there \n")

        self.assertEqual(message.content, "hello there")
        self.assertFalse(message.is_read)
        self.assertEqual(message.sender.name, "Alice")
        self.assertEqual(message.sender.avatar_url, "a.png")

    async def test_blank_content_never_reaches_the_store(self):
        self.store.calls.clear()
        for content in ("", "   ", "\n\t"):
            with self.assertRaises(EmptyMessage):
                await self.messages.send_message(self.conv_id, self.alice.id, content)
        self.assertEqual(self.store.calls, [])

    async def test_send_touches_conversation_activity(self):
        self.clock.advance(500)
        message = await self.messages.send_message(self.conv_id, self.alice.id, "hi")

        row = await self.store.select_one("conversations", Filter(eq={"id": self.conv_id}))
        self.assertEqual(row["last_message_at_ms"], message.created_at_ms)

    async def test_send_requires_participant_and_known_conversation(self):
        with self.assertRaises(PermissionError):
            await self.messages.send_message(self.conv_id, self.carol.id, "hi")
        with self.assertRaises(NotFound):
            await self.messages.send_message("conv_missing", self.alice.id, "hi")

    async def test_send_failure_is_wrapped_with_cause(self):
        self.store.failing_writes.add("messages")

        with self.assertRaises(MessageSendFailed) as ctx:
            await self.messages.send_message(self.conv_id, self.alice.id, "hi")
        self.assertIsInstance(ctx.exception.cause, TransportFailure)
        self.assertEqual(await self.store.count("messages"), 0)

    async def test_failed_activity_touch_removes_the_message(self):
        self.store.failing_writes.add("conversations")

        with self.assertRaises(MessageSendFailed):
            await self.messages.send_message(self.conv_id, self.alice.id, "hello")

        self.assertEqual(await self.messages.get_messages(self.conv_id), [])
        self.assertIn(("delete", "messages"), self.store.calls)

    async def test_full_history_reads_past_the_first_page(self):
        for i in range(7):
            self.clock.advance(10)
            await self.messages.send_message(self.conv_id, self.alice.id, f"m{i}")

        history = await self.messages.get_history(self.conv_id)
        by_two = await self.messages.get_history(self.conv_id, page_size=2)

        self.assertEqual([m.content for m in history], [f"m{i}" for i in range(7)])
        self.assertEqual([m.id for m in by_two], [m.id for m in history])

    async def test_recipient_is_notified(self):
        await self.messages.send_message(self.conv_id, self.alice.id, "x" * 100)

        [notification] = await self.notifications.list_for_user(self.bob.id)
        self.assertEqual(notification.type, TYPE_MESSAGE)
        self.assertEqual(notification.title, "New message from Alice")
        self.assertEqual(notification.message, "x" * 80 + "...")
        self.assertEqual(await self.notifications.list_for_user(self.alice.id), [])

    async def test_notification_failure_does_not_fail_send(self):
        self.store.failing_writes.add("notifications")

        message = await self.messages.send_message(self.conv_id, self.alice.id, "still sent")

        self.assertEqual(message.content, "still sent")
        self.assertEqual(await self.store.count("messages"), 1)

    async def test_history_is_ascending_and_paged(self):
        sent = []
        for i in range(5):
            self.clock.advance(10)
            sent.append(await self.messages.send_message(self.conv_id, self.alice.id, f"m{i}"))

        first_page = await self.messages.get_messages(self.conv_id)
        next_page = await self.messages.get_messages(self.conv_id, after_seq=first_page[-1].seq)
        everything = await self.messages.get_messages(self.conv_id, limit=50)

        self.assertEqual([m.content for m in first_page], ["m0", "m1", "m2"])
        self.assertEqual([m.content for m in next_page], ["m3", "m4"])
        self.assertEqual([m.id for m in everything], [m.id for m in sent])
        self.assertTrue(all(m.sender and m.sender.name == "Alice" for m in everything))

    async def test_same_millisecond_messages_keep_insertion_order(self):
        for i in range(3):
            await self.messages.send_message(self.conv_id, self.bob.id, f"same-{i}")

        history = await self.messages.get_messages(self.conv_id)

        self.assertEqual([m.content for m in history], ["same-0", "same-1", "same-2"])

    async def test_fetch_failure_is_wrapped(self):
        self.store.failing_reads.add("messages")

        with self.assertRaises(MessageFetchFailed):
            await self.messages.get_messages(self.conv_id)
        with self.assertRaises(MessageFetchFailed):
            await self.messages.get_message("msg_x")

    async def test_get_message_unknown_id(self):
        with self.assertRaises(NotFound):
            await self.messages.get_message("msg_missing")


if __name__ == "__main__":
    unittest.main()
