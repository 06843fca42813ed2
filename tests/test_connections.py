import unittest

from alumnode.connections import ConnectionStateMachine
from alumnode.errors import AlreadyExists, InvalidTransition, NotFound, TransportFailure, ValidationFailure
from alumnode.models import STATUS_ACCEPTED, STATUS_DECLINED, STATUS_NONE, STATUS_PENDING
from alumnode.notifications import TYPE_CONNECTION_ACCEPTED, TYPE_CONNECTION_REQUEST, NotificationStore
from alumnode.store import Filter
from alumnode.users import UserDirectory

from .store_doubles import Clock, FlakyStore


class ConnectionStateMachineTests(unittest.IsolatedAsyncioTestCase):
    allow_rerequest = False

    async def asyncSetUp(self) -> None:
        self.clock = Clock()
        self.store = FlakyStore(now_func=self.clock)
        self.notifications = NotificationStore(self.store)
        self.connections = ConnectionStateMachine(
            self.store,
            notifications=self.notifications,
            allow_rerequest_after_decline=self.allow_rerequest,
        )
        self.users = UserDirectory(self.store)
        self.alice = await self.users.register(name="Alice", email="alice@example.edu")
        self.bob = await self.users.register(name="Bob", email="bob@example.edu")
        self.carol = await self.users.register(name="Carol", email="carol@example.edu")

    async def test_status_is_none_before_any_request(self):
        status = await self.connections.get_connection_status(self.alice.id, self.bob.id)

        self.assertEqual(status.status, STATUS_NONE)
        self.assertIsNone(status.connection)
        self.assertFalse(status.is_pending)

    async def test_request_then_accept(self):
        request = await self.connections.send_request(self.bob.id, self.alice.id, "  Hi Bob  ")
        self.assertEqual(request.status, STATUS_PENDING)
        self.assertEqual(request.message, "Hi Bob")

        from_alice = await self.connections.get_connection_status(self.alice.id, self.bob.id)
        from_bob = await self.connections.get_connection_status(self.bob.id, self.alice.id)
        self.assertTrue(from_alice.is_pending and from_alice.is_requester)
        self.assertTrue(from_bob.is_pending)
        self.assertFalse(from_bob.is_requester)

        accepted = await self.connections.respond_to_request(request.id, True, actor_id=self.bob.id)

        self.assertEqual(accepted.status, STATUS_ACCEPTED)
        self.assertTrue(await self.connections.can_message(self.bob.id, self.alice.id))
        self.assertEqual(await self.connections.connection_count(self.alice.id), 1)
        [entry] = await self.connections.list_connections(self.bob.id)
        self.assertEqual(entry.other_user["name"], "Alice")

    async def test_notifications_follow_the_lifecycle(self):
        request = await self.connections.send_request(self.bob.id, self.alice.id)
        await self.connections.respond_to_request(request.id, True)

        [to_bob] = await self.notifications.list_for_user(self.bob.id)
        [to_alice] = await self.notifications.list_for_user(self.alice.id)
        self.assertEqual(to_bob.type, TYPE_CONNECTION_REQUEST)
        self.assertEqual(to_bob.message, "Alice wants to connect with you")
        self.assertEqual(to_alice.type, TYPE_CONNECTION_ACCEPTED)
        self.assertEqual(to_alice.message, "Bob accepted your connection request")

    async def test_duplicate_request_in_either_direction_is_rejected(self):
        await self.connections.send_request(self.bob.id, self.alice.id)

        with self.assertRaises(AlreadyExists):
            await self.connections.send_request(self.bob.id, self.alice.id)
        with self.assertRaises(AlreadyExists):
            await self.connections.send_request(self.alice.id, self.bob.id)
        self.assertEqual(await self.store.count("connections"), 1)

    async def test_invalid_requests(self):
        with self.assertRaises(ValidationFailure):
            await self.connections.send_request(self.alice.id, self.alice.id)
        with self.assertRaises(NotFound):
            await self.connections.send_request("u_missing", self.alice.id)

        await self.users.deactivate(self.carol.id)
        with self.assertRaises(ValidationFailure):
            await self.connections.send_request(self.carol.id, self.alice.id)

    async def test_only_the_recipient_may_respond(self):
        request = await self.connections.send_request(self.bob.id, self.alice.id)

        with self.assertRaises(PermissionError):
            await self.connections.respond_to_request(request.id, True, actor_id=self.alice.id)

    async def test_responding_twice_is_an_invalid_transition(self):
        request = await self.connections.send_request(self.bob.id, self.alice.id)
        await self.connections.respond_to_request(request.id, False)

        with self.assertRaises(InvalidTransition) as ctx:
            await self.connections.respond_to_request(request.id, True)
        self.assertEqual((ctx.exception.current, ctx.exception.requested), (STATUS_DECLINED, STATUS_ACCEPTED))

    async def test_new_request_after_decline(self):
        request = await self.connections.send_request(self.bob.id, self.alice.id)
        await self.connections.respond_to_request(request.id, False)

        with self.assertRaises(AlreadyExists):
            await self.connections.send_request(self.bob.id, self.alice.id)

        status = await self.connections.get_connection_status(self.alice.id, self.bob.id)
        self.assertEqual(status.status, STATUS_DECLINED)

    async def test_withdraw_and_remove(self):
        pending = await self.connections.send_request(self.bob.id, self.alice.id)
        with self.assertRaises(PermissionError):
            await self.connections.withdraw_request(pending.id, self.bob.id)
        await self.connections.withdraw_request(pending.id, self.alice.id)
        self.assertEqual(
            (await self.connections.get_connection_status(self.alice.id, self.bob.id)).status, STATUS_NONE
        )

        again = await self.connections.send_request(self.carol.id, self.alice.id)
        await self.connections.respond_to_request(again.id, True)
        with self.assertRaises(InvalidTransition):
            await self.connections.withdraw_request(again.id, self.alice.id)
        with self.assertRaises(PermissionError):
            await self.connections.remove_connection(again.id, self.bob.id)
        await self.connections.remove_connection(again.id, self.carol.id)
        self.assertFalse(await self.connections.can_message(self.alice.id, self.carol.id))

    async def test_pending_and_sent_lists(self):
        await self.connections.send_request(self.bob.id, self.alice.id)
        self.clock.advance(10)
        await self.connections.send_request(self.bob.id, self.carol.id)

        incoming = await self.connections.pending_requests(self.bob.id)
        outgoing = await self.connections.sent_requests(self.alice.id)

        self.assertEqual([e.other_user["name"] for e in incoming], ["Carol", "Alice"])
        self.assertEqual([e.other_user["name"] for e in outgoing], ["Bob"])
        self.assertEqual(incoming[0].to_api_dict()["status"], STATUS_PENDING)

    async def test_missing_profile_reads_as_unknown_user(self):
        request = await self.connections.send_request(self.bob.id, self.alice.id)
        await self.store.delete("users", Filter(eq={"id": self.alice.id}))

        [entry] = await self.connections.pending_requests(self.bob.id)

        self.assertEqual(entry.connection.id, request.id)
        self.assertEqual(entry.other_user["name"], "Unknown User")

    async def test_status_lookup_surfaces_transport_failure(self):
        self.store.failing_reads.add("connections")

        with self.assertRaises(TransportFailure):
            await self.connections.get_connection_status(self.alice.id, self.bob.id)


class RerequestAfterDeclineTests(ConnectionStateMachineTests):
    allow_rerequest = True

    async def test_new_request_after_decline(self):
        request = await self.connections.send_request(self.bob.id, self.alice.id)
        await self.connections.respond_to_request(request.id, False)

        renewed = await self.connections.send_request(self.alice.id, self.bob.id, "second try")

        self.assertEqual(renewed.id, request.id)
        self.assertEqual(renewed.status, STATUS_PENDING)
        self.assertEqual((renewed.requester_id, renewed.recipient_id), (self.bob.id, self.alice.id))
        self.assertEqual(await self.store.count("connections"), 1)

    async def test_accepted_pair_still_blocks(self):
        request = await self.connections.send_request(self.bob.id, self.alice.id)
        await self.connections.respond_to_request(request.id, True)

        with self.assertRaises(AlreadyExists):
            await self.connections.send_request(self.alice.id, self.bob.id)


if __name__ == "__main__":
    unittest.main()
