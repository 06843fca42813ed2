from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import AlreadyExists, Conflict, InvalidTransition, NotFound, ValidationFailure
from .models import (
    STATUS_ACCEPTED,
    STATUS_DECLINED,
    STATUS_NONE,
    STATUS_PENDING,
    Connection,
    User,
    pair_key,
    to_api_dict,
)
from .notifications import TYPE_CONNECTION_ACCEPTED, TYPE_CONNECTION_REQUEST, NotificationStore
from .store import Filter, Store
from .users import UserDirectory

STATUS_WITHDRAWN = "withdrawn"


@dataclass(frozen=True)
class ConnectionStatus:
    status: str
    connection: Connection | None = None
    is_requester: bool = False

    @property
    def is_pending(self) -> bool:
        return self.status == STATUS_PENDING

    @property
    def is_connected(self) -> bool:
        return self.status == STATUS_ACCEPTED

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "connection": to_api_dict(self.connection) if self.connection else None,
            "is_pending": self.is_pending,
            "is_connected": self.is_connected,
            "is_requester": self.is_requester,
        }


NO_CONNECTION = ConnectionStatus(status=STATUS_NONE)


@dataclass(frozen=True)
class ConnectionEntry:
    """A connection paired with the public profile of the other party."""

    connection: Connection
    other_user: dict[str, Any]

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection.id,
            "status": self.connection.status,
            "message": self.connection.message,
            "created_at_ms": self.connection.created_at_ms,
            "user": self.other_user,
        }


class ConnectionStateMachine:
    """Pairwise relationship state: ``none -> pending -> accepted | declined``.

    A declined pair stays declined unless ``allow_rerequest_after_decline``
    is set, in which case a new request moves the record back to pending.
    """

    def __init__(
        self,
        store: Store,
        *,
        notifications: NotificationStore | None = None,
        allow_rerequest_after_decline: bool = False,
    ) -> None:
        self._store = store
        self._users = UserDirectory(store)
        self._notifications = notifications
        self.allow_rerequest_after_decline = allow_rerequest_after_decline

    async def send_request(self, recipient_id: str, requester_id: str, message: str | None = None) -> Connection:
        if recipient_id == requester_id:
            raise ValidationFailure("cannot connect to yourself")
        users = await self._users.get_many([recipient_id, requester_id])
        for user_id in (requester_id, recipient_id):
            user = users.get(user_id)
            if user is None:
                raise NotFound(f"unknown user {user_id}")
            if not user.is_active:
                raise ValidationFailure(f"user {user_id} is not active")
        note = (message or "").strip() or None

        existing = await self._find_pair(requester_id, recipient_id)
        if existing is not None:
            if existing.status != STATUS_DECLINED or not self.allow_rerequest_after_decline:
                raise AlreadyExists(f"connection already {existing.status}")
            rows = await self._store.update(
                "connections",
                {"status": STATUS_PENDING, "requester_id": requester_id, "recipient_id": recipient_id, "message": note},
                Filter(eq={"id": existing.id, "status": STATUS_DECLINED}),
            )
            if not rows:
                raise AlreadyExists("connection changed concurrently")
            connection = Connection.from_row(rows[0])
        else:
            try:
                row = await self._store.insert(
                    "connections",
                    {
                        "requester_id": requester_id,
                        "recipient_id": recipient_id,
                        "status": STATUS_PENDING,
                        "message": note,
                        "pair_key": pair_key(requester_id, recipient_id),
                    },
                )
            except Conflict as exc:
                raise AlreadyExists("connection already exists") from exc
            connection = Connection.from_row(row)

        await self._notify(
            recipient_id,
            TYPE_CONNECTION_REQUEST,
            "New connection request",
            f"{users[requester_id].name} wants to connect with you",
        )
        return connection

    async def get_connection_status(self, user_a: str, user_b: str) -> ConnectionStatus:
        connection = await self._find_pair(user_a, user_b)
        if connection is None:
            return NO_CONNECTION
        return ConnectionStatus(
            status=connection.status,
            connection=connection,
            is_requester=connection.requester_id == user_a,
        )

    async def respond_to_request(self, connection_id: str, accept: bool, actor_id: str | None = None) -> Connection:
        connection = await self.get_connection(connection_id)
        if actor_id is not None and actor_id != connection.recipient_id:
            raise PermissionError("forbidden")
        target = STATUS_ACCEPTED if accept else STATUS_DECLINED
        if connection.status != STATUS_PENDING:
            raise InvalidTransition(connection.status, target)

        rows = await self._store.update(
            "connections",
            {"status": target},
            Filter(eq={"id": connection_id, "status": STATUS_PENDING}),
        )
        if not rows:
            current = await self.get_connection(connection_id)
            raise InvalidTransition(current.status, target)
        updated = Connection.from_row(rows[0])

        if accept:
            recipient = await self._users.find(updated.recipient_id)
            name = recipient.name if recipient else "Someone"
            await self._notify(
                updated.requester_id,
                TYPE_CONNECTION_ACCEPTED,
                "Connection accepted",
                f"{name} accepted your connection request",
            )
        return updated

    async def withdraw_request(self, connection_id: str, requester_id: str) -> None:
        connection = await self.get_connection(connection_id)
        if connection.requester_id != requester_id:
            raise PermissionError("forbidden")
        if connection.status != STATUS_PENDING:
            raise InvalidTransition(connection.status, STATUS_WITHDRAWN)
        removed = await self._store.delete(
            "connections", Filter(eq={"id": connection_id, "status": STATUS_PENDING})
        )
        if not removed:
            current = await self.get_connection(connection_id)
            raise InvalidTransition(current.status, STATUS_WITHDRAWN)

    async def remove_connection(self, connection_id: str, user_id: str) -> None:
        connection = await self.get_connection(connection_id)
        if user_id not in (connection.requester_id, connection.recipient_id):
            raise PermissionError("forbidden")
        await self._store.delete("connections", Filter(eq={"id": connection_id}))

    async def get_connection(self, connection_id: str) -> Connection:
        row = await self._store.select_one("connections", Filter(eq={"id": connection_id}))
        if row is None:
            raise NotFound(f"unknown connection {connection_id}")
        return Connection.from_row(row)

    async def can_message(self, user_a: str, user_b: str) -> bool:
        status = await self.get_connection_status(user_a, user_b)
        return status.is_connected

    async def list_connections(self, user_id: str) -> list[ConnectionEntry]:
        sent = await self._store.select(
            "connections", Filter(eq={"requester_id": user_id, "status": STATUS_ACCEPTED})
        )
        received = await self._store.select(
            "connections", Filter(eq={"recipient_id": user_id, "status": STATUS_ACCEPTED})
        )
        connections = [Connection.from_row(row) for row in sent + received]
        connections.sort(key=lambda c: (c.created_at_ms, c.seq), reverse=True)
        return await self._entries(user_id, connections)

    async def pending_requests(self, user_id: str) -> list[ConnectionEntry]:
        rows = await self._store.select(
            "connections",
            Filter(eq={"recipient_id": user_id, "status": STATUS_PENDING}),
            order_by=("created_at_ms", "seq"),
            descending=True,
        )
        return await self._entries(user_id, [Connection.from_row(row) for row in rows])

    async def sent_requests(self, user_id: str) -> list[ConnectionEntry]:
        rows = await self._store.select(
            "connections",
            Filter(eq={"requester_id": user_id, "status": STATUS_PENDING}),
            order_by=("created_at_ms", "seq"),
            descending=True,
        )
        return await self._entries(user_id, [Connection.from_row(row) for row in rows])

    async def connection_count(self, user_id: str) -> int:
        sent = await self._store.count("connections", Filter(eq={"requester_id": user_id, "status": STATUS_ACCEPTED}))
        received = await self._store.count(
            "connections", Filter(eq={"recipient_id": user_id, "status": STATUS_ACCEPTED})
        )
        return sent + received

    async def _find_pair(self, user_a: str, user_b: str) -> Connection | None:
        pair = [user_a, user_b]
        rows = await self._store.select(
            "connections", Filter(isin={"requester_id": pair, "recipient_id": pair})
        )
        for row in rows:
            connection = Connection.from_row(row)
            if {connection.requester_id, connection.recipient_id} == {user_a, user_b}:
                return connection
        return None

    async def _entries(self, user_id: str, connections: list[Connection]) -> list[ConnectionEntry]:
        users = await self._users.get_many(c.other_party(user_id) for c in connections)
        return [
            ConnectionEntry(connection=c, other_user=_profile(users.get(c.other_party(user_id)), c.other_party(user_id)))
            for c in connections
        ]

    async def _notify(self, user_id: str, type: str, title: str, message: str) -> None:
        if self._notifications is None:
            return
        await self._notifications.notify(user_id, type, title, message, link="/connections")


def _profile(user: User | None, user_id: str) -> dict[str, Any]:
    if user is None:
        return {"id": user_id, "name": "Unknown User", "avatar_url": None, "organization_id": None}
    return user.public_profile()
