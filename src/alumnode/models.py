"""Entity records and the table layout shared by every store implementation."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Mapping, Tuple, Type, TypeVar

from .errors import UnknownField, ValidationFailure

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLE_SUPER_ADMIN = "super_admin"
ROLES = frozenset({ROLE_USER, ROLE_ADMIN, ROLE_SUPER_ADMIN})
ADMIN_ROLES = frozenset({ROLE_ADMIN, ROLE_SUPER_ADMIN})

STATUS_NONE = "none"
STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_DECLINED = "declined"
CONNECTION_STATUSES = frozenset({STATUS_PENDING, STATUS_ACCEPTED, STATUS_DECLINED})

# Columns every store stamps on insert.
ROW_COLUMNS = ("id", "seq", "created_at_ms")


@dataclass(frozen=True)
class TableSpec:
    name: str
    id_prefix: str
    columns: Tuple[str, ...]
    list_columns: frozenset = frozenset()
    bool_columns: frozenset = frozenset()
    unique: Tuple[str, ...] = ()

    @property
    def all_columns(self) -> frozenset:
        return frozenset(ROW_COLUMNS) | frozenset(self.columns)


TABLES: dict[str, TableSpec] = {
    "users": TableSpec(
        name="users",
        id_prefix="u",
        columns=("name", "email", "role", "is_verified", "is_active", "organization_id", "avatar_url"),
        bool_columns=frozenset({"is_verified", "is_active"}),
        unique=("email",),
    ),
    "conversations": TableSpec(
        name="conversations",
        id_prefix="conv",
        columns=("participant_ids", "pair_key", "last_message_at_ms"),
        list_columns=frozenset({"participant_ids"}),
        unique=("pair_key",),
    ),
    "messages": TableSpec(
        name="messages",
        id_prefix="msg",
        columns=("conversation_id", "sender_id", "content", "is_read"),
        bool_columns=frozenset({"is_read"}),
    ),
    "connections": TableSpec(
        name="connections",
        id_prefix="cx",
        columns=("requester_id", "recipient_id", "status", "message", "pair_key"),
        unique=("pair_key",),
    ),
    "notifications": TableSpec(
        name="notifications",
        id_prefix="ntf",
        columns=("user_id", "type", "title", "message", "link", "is_read"),
        bool_columns=frozenset({"is_read"}),
    ),
}


def table_spec(table: str) -> TableSpec:
    try:
        return TABLES[table]
    except KeyError:
        raise ValueError(f"unknown table: {table}") from None


def pair_key(user_a: str, user_b: str) -> str:
    """Order-independent key for an unordered pair of user ids."""

    first, second = sorted((user_a, user_b))
    return f"{first}:{second}"


R = TypeVar("R")


def _from_row(cls: Type[R], row: Mapping[str, Any], **extra: Any) -> R:
    fields = {f.name: f for f in dataclasses.fields(cls)}
    row_fields = set(fields) - set(extra)
    unknown = set(row) - row_fields
    if unknown:
        raise UnknownField(cls.__name__.lower(), unknown)
    missing = {
        name
        for name in row_fields
        if name not in row
        and fields[name].default is dataclasses.MISSING
        and fields[name].default_factory is dataclasses.MISSING
    }
    if missing:
        raise ValidationFailure(f"missing {cls.__name__.lower()} fields: {', '.join(sorted(missing))}")
    return cls(**dict(row), **extra)


@dataclass(frozen=True)
class User:
    id: str
    seq: int
    created_at_ms: int
    name: str
    email: str
    role: str = ROLE_USER
    is_verified: bool = False
    is_active: bool = True
    organization_id: str | None = None
    avatar_url: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "User":
        return _from_row(cls, row)

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def public_profile(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "avatar_url": self.avatar_url,
            "organization_id": self.organization_id,
        }


@dataclass(frozen=True)
class Sender:
    id: str
    name: str
    avatar_url: str | None = None


@dataclass(frozen=True)
class Conversation:
    id: str
    seq: int
    created_at_ms: int
    participant_ids: Tuple[str, ...]
    pair_key: str
    last_message_at_ms: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Conversation":
        data = dict(row)
        if "participant_ids" in data:
            data["participant_ids"] = tuple(data["participant_ids"])
        return _from_row(cls, data)

    def is_pair(self, user_a: str, user_b: str) -> bool:
        return len(self.participant_ids) == 2 and set(self.participant_ids) == {user_a, user_b}

    def other_participant(self, user_id: str) -> str | None:
        for participant in self.participant_ids:
            if participant != user_id:
                return participant
        return None


@dataclass(frozen=True)
class Message:
    id: str
    seq: int
    created_at_ms: int
    conversation_id: str
    sender_id: str
    content: str
    is_read: bool = False
    sender: Sender | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], sender: Sender | None = None) -> "Message":
        return _from_row(cls, row, sender=sender)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.created_at_ms, self.seq)


@dataclass(frozen=True)
class Connection:
    id: str
    seq: int
    created_at_ms: int
    requester_id: str
    recipient_id: str
    status: str
    pair_key: str
    message: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Connection":
        return _from_row(cls, row)

    def other_party(self, user_id: str) -> str:
        return self.recipient_id if self.requester_id == user_id else self.requester_id


@dataclass(frozen=True)
class Notification:
    id: str
    seq: int
    created_at_ms: int
    user_id: str
    type: str
    title: str
    message: str
    link: str | None = None
    is_read: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Notification":
        return _from_row(cls, row)


def to_api_dict(record: Any) -> dict[str, Any]:
    data = dataclasses.asdict(record)
    for key, value in data.items():
        if isinstance(value, tuple):
            data[key] = list(value)
    return data
