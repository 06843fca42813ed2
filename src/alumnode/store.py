"""Data-access gateway used by the AlumNode core.

The core never speaks a vendor query language. It reads and writes rows in
named tables through :class:`Store` and follows committed changes through
:meth:`Store.subscribe`. Two implementations exist: :class:`InMemoryStore`
below and :class:`alumnode.sqlite_store.SQLiteStore` for durability.
"""

from __future__ import annotations

import copy
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Dict, Iterable, List, Mapping, Sequence

from .errors import Conflict, UnknownField
from .hub import DELETE, INSERT, UPDATE, ChangeEvent, ChangeHub, Subscription
from .models import TableSpec, table_spec


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Filter:
    """Row filter combining equality, inequality, membership and containment.

    ``contains`` targets list columns: the row's list must hold every value.
    ``gt`` keeps rows whose column is strictly greater than the value.
    """

    eq: Mapping[str, Any] = field(default_factory=dict)
    neq: Mapping[str, Any] = field(default_factory=dict)
    isin: Mapping[str, Collection[Any]] = field(default_factory=dict)
    contains: Mapping[str, Collection[Any]] = field(default_factory=dict)
    gt: Mapping[str, Any] = field(default_factory=dict)

    def columns(self) -> set[str]:
        names: set[str] = set()
        for part in (self.eq, self.neq, self.isin, self.contains, self.gt):
            names.update(part.keys())
        return names

    def matches(self, row: Mapping[str, Any]) -> bool:
        for column, value in self.eq.items():
            if row.get(column) != value:
                return False
        for column, value in self.neq.items():
            if row.get(column) == value:
                return False
        for column, values in self.isin.items():
            if row.get(column) not in values:
                return False
        for column, values in self.contains.items():
            current = row.get(column) or ()
            if any(value not in current for value in values):
                return False
        for column, value in self.gt.items():
            current = row.get(column)
            if current is None or not current > value:
                return False
        return True


EVERYTHING = Filter()


def new_row_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(9)}"


class Store:
    """Row-oriented store with a change stream.

    Every row carries ``id`` (store-assigned string), ``seq`` (insertion
    order, strictly increasing per table) and ``created_at_ms`` (never
    decreasing per table). Failures reaching the backing store surface as
    :class:`alumnode.errors.TransportFailure`; uniqueness violations as
    :class:`alumnode.errors.Conflict`.
    """

    def __init__(self, *, hub: ChangeHub | None = None, now_func: Callable[[], int] = _now_ms) -> None:
        self.hub = hub or ChangeHub()
        self._now = now_func

    async def select(
        self,
        table: str,
        where: Filter = EVERYTHING,
        *,
        order_by: Sequence[str] = ("seq",),
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def count(self, table: str, where: Filter = EVERYTHING) -> int:
        raise NotImplementedError

    async def insert(self, table: str, values: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    async def update(self, table: str, values: Mapping[str, Any], where: Filter) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def delete(self, table: str, where: Filter) -> int:
        raise NotImplementedError

    async def select_one(self, table: str, where: Filter) -> dict[str, Any] | None:
        rows = await self.select(table, where, limit=1)
        return rows[0] if rows else None

    def subscribe(
        self,
        table: str,
        match: Mapping[str, Any],
        callback: Callable[[ChangeEvent], None],
        *,
        kinds: Iterable[str] | None = None,
    ) -> Subscription:
        table_spec(table)
        return self.hub.subscribe(table, match, callback, kinds=frozenset(kinds) if kinds is not None else None)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.hub.unsubscribe(subscription)

    def close(self) -> None:
        return None

    def _publish(self, table: str, kind: str, rows: Iterable[Mapping[str, Any]]) -> None:
        for row in rows:
            self.hub.broadcast(ChangeEvent(table=table, kind=kind, row=copy.deepcopy(dict(row))))

    @staticmethod
    def _check_values(spec: TableSpec, values: Mapping[str, Any]) -> None:
        unknown = set(values) - set(spec.columns)
        if unknown:
            raise UnknownField(spec.name, unknown)

    @staticmethod
    def _check_filter(spec: TableSpec, where: Filter, order_by: Sequence[str] = ()) -> None:
        unknown = (where.columns() | set(order_by)) - spec.all_columns
        if unknown:
            raise UnknownField(spec.name, unknown)

    @staticmethod
    def _defaults(spec: TableSpec, values: Mapping[str, Any]) -> dict[str, Any]:
        row: dict[str, Any] = {}
        for column in spec.columns:
            if column in values:
                row[column] = values[column]
            elif column in spec.bool_columns:
                row[column] = False
            elif column in spec.list_columns:
                row[column] = []
            else:
                row[column] = None
        for column in spec.list_columns:
            row[column] = list(row[column] or [])
        return row


class InMemoryStore(Store):
    """Process-local store; the default when no database path is configured."""

    def __init__(self, *, hub: ChangeHub | None = None, now_func: Callable[[], int] = _now_ms) -> None:
        super().__init__(hub=hub, now_func=now_func)
        self._tables: Dict[str, List[dict[str, Any]]] = {}
        self._next_seq: Dict[str, int] = {}
        self._last_created: Dict[str, int] = {}

    async def select(
        self,
        table: str,
        where: Filter = EVERYTHING,
        *,
        order_by: Sequence[str] = ("seq",),
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        spec = table_spec(table)
        self._check_filter(spec, where, order_by)
        rows = [row for row in self._tables.get(table, []) if where.matches(row)]
        if order_by:
            rows.sort(key=lambda row: tuple(_sortable(row.get(column)) for column in order_by), reverse=descending)
        if limit is not None:
            rows = rows[: max(limit, 0)]
        return [copy.deepcopy(row) for row in rows]

    async def count(self, table: str, where: Filter = EVERYTHING) -> int:
        spec = table_spec(table)
        self._check_filter(spec, where)
        return sum(1 for row in self._tables.get(table, []) if where.matches(row))

    async def insert(self, table: str, values: Mapping[str, Any]) -> dict[str, Any]:
        spec = table_spec(table)
        self._check_values(spec, values)
        row = self._defaults(spec, values)
        rows = self._tables.setdefault(table, [])
        for column in spec.unique:
            if row.get(column) is None:
                continue
            if any(existing.get(column) == row[column] for existing in rows):
                raise Conflict(f"{table}.{column} already exists")

        seq = self._next_seq.get(table, 1)
        self._next_seq[table] = seq + 1
        created_at_ms = max(self._now(), self._last_created.get(table, 0))
        self._last_created[table] = created_at_ms
        row.update({"id": new_row_id(spec.id_prefix), "seq": seq, "created_at_ms": created_at_ms})
        rows.append(row)
        self._publish(table, INSERT, [row])
        return copy.deepcopy(row)

    async def update(self, table: str, values: Mapping[str, Any], where: Filter) -> list[dict[str, Any]]:
        spec = table_spec(table)
        self._check_values(spec, values)
        self._check_filter(spec, where)
        rows = self._tables.get(table, [])
        targets = [row for row in rows if where.matches(row)]
        for column in spec.unique:
            if column not in values or values[column] is None:
                continue
            clash = [row for row in rows if row.get(column) == values[column] and not any(row is target for target in targets)]
            if clash or len(targets) > 1:
                raise Conflict(f"{table}.{column} already exists")
        for row in targets:
            row.update(copy.deepcopy(dict(values)))
        self._publish(table, UPDATE, targets)
        return [copy.deepcopy(row) for row in targets]

    async def delete(self, table: str, where: Filter) -> int:
        spec = table_spec(table)
        self._check_filter(spec, where)
        rows = self._tables.get(table, [])
        removed = [row for row in rows if where.matches(row)]
        if removed:
            self._tables[table] = [row for row in rows if not where.matches(row)]
        self._publish(table, DELETE, removed)
        return len(removed)


def _sortable(value: Any) -> tuple[int, Any]:
    # None sorts first, like NULL in an ascending SQLite ORDER BY.
    if value is None:
        return (0, 0)
    return (1, value)
