from __future__ import annotations

import contextlib
import json
import sqlite3
from typing import Any, Callable, Iterator, Mapping, Sequence

from .errors import Conflict, TransportFailure
from .hub import DELETE, INSERT, UPDATE, ChangeHub
from .models import TableSpec, table_spec
from .sqlite_backend import SQLiteBackend
from .store import EVERYTHING, Filter, Store, _now_ms, new_row_id


@contextlib.contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except sqlite3.IntegrityError as exc:
        raise Conflict(str(exc)) from exc
    except sqlite3.Error as exc:
        raise TransportFailure(str(exc)) from exc


class SQLiteStore(Store):
    """Durable store backed by SQLite."""

    def __init__(
        self,
        backend: SQLiteBackend,
        *,
        hub: ChangeHub | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        super().__init__(hub=hub, now_func=now_func)
        self._backend = backend

    @property
    def backend(self) -> SQLiteBackend:
        return self._backend

    def close(self) -> None:
        self._backend.close()

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
        clause, params = self._where_sql(spec, where)
        query = f"SELECT * FROM {spec.name} WHERE {clause}"
        if order_by:
            direction = "DESC" if descending else "ASC"
            query += " ORDER BY " + ", ".join(f"{column} {direction}" for column in order_by)
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(limit, 0))
        with _translate_errors(), self._backend.lock:
            rows = self._backend.connection.execute(query, params).fetchall()
        return [self._decode(spec, row) for row in rows]

    async def count(self, table: str, where: Filter = EVERYTHING) -> int:
        spec = table_spec(table)
        self._check_filter(spec, where)
        clause, params = self._where_sql(spec, where)
        with _translate_errors(), self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT COUNT(*) FROM {spec.name} WHERE {clause}", params
            ).fetchone()
        return int(row[0])

    async def insert(self, table: str, values: Mapping[str, Any]) -> dict[str, Any]:
        spec = table_spec(table)
        self._check_values(spec, values)
        row = self._defaults(spec, values)
        row["id"] = new_row_id(spec.id_prefix)
        now_ms = self._now()

        with _translate_errors(), self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                last_row = cursor.execute(f"SELECT MAX(created_at_ms) FROM {spec.name}").fetchone()
                row["created_at_ms"] = max(now_ms, int(last_row[0] or 0))
                columns = list(row.keys())
                cursor.execute(
                    f"INSERT INTO {spec.name} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                    [self._encode(spec, column, row[column]) for column in columns],
                )
                stored = cursor.execute(
                    f"SELECT * FROM {spec.name} WHERE seq = ?", (cursor.lastrowid,)
                ).fetchone()
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

        inserted = self._decode(spec, stored)
        self._publish(table, INSERT, [inserted])
        return inserted

    async def update(self, table: str, values: Mapping[str, Any], where: Filter) -> list[dict[str, Any]]:
        spec = table_spec(table)
        self._check_values(spec, values)
        self._check_filter(spec, where)
        clause, params = self._where_sql(spec, where)

        with _translate_errors(), self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                seqs = [r[0] for r in cursor.execute(f"SELECT seq FROM {spec.name} WHERE {clause}", params)]
                rows: list[sqlite3.Row] = []
                if seqs and values:
                    assignments = ", ".join(f"{column} = ?" for column in values)
                    in_clause = ", ".join("?" for _ in seqs)
                    cursor.execute(
                        f"UPDATE {spec.name} SET {assignments} WHERE seq IN ({in_clause})",
                        [self._encode(spec, column, value) for column, value in values.items()] + seqs,
                    )
                if seqs:
                    in_clause = ", ".join("?" for _ in seqs)
                    rows = cursor.execute(
                        f"SELECT * FROM {spec.name} WHERE seq IN ({in_clause}) ORDER BY seq ASC", seqs
                    ).fetchall()
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

        updated = [self._decode(spec, row) for row in rows]
        self._publish(table, UPDATE, updated)
        return updated

    async def delete(self, table: str, where: Filter) -> int:
        spec = table_spec(table)
        self._check_filter(spec, where)
        clause, params = self._where_sql(spec, where)

        with _translate_errors(), self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                rows = cursor.execute(f"SELECT * FROM {spec.name} WHERE {clause}", params).fetchall()
                if rows:
                    in_clause = ", ".join("?" for _ in rows)
                    cursor.execute(
                        f"DELETE FROM {spec.name} WHERE seq IN ({in_clause})",
                        [row["seq"] for row in rows],
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

        removed = [self._decode(spec, row) for row in rows]
        self._publish(table, DELETE, removed)
        return len(removed)

    def _where_sql(self, spec: TableSpec, where: Filter) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in where.eq.items():
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(self._encode(spec, column, value))
        for column, value in where.neq.items():
            if value is None:
                clauses.append(f"{column} IS NOT NULL")
            else:
                clauses.append(f"({column} IS NULL OR {column} != ?)")
                params.append(self._encode(spec, column, value))
        for column, values in where.isin.items():
            values = list(values)
            if not values:
                clauses.append("0")
                continue
            clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(self._encode(spec, column, value) for value in values)
        for column, values in where.contains.items():
            for value in values:
                clauses.append(
                    f"EXISTS (SELECT 1 FROM json_each({spec.name}.{column}) WHERE json_each.value = ?)"
                )
                params.append(value)
        for column, value in where.gt.items():
            clauses.append(f"{column} > ?")
            params.append(self._encode(spec, column, value))
        return (" AND ".join(clauses) or "1"), params

    @staticmethod
    def _encode(spec: TableSpec, column: str, value: Any) -> Any:
        if column in spec.list_columns:
            return json.dumps(list(value))
        if column in spec.bool_columns and value is not None:
            return 1 if value else 0
        return value

    @staticmethod
    def _decode(spec: TableSpec, row: sqlite3.Row) -> dict[str, Any]:
        data = dict(row)
        for column in spec.list_columns:
            data[column] = json.loads(data[column]) if data.get(column) else []
        for column in spec.bool_columns:
            if data.get(column) is not None:
                data[column] = bool(data[column])
        return data
