from __future__ import annotations

from typing import Any, Iterable

from .errors import AlreadyExists, Conflict, NotFound, ValidationFailure
from .models import ROLE_USER, ROLES, User
from .store import Filter, Store


class UserDirectory:
    """Registration, lookup and admin-side mutation of user records."""

    def __init__(self, store: Store) -> None:
        self._store = store

    async def register(
        self,
        *,
        name: str,
        email: str,
        role: str = ROLE_USER,
        organization_id: str | None = None,
        avatar_url: str | None = None,
        is_verified: bool = False,
    ) -> User:
        clean_name = (name or "").strip()
        clean_email = (email or "").strip().lower()
        if not clean_name:
            raise ValidationFailure("name is required")
        if "@" not in clean_email:
            raise ValidationFailure("email is invalid")
        self._check_role(role)
        try:
            row = await self._store.insert(
                "users",
                {
                    "name": clean_name,
                    "email": clean_email,
                    "role": role,
                    "is_verified": is_verified,
                    "is_active": True,
                    "organization_id": organization_id,
                    "avatar_url": avatar_url,
                },
            )
        except Conflict as exc:
            raise AlreadyExists("email already registered") from exc
        return User.from_row(row)

    async def find(self, user_id: str) -> User | None:
        row = await self._store.select_one("users", Filter(eq={"id": user_id}))
        return User.from_row(row) if row else None

    async def get(self, user_id: str) -> User:
        user = await self.find(user_id)
        if user is None:
            raise NotFound(f"unknown user {user_id}")
        return user

    async def get_many(self, user_ids: Iterable[str]) -> dict[str, User]:
        wanted = sorted(set(user_ids))
        if not wanted:
            return {}
        rows = await self._store.select("users", Filter(isin={"id": wanted}))
        return {row["id"]: User.from_row(row) for row in rows}

    async def directory(
        self,
        *,
        organization_id: str | None = None,
        include_inactive: bool = False,
        limit: int | None = None,
    ) -> list[User]:
        eq: dict[str, Any] = {}
        if organization_id is not None:
            eq["organization_id"] = organization_id
        if not include_inactive:
            eq["is_active"] = True
        rows = await self._store.select("users", Filter(eq=eq), order_by=("name", "seq"), limit=limit)
        return [User.from_row(row) for row in rows]

    async def set_role(self, user_id: str, role: str) -> User:
        self._check_role(role)
        return await self._update(user_id, {"role": role})

    async def deactivate(self, user_id: str) -> User:
        return await self._update(user_id, {"is_active": False})

    async def count(self, *, active_only: bool = True) -> int:
        where = Filter(eq={"is_active": True}) if active_only else Filter()
        return await self._store.count("users", where)

    async def _update(self, user_id: str, values: dict[str, Any]) -> User:
        rows = await self._store.update("users", values, Filter(eq={"id": user_id}))
        if not rows:
            raise NotFound(f"unknown user {user_id}")
        return User.from_row(rows[0])

    @staticmethod
    def _check_role(role: str) -> None:
        if role not in ROLES:
            raise ValidationFailure(f"unknown role {role!r}")
