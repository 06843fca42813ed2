from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping

logger = logging.getLogger(__name__)

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """A committed row change published by a store."""

    table: str
    kind: str
    row: Mapping[str, Any]

    @property
    def row_id(self) -> str:
        return str(self.row["id"])


Callback = Callable[[ChangeEvent], None]


@dataclass(eq=False)
class Subscription:
    table: str
    match: Mapping[str, Any]
    callback: Callback
    kinds: frozenset = field(default_factory=lambda: frozenset({INSERT, UPDATE}))

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.kind not in self.kinds:
            return False
        return all(event.row.get(column) == value for column, value in self.match.items())

    def deliver(self, event: ChangeEvent) -> None:
        self.callback(event)


class ChangeHub:
    """Registers change subscriptions and fans committed changes out to them."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(
        self,
        table: str,
        match: Mapping[str, Any],
        callback: Callback,
        *,
        kinds: frozenset | None = None,
    ) -> Subscription:
        subscription = Subscription(table=table, match=dict(match), callback=callback)
        if kinds is not None:
            subscription.kinds = frozenset(kinds)
        self._subscriptions.setdefault(table, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.table)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.table, None)

    def subscriber_count(self, table: str) -> int:
        return len(self._subscriptions.get(table, []))

    def broadcast(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.get(event.table, [])):
            if not subscription.matches(event):
                continue
            try:
                subscription.deliver(event)
            except Exception:
                # One broken listener must not stop delivery to the rest.
                logger.exception("change listener failed for %s %s", event.table, event.kind)
