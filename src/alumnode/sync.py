"""Client-side realtime view of one conversation.

:class:`RealtimeSyncBridge` keeps an ordered local message list in step with
the store. Change events are buffered while the history loads and
replayed afterwards, so a message committed between the load and the
subscription going live is never lost. Every event re-fetches the joined
message and merges it by id, which makes repeated or out-of-order delivery
harmless. Deleted rows are dropped from the list.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
from typing import Callable, Iterable, Iterator, List

from .errors import AlumNodeError, MessageFetchFailed, NotFound
from .hub import DELETE, INSERT, UPDATE, ChangeEvent, Subscription
from .messages import MessageStore
from .models import Message
from .read_state import ReadStateReconciler
from .store import Store

logger = logging.getLogger(__name__)

Listener = Callable[[List[Message]], None]


class MessageTimeline:
    """Messages ordered by ``(created_at_ms, seq)`` and indexed by id."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = []
        self._keys: list[tuple[int, int]] = []
        self._by_id: dict[str, Message] = {}
        for message in messages:
            self.merge(message)

    def merge(self, message: Message) -> bool:
        """Replace a known message in place or insert a new one; report a change."""

        current = self._by_id.get(message.id)
        if current is not None:
            if current == message:
                return False
            index = bisect.bisect_left(self._keys, current.sort_key)
            while self._messages[index].id != message.id:
                index += 1
            self._messages[index] = message
            self._by_id[message.id] = message
            return True

        index = bisect.bisect_right(self._keys, message.sort_key)
        self._messages.insert(index, message)
        self._keys.insert(index, message.sort_key)
        self._by_id[message.id] = message
        return True

    def remove(self, message_id: str) -> bool:
        current = self._by_id.pop(message_id, None)
        if current is None:
            return False
        index = bisect.bisect_left(self._keys, current.sort_key)
        while self._messages[index].id != message_id:
            index += 1
        del self._messages[index]
        del self._keys[index]
        return True

    def get(self, message_id: str) -> Message | None:
        return self._by_id.get(message_id)

    def snapshot(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))


class RealtimeSyncBridge:
    def __init__(
        self,
        store: Store,
        messages: MessageStore,
        read_state: ReadStateReconciler,
        *,
        user_id: str,
        page_size: int | None = None,
    ) -> None:
        self._store = store
        self._messages = messages
        self._read_state = read_state
        self._user_id = user_id
        self._page_size = page_size
        self._cycle = 0
        self._conversation_id: str | None = None
        self._timeline = MessageTimeline()
        self._subscription: Subscription | None = None
        self._queue: asyncio.Queue[ChangeEvent] | None = None
        self._worker: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._listeners: list[Listener] = []

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def messages(self) -> list[Message]:
        return self._timeline.snapshot()

    @property
    def is_open(self) -> bool:
        return self._subscription is not None

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    async def open(self, conversation_id: str) -> None:
        """Load the conversation and start following its changes.

        Any previously open conversation is closed first. If another
        :meth:`open` or :meth:`close` happens while the history is loading,
        this load is discarded.
        """

        await self.close()
        self._cycle += 1
        cycle = self._cycle
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        buffered: list[ChangeEvent] = []
        buffering = True

        def on_change(event: ChangeEvent) -> None:
            if cycle != self._cycle:
                return
            if buffering:
                buffered.append(event)
                return
            queue.put_nowait(event)

        subscription = self._store.subscribe(
            "messages", {"conversation_id": conversation_id}, on_change, kinds=[INSERT, UPDATE, DELETE]
        )
        try:
            history = await self._messages.get_history(conversation_id, page_size=self._page_size)
        except BaseException:
            self._store.unsubscribe(subscription)
            raise
        if cycle != self._cycle:
            self._store.unsubscribe(subscription)
            logger.debug("discarding stale load of %s", conversation_id)
            return

        self._conversation_id = conversation_id
        self._subscription = subscription
        self._timeline = MessageTimeline(history)
        self._queue = queue
        buffering = False
        for event in buffered:
            queue.put_nowait(event)
        buffered.clear()
        self._worker = asyncio.create_task(self._drain(cycle, queue))
        self._notify()
        self._spawn_mark_read(conversation_id)

    async def switch(self, conversation_id: str) -> None:
        await self.open(conversation_id)

    async def close(self) -> None:
        self._cycle += 1
        if self._subscription is not None:
            self._store.unsubscribe(self._subscription)
            self._subscription = None
        tasks = list(self._background)
        if self._worker is not None:
            tasks.append(self._worker)
            self._worker = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._queue = None
        self._conversation_id = None
        self._timeline = MessageTimeline()

    async def flush(self) -> None:
        """Wait until queued events and fire-and-forget reads have settled."""

        while True:
            if self._queue is not None:
                await self._queue.join()
            pending = list(self._background)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def apply(self, message: Message) -> bool:
        """Merge one message into the local list; return whether it changed."""

        if message.conversation_id != self._conversation_id:
            return False
        changed = self._timeline.merge(message)
        if not changed:
            return False
        self._notify()
        if message.sender_id != self._user_id and not message.is_read:
            self._spawn_mark_read(message.conversation_id)
        return True

    async def _drain(self, cycle: int, queue: asyncio.Queue[ChangeEvent]) -> None:
        try:
            while True:
                event = await queue.get()
                try:
                    await self._apply_event(cycle, event)
                finally:
                    queue.task_done()
        except asyncio.CancelledError:
            return

    async def _apply_event(self, cycle: int, event: ChangeEvent) -> None:
        try:
            await self._merge_event(cycle, event)
        except Exception:
            logger.exception("could not apply %s of message %s", event.kind, event.row_id)

    async def _merge_event(self, cycle: int, event: ChangeEvent) -> None:
        if event.kind == DELETE:
            if cycle == self._cycle and self._timeline.remove(event.row_id):
                self._notify()
            return
        try:
            message = await self._messages.get_message(event.row_id)
        except NotFound:
            logger.debug("message %s vanished before it could be merged", event.row_id)
            return
        except MessageFetchFailed:
            logger.warning("could not re-fetch message %s", event.row_id, exc_info=True)
            return
        if cycle != self._cycle:
            return
        self.apply(message)

    def _spawn_mark_read(self, conversation_id: str) -> None:
        task = asyncio.create_task(self._mark_read(conversation_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _mark_read(self, conversation_id: str) -> None:
        try:
            await self._read_state.mark_as_read(conversation_id, self._user_id)
        except AlumNodeError:
            logger.warning("auto mark-as-read failed for %s", conversation_id, exc_info=True)

    def _notify(self) -> None:
        snapshot = self._timeline.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("message listener failed")
