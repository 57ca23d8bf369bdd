"""
Memo records, data-access calls and the memo board view model.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from memopad.platform import (
    CHANGE_EVENTS,
    DELETE,
    INSERT,
    ChangeEvent,
    PlatformClient,
    PlatformError,
    Subscription,
)

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "memos"
SNAPSHOT = "SNAPSHOT"


@dataclass
class Memo:
    id: Any
    content: str
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Memo":
        return cls(
            id=row["id"],
            content=row.get("content") or "",
            created_at=row.get("created_at"),
        )

    def as_dict(self) -> dict:
        return {"id": self.id, "content": self.content, "created_at": self.created_at}


def is_blank(content: Optional[str]) -> bool:
    return not (content or "").strip()


async def fetch_memos(
    platform: PlatformClient, table: str = DEFAULT_TABLE
) -> list[Memo]:
    """Newest first."""
    rows = await platform.select(table, order_by="created_at", descending=True)
    return [Memo.from_row(row) for row in rows]


async def create_memo(
    platform: PlatformClient, content: str, table: str = DEFAULT_TABLE
) -> Memo:
    rows = await platform.insert(table, [{"content": content}])
    if not rows:
        raise PlatformError("Insert returned no rows")
    return Memo.from_row(rows[0])


async def delete_memo(
    platform: PlatformClient, memo_id: Any, table: str = DEFAULT_TABLE
) -> None:
    await platform.delete(table, "id", memo_id)


BoardListener = Callable[[str, list[Memo]], None]


class MemoBoard:
    """
    Local view of the memo collection for one displayed page.

    The list is newest first. Local inserts and live-feed inserts share one
    duplicate guard keyed on the memo id, since the feed echoes our own
    inserts in no guaranteed order. Platform failures are logged and leave
    the list untouched.

    When ``loop`` is set, feed callbacks are handed to that loop so the list
    is only ever mutated there.
    """

    def __init__(
        self,
        platform: PlatformClient,
        table: str = DEFAULT_TABLE,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.platform = platform
        self.table = table
        self.loop = loop
        self.memos: list[Memo] = []
        self._listeners: list[BoardListener] = []
        self._subscription: Optional[Subscription] = None

    @property
    def mounted(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def add_listener(self, listener: BoardListener) -> None:
        """Call ``listener(event_type, memos)`` whenever the list changes."""
        self._listeners.append(listener)

    def _notify(self, event_type: str) -> None:
        snapshot = list(self.memos)
        for listener in self._listeners:
            listener(event_type, snapshot)

    def _prepend(self, memo: Memo) -> bool:
        if any(existing.id == memo.id for existing in self.memos):
            return False
        self.memos = [memo, *self.memos]
        return True

    def _remove(self, memo_id: Any) -> bool:
        remaining = [memo for memo in self.memos if memo.id != memo_id]
        changed = len(remaining) != len(self.memos)
        self.memos = remaining
        return changed

    async def fetch(self) -> None:
        try:
            memos = await fetch_memos(self.platform, self.table)
        except PlatformError as exc:
            logger.error("Error fetching memos: %s", exc.message)
            return
        self.memos = memos
        self._notify(SNAPSHOT)

    async def add(self, content: Optional[str]) -> Optional[Memo]:
        if is_blank(content):
            return None
        try:
            memo = await create_memo(self.platform, content, self.table)
        except PlatformError as exc:
            logger.error("Error inserting memo: %s", exc.message)
            return None
        if self._prepend(memo):
            self._notify(INSERT)
        return memo

    async def delete(self, memo_id: Any) -> bool:
        try:
            await delete_memo(self.platform, memo_id, self.table)
        except PlatformError as exc:
            logger.error("Error deleting memo %s: %s", memo_id, exc.message)
            return False
        if self._remove(memo_id):
            self._notify(DELETE)
        return True

    def apply_change(self, event: ChangeEvent) -> bool:
        """Fold one feed event into the list. Returns True if it changed."""
        if event.event_type == INSERT and event.new.get("id") is not None:
            changed = self._prepend(Memo.from_row(event.new))
        elif event.event_type == DELETE and event.old.get("id") is not None:
            changed = self._remove(event.old["id"])
        else:
            logger.debug("Ignoring %s change on %s", event.event_type, event.table)
            return False
        if changed:
            self._notify(event.event_type)
        return changed

    def _apply_feed_event(self, event: ChangeEvent) -> None:
        # Events queued before unmount must not reach a dismissed view.
        if self.mounted:
            self.apply_change(event)

    def _on_change(self, event: ChangeEvent) -> None:
        if self.loop is not None:
            self.loop.call_soon_threadsafe(self._apply_feed_event, event)
        else:
            self._apply_feed_event(event)

    async def mount(self) -> None:
        """Load the list, then start following the live feed."""
        if self.mounted:
            return
        await self.fetch()
        try:
            self._subscription = await self.platform.subscribe(
                self.table, CHANGE_EVENTS, self._on_change
            )
        except PlatformError as exc:
            logger.error("Error subscribing to %s changes: %s", self.table, exc.message)

    async def unmount(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()

    async def __aenter__(self) -> "MemoBoard":
        await self.mount()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.unmount()
