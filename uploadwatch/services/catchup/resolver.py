"""Reconcile a source's checkpoint with its reverse-chronological feed.

The resolver walks pages newest to oldest, reserving quota before every page,
until it sees an item at or before the checkpoint or the feed ends. Items are
emitted oldest first, ordered by `(published_at, item_id)`.

A walk that runs out of pages or quota stops with a cursor and returns the
items it collected so the caller can buffer them. The next walk resumes at
that cursor with the buffer passed back in; once it reaches the checkpoint,
buffer and new items are emitted together. Nothing is emitted before every
item between the checkpoint and the newest one has been seen, so the
checkpoint never skips an undelivered older item.

A source without a checkpoint is never backfilled: one page is read, its
newest item becomes the checkpoint and nothing is emitted. An empty first
page anchors the checkpoint at the epoch instead.

Before dispatch `describe` looks up broadcast details for the emitted
items, again reserving quota per lookup.
"""

from collections.abc import Iterable
from datetime import datetime, timezone

from pydantic import BaseModel

from uploadwatch.common.errors import QuotaExhausted
from uploadwatch.common.logging import logger
from uploadwatch.common.metrics import catchup_pages_fetched_total
from uploadwatch.common.schemas import Checkpoint, Item, ItemExtras, ItemsPage
from uploadwatch.services.clients.base import DataSource

# Checkpoint of a source whose feed was empty on its first poll; every
# later upload sorts after it.
EMPTY_FEED_ANCHOR = Checkpoint(published_at=datetime(1970, 1, 1, tzinfo=timezone.utc), item_id="")


class CatchUpResult(BaseModel):
    """Outcome of one bounded walk over a source's feed."""

    items: list[Item] = []
    new_checkpoint: Checkpoint | None = None
    next_cursor: str | None = None
    complete: bool = False
    quota_denied: bool = False
    pages_fetched: int = 0


class CatchUpResolver:
    """Produces the items published after a checkpoint, within a page budget."""

    def __init__(
        self,
        client: DataSource,
        allocator,
        max_pages: int = 5,
        service_name: str = "uploadwatch",
    ) -> None:
        if max_pages < 1:
            raise ValueError("max_pages must be at least 1")
        self.client = client
        self.allocator = allocator
        self.max_pages = max_pages
        self.service_name = service_name

    async def _fetch(self, source_id: str, cursor: str | None) -> ItemsPage:
        """Reserve and fetch one page; raises QuotaExhausted on denial."""

        cost = self.client.page_cost
        if not self.allocator.try_reserve(cost):
            raise QuotaExhausted(f"no budget for a {cost}-unit page of {source_id}")
        page = await self.client.list_items_page(source_id, cursor)
        catchup_pages_fetched_total.labels(service=self.service_name).inc()
        if page.cost_units > cost:
            self.allocator.record(page.cost_units - cost)
        return page

    async def resolve(
        self,
        source_id: str,
        checkpoint: Checkpoint | None,
        cursor: str | None = None,
        buffered: Iterable[Item] = (),
    ) -> CatchUpResult:
        """Walk the feed from `cursor` (or the newest page) towards `checkpoint`.

        `buffered` holds the items earlier unfinished walks already collected.
        For an incomplete result, `items` are the newly collected items to add
        to that buffer; for a complete one they are everything to dispatch.
        """

        if checkpoint is None:
            return await self._first_poll(source_id)
        return await self._walk(source_id, checkpoint, cursor, list(buffered))

    async def _first_poll(self, source_id: str) -> CatchUpResult:
        try:
            page = await self._fetch(source_id, None)
        except QuotaExhausted:
            return CatchUpResult(quota_denied=True)
        if page.items:
            newest = max((item.checkpoint for item in page.items), key=Checkpoint.key)
        else:
            newest = EMPTY_FEED_ANCHOR
        logger.info(
            "source_initialized source_id=%s checkpoint_item=%s items_on_page=%s",
            source_id,
            newest.item_id,
            len(page.items),
        )
        return CatchUpResult(new_checkpoint=newest, complete=True, pages_fetched=1)

    async def _walk(
        self,
        source_id: str,
        checkpoint: Checkpoint,
        cursor: str | None,
        buffered: list[Item],
    ) -> CatchUpResult:
        collected: dict[str, Item] = {}
        page_cursor = cursor
        pages = 0
        while pages < self.max_pages:
            try:
                page = await self._fetch(source_id, page_cursor)
            except QuotaExhausted:
                logger.info("catchup_quota_denied source_id=%s pages=%s", source_id, pages)
                return CatchUpResult(
                    items=_ordered(collected),
                    next_cursor=page_cursor,
                    quota_denied=True,
                    pages_fetched=pages,
                )
            pages += 1

            reached = False
            for item in page.items:
                if item.checkpoint <= checkpoint:
                    reached = True
                    continue
                collected.setdefault(item.item_id, item)

            if reached or page.next_cursor is None:
                for item in buffered:
                    if checkpoint < item.checkpoint:
                        collected.setdefault(item.item_id, item)
                items = _ordered(collected)
                return CatchUpResult(
                    items=items,
                    new_checkpoint=items[-1].checkpoint if items else checkpoint,
                    complete=True,
                    pages_fetched=pages,
                )
            page_cursor = page.next_cursor

        logger.info(
            "catchup_page_cap source_id=%s pages=%s resume_cursor=%s buffered=%s",
            source_id,
            pages,
            page_cursor,
            len(buffered) + len(collected),
        )
        return CatchUpResult(items=_ordered(collected), next_cursor=page_cursor, pages_fetched=pages)

    async def describe(self, source_id: str, items: list[Item]) -> dict[str, ItemExtras]:
        """Fetch per-item details in batches; raises QuotaExhausted on denial."""

        extras: dict[str, ItemExtras] = {}
        batch_size = self.client.extras_batch_size
        for start in range(0, len(items), batch_size):
            batch = items[start : start + batch_size]
            cost = self.client.extras_cost
            if not self.allocator.try_reserve(cost):
                raise QuotaExhausted(f"no budget for a {cost}-unit lookup of {len(batch)} items of {source_id}")
            extras.update(await self.client.get_item_extras([item.item_id for item in batch]))
        missing = len(items) - len(extras)
        if missing:
            logger.info("item_extras_missing source_id=%s missing=%s", source_id, missing)
        return extras


def _ordered(items: dict[str, Item]) -> list[Item]:
    return sorted(items.values(), key=lambda i: i.checkpoint.key())
