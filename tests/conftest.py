"""Shared fixtures: in-memory database and fake external collaborators."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from uploadwatch.common.db import Base
from uploadwatch.common.errors import PermanentDispatchFailure, SourceNotResolvable, TransientError
from uploadwatch.common.schemas import Item, ItemExtras, ItemsPage
from uploadwatch.services.dispatcher.service import NotificationDispatcher
from uploadwatch.services.quota.allocator import QuotaAllocator
from uploadwatch.services.store import models  # noqa: F401  (registers tables)
from uploadwatch.services.store.repository import SubscriptionStore


def make_item(n: int, ts: int | None = None) -> Item:
    """Item `v<n>` published `ts` (default n) seconds after a fixed epoch."""

    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return Item(
        item_id=f"v{n}",
        published_at=base + timedelta(seconds=n if ts is None else ts),
        title=f"Video {n}",
        channel_title="Test Channel",
    )


class Clock:
    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeFeed:
    """Reverse-chronological feed; cursors are stringified offsets."""

    page_cost = 1
    resolve_cost = 0
    extras_cost = 1
    extras_batch_size = 50

    def __init__(self, page_size: int = 4) -> None:
        self.page_size = page_size
        self.feeds: dict[str, list[Item]] = {}
        self.urls: dict[str, str] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.fail_next: Exception | None = None
        self.extras: dict[str, ItemExtras | None] = {}
        self.extras_calls: list[list[str]] = []

    def publish(self, source_id: str, *items: Item) -> None:
        feed = self.feeds.setdefault(source_id, [])
        feed.extend(items)
        feed.sort(key=lambda i: (i.published_at, i.item_id), reverse=True)

    async def list_items_page(self, source_id: str, cursor: str | None) -> ItemsPage:
        self.calls.append((source_id, cursor))
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc
        feed = self.feeds.get(source_id, [])
        start = int(cursor) if cursor else 0
        end = start + self.page_size
        next_cursor = str(end) if end < len(feed) else None
        return ItemsPage(items=feed[start:end], next_cursor=next_cursor, cost_units=self.page_cost)

    async def get_item_extras(self, item_ids: list[str]) -> dict[str, ItemExtras]:
        """Plain uploads unless `extras` says otherwise; a None entry is missing."""

        self.extras_calls.append(list(item_ids))
        found = {}
        for item_id in item_ids:
            extras = self.extras.get(item_id, ItemExtras(item_id=item_id))
            if extras is not None:
                found[item_id] = extras
        return found

    async def resolve_source(self, url: str) -> str:
        if url not in self.urls:
            raise SourceNotResolvable(url, "unknown channel")
        return self.urls[url]


class FakeGateway:
    """Records sends; `permanent` destinations always refuse, `transient_failures` counts down.

    `on_send` is called after each successful send.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.attempts: dict[str, int] = {}
        self.permanent: set[str] = set()
        self.transient_failures: dict[str, int] = {}
        self.on_send = None

    async def send_message(self, destination: str, text: str) -> None:
        self.attempts[destination] = self.attempts.get(destination, 0) + 1
        if destination in self.permanent:
            raise PermanentDispatchFailure(f"{destination} is gone")
        remaining = self.transient_failures.get(destination, 0)
        if remaining:
            self.transient_failures[destination] = remaining - 1
            raise TransientError(f"{destination} timed out")
        self.sent.append((destination, text))
        if self.on_send is not None:
            self.on_send(destination, text)

    def sent_to(self, destination: str) -> list[str]:
        return [text for dest, text in self.sent if dest == destination]


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return SubscriptionStore(session_factory)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def allocator(clock):
    return QuotaAllocator(10_000, clock=clock)


@pytest.fixture
def dispatcher(store, gateway):
    return NotificationDispatcher(store, gateway, max_attempts=3, base_backoff_seconds=0)
