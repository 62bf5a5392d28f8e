"""Durable state for subscriptions, source checkpoints and the dispatch ledger.

Everything the poller and the command surface share goes through this module;
neither side keeps in-memory state the other depends on. Each public method
runs in its own short transaction and never spans a network call.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from uploadwatch.common.errors import CheckpointRegression, StorageUnavailable
from uploadwatch.common.logging import logger
from uploadwatch.common.schemas import Checkpoint, Item, LedgerKey, SourceView, SubscriptionView, as_utc
from uploadwatch.services.store.models import (
    DispatchFailure,
    LedgerEntry,
    PendingItem,
    QuotaState,
    Source,
    Subscription,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _source_view(row: Source) -> SourceView:
    checkpoint = None
    if row.checkpoint_published_at is not None and row.checkpoint_item_id is not None:
        checkpoint = Checkpoint(published_at=row.checkpoint_published_at, item_id=row.checkpoint_item_id)
    return SourceView(
        source_id=row.source_id,
        source_url=row.source_url,
        checkpoint=checkpoint,
        pending_cursor=row.pending_cursor,
        last_polled_at=as_utc(row.last_polled_at) if row.last_polled_at is not None else None,
    )


def _subscription_view(row: Subscription) -> SubscriptionView:
    return SubscriptionView(
        subscription_id=row.subscription_id,
        destination=row.destination,
        source_id=row.source_id,
        active=row.active,
        shorts_allowed=row.shorts_allowed,
        live_allowed=row.live_allowed,
        vod_allowed=row.vod_allowed,
    )


class SubscriptionStore:
    """SQL-backed store; every database failure surfaces as `StorageUnavailable`."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    @contextmanager
    def _session(self, operation: str) -> Iterator:
        try:
            with self.session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.warning("storage_error operation=%s error=%s", operation, exc)
            raise StorageUnavailable(f"{operation} failed: {exc}") from exc

    def upsert_source(self, source_id: str, source_url: str) -> SourceView:
        with self._session("upsert_source") as db:
            row = db.get(Source, source_id)
            if row is None:
                row = Source(source_id=source_id, source_url=source_url)
                db.add(row)
                db.commit()
            return _source_view(row)

    def upsert_subscription(
        self, destination: str, source_id: str, source_url: str
    ) -> tuple[SubscriptionView, bool]:
        """Create or reactivate a subscription; `False` when it was already active."""

        with self._session("upsert_subscription") as db:
            if db.get(Source, source_id) is None:
                db.add(Source(source_id=source_id, source_url=source_url))
                db.flush()
            row = db.execute(
                select(Subscription).where(
                    Subscription.destination == destination,
                    Subscription.source_id == source_id,
                )
            ).scalar_one_or_none()
            if row is not None and row.active:
                return _subscription_view(row), False
            if row is None:
                row = Subscription(destination=destination, source_id=source_id, active=True)
                db.add(row)
            else:
                row.active = True
            try:
                db.commit()
            except IntegrityError:
                # A concurrent command created the same pair first.
                db.rollback()
                row = db.execute(
                    select(Subscription).where(
                        Subscription.destination == destination,
                        Subscription.source_id == source_id,
                    )
                ).scalar_one()
                return _subscription_view(row), False
            return _subscription_view(row), True

    def deactivate_subscription(self, destination: str, source_id: str) -> bool:
        """Flip the active flag off; returns whether anything changed."""

        with self._session("deactivate_subscription") as db:
            row = db.execute(
                select(Subscription).where(
                    Subscription.destination == destination,
                    Subscription.source_id == source_id,
                )
            ).scalar_one_or_none()
            if row is None or not row.active:
                return False
            row.active = False
            db.commit()
            return True

    def set_filters(
        self,
        destination: str,
        source_id: str,
        shorts: bool | None = None,
        live: bool | None = None,
        vod: bool | None = None,
    ) -> SubscriptionView | None:
        """Update the content filters of an active subscription; None when there is none."""

        with self._session("set_filters") as db:
            row = db.execute(
                select(Subscription).where(
                    Subscription.destination == destination,
                    Subscription.source_id == source_id,
                    Subscription.active.is_(True),
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            if shorts is not None:
                row.shorts_allowed = shorts
            if live is not None:
                row.live_allowed = live
            if vod is not None:
                row.vod_allowed = vod
            db.commit()
            return _subscription_view(row)

    def list_active_sources(self) -> list[SourceView]:
        """Sources with at least one active subscription."""

        with self._session("list_active_sources") as db:
            active = select(Subscription.source_id).where(Subscription.active.is_(True)).distinct()
            rows = db.execute(
                select(Source).where(Source.source_id.in_(active)).order_by(Source.source_id)
            ).scalars().all()
            return [_source_view(row) for row in rows]

    def list_active_subscriptions(self, source_id: str) -> list[SubscriptionView]:
        with self._session("list_active_subscriptions") as db:
            rows = db.execute(
                select(Subscription)
                .where(Subscription.source_id == source_id, Subscription.active.is_(True))
                .order_by(Subscription.created_at, Subscription.subscription_id)
            ).scalars().all()
            return [_subscription_view(row) for row in rows]

    def get_source(self, source_id: str) -> SourceView | None:
        with self._session("get_source") as db:
            row = db.get(Source, source_id)
            return _source_view(row) if row is not None else None

    def get_checkpoint(self, source_id: str) -> Checkpoint | None:
        source = self.get_source(source_id)
        return source.checkpoint if source is not None else None

    def count_sources(self) -> int:
        """Number of sources currently polled (any active subscriber)."""

        return len(self.list_active_sources())

    def save_cursor(self, source_id: str, cursor: str | None) -> None:
        """Persist the pagination cursor and stamp the poll time."""

        self.save_catchup_progress(source_id, cursor, [])

    def save_catchup_progress(self, source_id: str, cursor: str | None, items: Iterable[Item]) -> None:
        """Buffer items of an unfinished catch-up together with its resume cursor."""

        with self._session("save_catchup_progress") as db:
            row = db.get(Source, source_id)
            if row is None:
                return
            for item in items:
                if db.get(PendingItem, (source_id, item.item_id)) is None:
                    db.add(
                        PendingItem(
                            source_id=source_id,
                            item_id=item.item_id,
                            published_at=item.published_at,
                            title=item.title,
                            channel_title=item.channel_title,
                        )
                    )
            row.pending_cursor = cursor
            row.last_polled_at = _now()
            db.commit()

    def list_pending_items(self, source_id: str) -> list[Item]:
        with self._session("list_pending_items") as db:
            rows = db.execute(
                select(PendingItem)
                .where(PendingItem.source_id == source_id)
                .order_by(PendingItem.published_at, PendingItem.item_id)
            ).scalars().all()
            return [
                Item(
                    item_id=row.item_id,
                    published_at=row.published_at,
                    title=row.title,
                    channel_title=row.channel_title,
                )
                for row in rows
            ]

    def advance_checkpoint(
        self,
        source_id: str,
        new_checkpoint: Checkpoint,
        entries: Iterable[LedgerKey] = (),
    ) -> None:
        """Write ledger entries and move the checkpoint in one transaction.

        Clears the pending cursor and drops buffered items the checkpoint now
        covers. Ledger keys that already exist are left alone so the
        composite key stays unique.
        """

        with self._session("advance_checkpoint") as db:
            row = db.get(Source, source_id)
            if row is None:
                raise StorageUnavailable(f"unknown source {source_id}")
            current = _source_view(row).checkpoint
            if current is not None and new_checkpoint < current:
                raise CheckpointRegression(
                    f"source {source_id} checkpoint {current.key()} -> {new_checkpoint.key()}"
                )
            for entry in entries:
                if db.get(LedgerEntry, (entry.item_id, entry.subscription_id)) is None:
                    db.add(
                        LedgerEntry(
                            item_id=entry.item_id,
                            subscription_id=entry.subscription_id,
                            source_id=source_id,
                        )
                    )
            pending = db.execute(select(PendingItem).where(PendingItem.source_id == source_id)).scalars().all()
            for buffered in pending:
                if Checkpoint(published_at=buffered.published_at, item_id=buffered.item_id) <= new_checkpoint:
                    db.delete(buffered)
            row.checkpoint_published_at = new_checkpoint.published_at
            row.checkpoint_item_id = new_checkpoint.item_id
            row.pending_cursor = None
            row.last_polled_at = _now()
            db.commit()

    def has_ledger_entry(self, item_id: str, subscription_id: str) -> bool:
        with self._session("has_ledger_entry") as db:
            return db.get(LedgerEntry, (item_id, subscription_id)) is not None

    def ledger_subscriptions(self, item_id: str, subscription_ids: Iterable[str]) -> set[str]:
        """Which of `subscription_ids` already have a ledger entry for `item_id`."""

        ids = list(subscription_ids)
        if not ids:
            return set()
        with self._session("ledger_subscriptions") as db:
            rows = db.execute(
                select(LedgerEntry.subscription_id).where(
                    LedgerEntry.item_id == item_id,
                    LedgerEntry.subscription_id.in_(ids),
                )
            ).scalars().all()
            return set(rows)

    def count_ledger_entries(self, item_id: str | None = None) -> int:
        with self._session("count_ledger_entries") as db:
            query = select(func.count()).select_from(LedgerEntry)
            if item_id is not None:
                query = query.where(LedgerEntry.item_id == item_id)
            return db.execute(query).scalar_one()

    def write_ledger_entry(self, source_id: str, entry: LedgerKey) -> None:
        """Record one late delivery and drop its failure row."""

        with self._session("write_ledger_entry") as db:
            if db.get(LedgerEntry, (entry.item_id, entry.subscription_id)) is None:
                db.add(LedgerEntry(item_id=entry.item_id, subscription_id=entry.subscription_id, source_id=source_id))
            failure = db.get(DispatchFailure, (entry.item_id, entry.subscription_id))
            if failure is not None:
                db.delete(failure)
            db.commit()

    def record_dispatch_failure(
        self,
        source_id: str,
        entry: LedgerKey,
        destination: str,
        message: str,
        error: str,
        attempts: int,
    ) -> None:
        with self._session("record_dispatch_failure") as db:
            row = db.get(DispatchFailure, (entry.item_id, entry.subscription_id))
            if row is None:
                row = DispatchFailure(item_id=entry.item_id, subscription_id=entry.subscription_id)
                db.add(row)
            row.source_id = source_id
            row.destination = destination
            row.message = message
            row.error = error
            row.attempts = attempts
            row.failed_at = _now()
            db.commit()

    def list_dispatch_failures(self, limit: int = 100) -> list[DispatchFailure]:
        with self._session("list_dispatch_failures") as db:
            return list(
                db.execute(select(DispatchFailure).order_by(DispatchFailure.failed_at).limit(limit)).scalars().all()
            )

    def clear_dispatch_failure(self, entry: LedgerKey) -> None:
        with self._session("clear_dispatch_failure") as db:
            row = db.get(DispatchFailure, (entry.item_id, entry.subscription_id))
            if row is not None:
                db.delete(row)
                db.commit()

    def load_quota_state(self) -> tuple[int, datetime] | None:
        with self._session("load_quota_state") as db:
            row = db.get(QuotaState, "default")
            if row is None:
                return None
            return row.consumed, as_utc(row.window_started_at)

    def save_quota_state(self, consumed: int, window_started_at: datetime) -> None:
        with self._session("save_quota_state") as db:
            row = db.get(QuotaState, "default")
            if row is None:
                row = QuotaState(name="default")
                db.add(row)
            row.consumed = consumed
            row.window_started_at = window_started_at
            db.commit()
