"""Persistence models for sources, subscriptions, ledger and quota state."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint, func, true
from sqlalchemy.orm import Mapped, mapped_column

from uploadwatch.common.db import Base


class Source(Base):
    """A tracked uploads feed plus its polling checkpoint.

    The checkpoint is the `(published_at, item_id)` of the newest item whose
    dispatches are fully recorded; both columns are null until the first poll.
    """

    __tablename__ = "sources"

    source_id: Mapped[str] = mapped_column(String, primary_key=True)
    source_url: Mapped[str] = mapped_column(String)
    checkpoint_published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    checkpoint_item_id: Mapped[str | None] = mapped_column(String, nullable=True)
    pending_cursor: Mapped[str | None] = mapped_column(String, nullable=True)
    last_polled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PendingItem(Base):
    """Item collected by an unfinished catch-up, waiting for older pages."""

    __tablename__ = "pending_items"

    source_id: Mapped[str] = mapped_column(ForeignKey("sources.source_id"), primary_key=True)
    item_id: Mapped[str] = mapped_column(String, primary_key=True)
    published_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    title: Mapped[str] = mapped_column(String, default="")
    channel_title: Mapped[str] = mapped_column(String, default="")


class Subscription(Base):
    """One destination channel following one source; deactivated, never deleted."""

    __tablename__ = "subscriptions"
    __table_args__ = (UniqueConstraint("destination", "source_id", name="uq_subscription_destination_source"),)

    subscription_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    destination: Mapped[str] = mapped_column(String, index=True)
    source_id: Mapped[str] = mapped_column(ForeignKey("sources.source_id"), index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    shorts_allowed: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true())
    live_allowed: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true())
    vod_allowed: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LedgerEntry(Base):
    """Immutable fact that an item was dispatched to a subscription."""

    __tablename__ = "ledger_entries"

    item_id: Mapped[str] = mapped_column(String, primary_key=True)
    subscription_id: Mapped[str] = mapped_column(ForeignKey("subscriptions.subscription_id"), primary_key=True)
    source_id: Mapped[str] = mapped_column(String, index=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class QuotaState(Base):
    """Singleton row holding the data-source quota window."""

    __tablename__ = "quota_state"

    name: Mapped[str] = mapped_column(String, primary_key=True, default="default")
    consumed: Mapped[int] = mapped_column(Integer, default=0)
    window_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class DispatchFailure(Base):
    """Item/subscription pair that exhausted delivery retries."""

    __tablename__ = "dispatch_failures"

    item_id: Mapped[str] = mapped_column(String, primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String, primary_key=True)
    source_id: Mapped[str] = mapped_column(String, index=True)
    destination: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(String)
    error: Mapped[str] = mapped_column(String)
    attempts: Mapped[int] = mapped_column(Integer)
    failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
