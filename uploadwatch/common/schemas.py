"""Value types passed between the store, resolver, dispatcher and clients."""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, field_validator


def as_utc(value: datetime) -> datetime:
    """Normalize to aware UTC; sqlite hands back naive datetimes."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Checkpoint(BaseModel):
    """Ordering token: publish time, tie-broken by item id ascending."""

    model_config = ConfigDict(frozen=True)

    published_at: datetime
    item_id: str

    @field_validator("published_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    def key(self) -> tuple[datetime, str]:
        return (self.published_at, self.item_id)

    def __lt__(self, other: "Checkpoint") -> bool:
        return self.key() < other.key()

    def __le__(self, other: "Checkpoint") -> bool:
        return self.key() <= other.key()


class Item(BaseModel):
    """One published upload; immutable once observed."""

    model_config = ConfigDict(frozen=True)

    item_id: str
    published_at: datetime
    title: str = ""
    channel_title: str = ""

    @field_validator("published_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def checkpoint(self) -> Checkpoint:
        return Checkpoint(published_at=self.published_at, item_id=self.item_id)


class ItemsPage(BaseModel):
    """One reverse-chronological page from the data source."""

    items: list[Item]
    next_cursor: str | None = None
    cost_units: int = 0


class LedgerKey(BaseModel):
    """Composite key of a ledger entry."""

    model_config = ConfigDict(frozen=True)

    item_id: str
    subscription_id: str


class SourceView(BaseModel):
    """Read-only snapshot of a source row for one poll cycle."""

    source_id: str
    source_url: str
    checkpoint: Checkpoint | None = None
    pending_cursor: str | None = None
    last_polled_at: datetime | None = None


class SubscriptionView(BaseModel):
    """Read-only snapshot of a subscription row."""

    subscription_id: str
    destination: str
    source_id: str
    active: bool
    shorts_allowed: bool = True
    live_allowed: bool = True
    vod_allowed: bool = True


# Broadcast states reported by the data source for one upload.
UPLOADED = "uploaded"
UPCOMING = "upcoming"
LIVE = "live"
VOD = "vod"
# Contradictory broadcast fields; such items are never announced.
NONSENSE = "nonsense"


class ItemExtras(BaseModel):
    """Per-upload details fetched just before dispatch."""

    model_config = ConfigDict(frozen=True)

    item_id: str
    live_status: str = UPLOADED
    is_short: bool = False
    is_scheduled: bool = False
    category_id: str = ""
    category_title: str = ""
    category_emoji: str = ""
    time_string: str = ""
