"""Subscribe/unsubscribe mutations invoked by inbound chat commands."""

from pydantic import BaseModel

from uploadwatch.common.errors import QuotaExhausted
from uploadwatch.common.logging import logger
from uploadwatch.common.schemas import SubscriptionView
from uploadwatch.services.clients.base import DataSource


class SubscriptionResult(BaseModel):
    """Outcome of a subscribe command; `created` is False for a no-op."""

    subscription: SubscriptionView
    source_id: str
    created: bool


class SubscriptionManager:
    """Resolves source URLs and writes subscriptions through the store."""

    def __init__(self, store, client: DataSource, allocator=None) -> None:
        self.store = store
        self.client = client
        self.allocator = allocator

    async def _resolve(self, source_url: str) -> str:
        cost = getattr(self.client, "resolve_cost", 0)
        if cost and self.allocator is not None and not self.allocator.try_reserve(cost):
            raise QuotaExhausted("no budget left to resolve a source today")
        return await self.client.resolve_source(source_url)

    async def subscribe(self, destination: str, source_url: str) -> SubscriptionResult:
        """Track `source_url` in `destination`; reactivates a removed subscription.

        A new source starts with a null checkpoint, so its first poll records
        the newest upload without announcing the back catalogue.
        """

        source_id = await self._resolve(source_url)
        subscription, created = self.store.upsert_subscription(destination, source_id, source_url)
        logger.info(
            "subscribed destination=%s source_id=%s created=%s",
            destination,
            source_id,
            created,
        )
        return SubscriptionResult(subscription=subscription, source_id=source_id, created=created)

    async def unsubscribe(self, destination: str, source_url: str) -> tuple[str, bool]:
        """Deactivate the subscription; returns (source_id, changed). Idempotent."""

        source_id = await self._resolve(source_url)
        changed = self.store.deactivate_subscription(destination, source_id)
        logger.info("unsubscribed destination=%s source_id=%s changed=%s", destination, source_id, changed)
        return source_id, changed

    async def update_filters(
        self,
        destination: str,
        source_url: str,
        shorts: bool | None = None,
        live: bool | None = None,
        vod: bool | None = None,
    ) -> tuple[str, SubscriptionView | None]:
        """Toggle which kinds of uploads reach `destination`; None when not subscribed."""

        source_id = await self._resolve(source_url)
        subscription = self.store.set_filters(destination, source_id, shorts=shorts, live=live, vod=vod)
        logger.info(
            "filters_updated destination=%s source_id=%s shorts=%s live=%s vod=%s found=%s",
            destination,
            source_id,
            shorts,
            live,
            vod,
            subscription is not None,
        )
        return source_id, subscription
