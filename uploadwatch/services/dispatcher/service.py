"""Deliver new uploads to subscribers at most once per (item, subscription).

The dispatcher sends and reports which pairs were delivered; the caller
commits those ledger keys together with the checkpoint. The ledger is read
once per item before the first send, so a storage error can only stop an
item before anything went out. A pair that keeps failing is skipped so one
broken destination cannot block a source: its ledger entry is withheld and
the failure is recorded for `replay_failures`.
"""

import asyncio

from uploadwatch.common.errors import PermanentDispatchFailure, StorageUnavailable, TransientError
from uploadwatch.common.logging import logger
from uploadwatch.common.metrics import (
    duplicate_dispatches_skipped_total,
    notification_failures_total,
    notifications_filtered_total,
    notifications_sent_total,
    retries_total,
)
from uploadwatch.common.schemas import LIVE, NONSENSE, UPCOMING, VOD, Item, ItemExtras, LedgerKey, SubscriptionView
from uploadwatch.services.clients.base import ChatGateway

STATUS_PREFIXES = {UPCOMING: "⏱️ ", LIVE: "🔴 ", VOD: "⭕ "}


def format_message(item: Item, extras: ItemExtras | None = None) -> str:
    """Announcement text: channel and category heading, then the linked upload title."""

    link = f"[{item.title}](https://youtu.be/{item.item_id})"
    if extras is None:
        return f"## {item.channel_title}\n# {link}"
    heading = " ".join(part for part in (item.channel_title, extras.category_emoji, extras.category_title) if part)
    prefix = STATUS_PREFIXES.get(extras.live_status, "")
    return f"## {heading}\n# {prefix}{extras.time_string}{link}"


def filtered_reason(subscription: SubscriptionView, extras: ItemExtras | None) -> str | None:
    """Name of the filter that suppresses this pair, if any.

    Scheduled streams and premieres pass the live and VOD filters.
    """

    if extras is None:
        return None
    if extras.is_short and not subscription.shorts_allowed:
        return "shorts"
    if extras.live_status == LIVE and not subscription.live_allowed and not extras.is_scheduled:
        return "live"
    if extras.live_status == VOD and not subscription.vod_allowed and not extras.is_scheduled:
        return "vod"
    return None


class NotificationDispatcher:
    """Sends one message per new item and active subscription."""

    def __init__(
        self,
        store,
        gateway: ChatGateway,
        max_attempts: int = 3,
        base_backoff_seconds: float = 1.0,
        service_name: str = "uploadwatch",
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.max_attempts = max_attempts
        self.base_backoff_seconds = base_backoff_seconds
        self.service_name = service_name

    async def _send_with_retry(self, destination: str, text: str) -> tuple[bool, str, int]:
        """Return (delivered, last_error, attempts) after bounded backoff."""

        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.gateway.send_message(destination, text)
                return True, "", attempt
            except PermanentDispatchFailure as exc:
                return False, f"PERMANENT: {exc}", attempt
            except TransientError as exc:
                last_error = f"TRANSIENT: {exc}"
            if attempt < self.max_attempts:
                retries_total.labels(service=self.service_name, dependency="chat_gateway").inc()
                # Exponential backoff: base, 2*base, 4*base...
                backoff_seconds = self.base_backoff_seconds * 2 ** (attempt - 1)
                logger.warning(
                    "send_retry destination=%s attempt=%s backoff_s=%s error=%s",
                    destination,
                    attempt,
                    backoff_seconds,
                    last_error,
                )
                await asyncio.sleep(backoff_seconds)
        return False, last_error, self.max_attempts

    async def deliver(
        self,
        item: Item,
        subscriptions: list[SubscriptionView],
        extras: ItemExtras | None = None,
    ) -> list[LedgerKey]:
        """Send `item` to every subscription lacking a ledger entry.

        Returns the keys of successful sends. Raises StorageUnavailable when
        the ledger cannot be read, before anything is sent for the item.
        """

        if extras is not None and extras.live_status == NONSENSE:
            logger.info("dispatch_skipped_nonsense item_id=%s", item.item_id)
            return []
        already_sent = self.store.ledger_subscriptions(
            item.item_id, [subscription.subscription_id for subscription in subscriptions]
        )

        delivered: list[LedgerKey] = []
        text = format_message(item, extras)
        for subscription in subscriptions:
            key = LedgerKey(item_id=item.item_id, subscription_id=subscription.subscription_id)
            if key.subscription_id in already_sent:
                logger.info(
                    "duplicate dispatch skipped item_id=%s subscription_id=%s",
                    key.item_id,
                    key.subscription_id,
                )
                duplicate_dispatches_skipped_total.labels(service=self.service_name).inc()
                continue
            reason = filtered_reason(subscription, extras)
            if reason is not None:
                notifications_filtered_total.labels(service=self.service_name, reason=reason).inc()
                logger.info(
                    "dispatch_filtered item_id=%s subscription_id=%s reason=%s",
                    key.item_id,
                    key.subscription_id,
                    reason,
                )
                continue

            ok, error, attempts = await self._send_with_retry(subscription.destination, text)
            if ok:
                notifications_sent_total.labels(service=self.service_name).inc()
                delivered.append(key)
                continue

            error_type = error.split(":", 1)[0]
            notification_failures_total.labels(service=self.service_name, error_type=error_type).inc()
            logger.error(
                "dispatch_failed item_id=%s subscription_id=%s destination=%s attempts=%s error=%s",
                key.item_id,
                key.subscription_id,
                subscription.destination,
                attempts,
                error,
            )
            try:
                self.store.record_dispatch_failure(
                    subscription.source_id, key, subscription.destination, text, error, attempts
                )
            except StorageUnavailable as exc:
                logger.warning("dispatch_failure_not_recorded item_id=%s error=%s", key.item_id, exc)
        return delivered

    async def replay_failures(self, limit: int = 100) -> dict[str, int]:
        """Resend recorded failures that still have no ledger entry."""

        replayed = still_failing = already_sent = 0
        for failure in self.store.list_dispatch_failures(limit):
            key = LedgerKey(item_id=failure.item_id, subscription_id=failure.subscription_id)
            if self.store.has_ledger_entry(key.item_id, key.subscription_id):
                self.store.clear_dispatch_failure(key)
                already_sent += 1
                continue
            ok, error, attempts = await self._send_with_retry(failure.destination, failure.message)
            if ok:
                self.store.write_ledger_entry(failure.source_id, key)
                notifications_sent_total.labels(service=self.service_name).inc()
                replayed += 1
            else:
                self.store.record_dispatch_failure(
                    failure.source_id, key, failure.destination, failure.message, error, failure.attempts + attempts
                )
                still_failing += 1
        logger.info(
            "dispatch_replay replayed=%s still_failing=%s already_sent=%s",
            replayed,
            still_failing,
            already_sent,
        )
        return {"replayed": replayed, "still_failing": still_failing, "already_sent": already_sent}
