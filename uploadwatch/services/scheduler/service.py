"""Poll loop: pick due sources, spend quota, catch up and dispatch.

The loop shares nothing with the command surface except the store. Each
source walks IDLE -> CHECKING -> (CATCHING_UP)* -> IDLE within a cycle. A
source with a saved cursor jumps the queue and the loop wakes again after
`catchup_delay`, so interrupted catch-ups drain without waiting a full
interval; the quota allocator bounds how fast. Items an interrupted
catch-up already saw are buffered in the store next to its cursor.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
from time import perf_counter
from uuid import uuid4

from pydantic import BaseModel

from uploadwatch.common.errors import CheckpointRegression, QuotaExhausted, StorageUnavailable, TransientError
from uploadwatch.common.logging import cycle_id_ctx, logger, source_id_ctx
from uploadwatch.common.metrics import poll_cycle_duration_seconds, poll_cycles_total, sources_polled_total
from uploadwatch.common.schemas import Checkpoint, LedgerKey, SourceView
from uploadwatch.common.state_machine import CATCHING_UP, CHECKING, IDLE, SourcePollState
from uploadwatch.common.tracing import source_span

QUOTA_EXHAUSTED = "quota_exhausted"
CATCHING_UP_OUTCOME = "catching_up"


class CycleReport(BaseModel):
    """Summary of one pass over the eligible sources."""

    cycle_id: str
    sources_checked: int = 0
    items_processed: int = 0
    messages_sent: int = 0
    pending_catchups: int = 0
    storage_errors: int = 0
    quota_exhausted: bool = False
    outcomes: dict[str, str] = {}


class PollScheduler:
    """Drives catch-up and dispatch for every source with active subscribers."""

    def __init__(
        self,
        store,
        resolver,
        dispatcher,
        poll_interval: float = 300.0,
        catchup_delay: float = 5.0,
        commit_attempts: int = 3,
        commit_backoff_seconds: float = 0.5,
        clock: Callable[[], datetime] | None = None,
        service_name: str = "uploadwatch",
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.poll_interval = poll_interval
        self.catchup_delay = catchup_delay
        self.commit_attempts = commit_attempts
        self.commit_backoff_seconds = commit_backoff_seconds
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.service_name = service_name

    def _due(self, source: SourceView, now: datetime) -> bool:
        if source.pending_cursor is not None or source.last_polled_at is None:
            return True
        return (now - source.last_polled_at).total_seconds() >= self.poll_interval

    def eligible_sources(self, sources: list[SourceView]) -> list[SourceView]:
        """Due sources, interrupted catch-ups first."""

        now = self.clock()
        due = [source for source in sources if self._due(source, now)]
        return sorted(due, key=lambda source: source.pending_cursor is None)

    async def run_cycle(self, stop_event: asyncio.Event | None = None) -> CycleReport:
        report = CycleReport(cycle_id=uuid4().hex[:12])
        token = cycle_id_ctx.set(report.cycle_id)
        started = perf_counter()
        try:
            try:
                sources = self.store.list_active_sources()
            except StorageUnavailable as exc:
                logger.warning("poll_cycle_storage_unavailable error=%s", exc)
                report.storage_errors += 1
                poll_cycles_total.labels(service=self.service_name, outcome="storage_error").inc()
                return report

            for source in self.eligible_sources(sources):
                if stop_event is not None and stop_event.is_set():
                    break
                outcome = await self.poll_source(source, report, stop_event)
                report.sources_checked += 1
                report.outcomes[source.source_id] = outcome
                sources_polled_total.labels(service=self.service_name, outcome=outcome).inc()
                if outcome == "storage_error":
                    report.storage_errors += 1
                if outcome == CATCHING_UP_OUTCOME:
                    report.pending_catchups += 1
                if outcome == QUOTA_EXHAUSTED:
                    # Global budget is gone; work already done this cycle stands.
                    report.quota_exhausted = True
                    break

            logger.info(
                "poll_cycle_done sources=%s items=%s sent=%s pending=%s quota_exhausted=%s",
                report.sources_checked,
                report.items_processed,
                report.messages_sent,
                report.pending_catchups,
                report.quota_exhausted,
            )
            outcome = QUOTA_EXHAUSTED if report.quota_exhausted else "ok"
            poll_cycles_total.labels(service=self.service_name, outcome=outcome).inc()
            return report
        finally:
            poll_cycle_duration_seconds.labels(service=self.service_name).observe(perf_counter() - started)
            cycle_id_ctx.reset(token)

    async def poll_source(
        self,
        source: SourceView,
        report: CycleReport,
        stop_event: asyncio.Event | None = None,
    ) -> str:
        """Run one source through the state machine; returns an outcome label."""

        state = SourcePollState(source.source_id)
        token = source_id_ctx.set(source.source_id)
        try:
            with source_span("poll_source", source.source_id):
                return await self._poll(source, state, report, stop_event)
        except StorageUnavailable as exc:
            logger.warning("source_storage_unavailable source_id=%s error=%s", source.source_id, exc)
            return "storage_error"
        except TransientError as exc:
            logger.warning("source_transient_error source_id=%s error=%s", source.source_id, exc)
            return "transient_error"
        except CheckpointRegression as exc:
            logger.error("checkpoint_regression source_id=%s error=%s", source.source_id, exc)
            return "checkpoint_regression"
        except Exception as exc:
            # Anything else is this source's problem; the cycle moves on.
            logger.exception("source_poll_failed source_id=%s error=%s", source.source_id, exc)
            return "source_error"
        finally:
            if state.state != IDLE:
                state.move(IDLE)
            source_id_ctx.reset(token)

    async def _poll(
        self,
        source: SourceView,
        state: SourcePollState,
        report: CycleReport,
        stop_event: asyncio.Event | None,
    ) -> str:
        state.move(CHECKING)
        subscriptions = self.store.list_active_subscriptions(source.source_id)
        if not subscriptions:
            # Checkpoint stays frozen until someone subscribes again.
            return "skipped"

        if source.pending_cursor is not None:
            state.move(CATCHING_UP)
        buffered = self.store.list_pending_items(source.source_id)
        result = await self.resolver.resolve(
            source.source_id, source.checkpoint, source.pending_cursor, buffered
        )

        if result.quota_denied:
            if result.items or result.next_cursor != source.pending_cursor:
                self.store.save_catchup_progress(source.source_id, result.next_cursor, result.items)
            return QUOTA_EXHAUSTED

        if not result.complete:
            if state.state != CATCHING_UP:
                state.move(CATCHING_UP)
            self.store.save_catchup_progress(source.source_id, result.next_cursor, result.items)
            return CATCHING_UP_OUTCOME

        if not result.items:
            if result.new_checkpoint is not None and result.new_checkpoint != source.checkpoint:
                await self._commit(source.source_id, result.new_checkpoint, [])
                return "initialized"
            self.store.save_cursor(source.source_id, None)
            return "up_to_date"

        try:
            extras = await self.resolver.describe(source.source_id, result.items)
        except QuotaExhausted as exc:
            # Nothing was committed; the same walk is retried next cycle.
            logger.warning("item_extras_quota_denied source_id=%s error=%s", source.source_id, exc)
            return QUOTA_EXHAUSTED

        for item in result.items:
            keys = await self.dispatcher.deliver(item, subscriptions, extras.get(item.item_id))
            await self._commit(source.source_id, item.checkpoint, keys)
            report.items_processed += 1
            report.messages_sent += len(keys)
            if stop_event is not None and stop_event.is_set() and item is not result.items[-1]:
                # Checkpoint sits on the last committed item; the rest follow next run.
                return "stopped"
        return "dispatched"

    async def _commit(self, source_id: str, checkpoint: Checkpoint, keys: list[LedgerKey]) -> None:
        """Advance the checkpoint with its ledger entries, retrying storage hiccups."""

        for attempt in range(1, self.commit_attempts + 1):
            try:
                self.store.advance_checkpoint(source_id, checkpoint, keys)
                return
            except StorageUnavailable as exc:
                if attempt == self.commit_attempts:
                    logger.error(
                        "checkpoint_commit_failed source_id=%s item_id=%s sent=%s error=%s",
                        source_id,
                        checkpoint.item_id,
                        len(keys),
                        exc,
                    )
                    raise
                backoff_seconds = self.commit_backoff_seconds * 2 ** (attempt - 1)
                logger.warning(
                    "checkpoint_commit_retry source_id=%s attempt=%s backoff_s=%s",
                    source_id,
                    attempt,
                    backoff_seconds,
                )
                await asyncio.sleep(backoff_seconds)

    def next_delay(self, report: CycleReport | None) -> float:
        """Seconds until the next cycle should start."""

        if report is None or report.quota_exhausted:
            return self.poll_interval
        try:
            sources = self.store.list_active_sources()
        except StorageUnavailable:
            return self.poll_interval
        if not sources:
            return self.poll_interval
        now = self.clock()
        waits = []
        for source in sources:
            if self._due(source, now):
                waits.append(0.0)
            else:
                elapsed = (now - source.last_polled_at).total_seconds()
                waits.append(self.poll_interval - elapsed)
        return min(self.poll_interval, max(self.catchup_delay, min(waits)))

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Cycle until `stop_event` is set; never cancels an in-flight call."""

        logger.info("poll_loop_started interval_s=%s", self.poll_interval)
        while not stop_event.is_set():
            report = None
            try:
                report = await self.run_cycle(stop_event)
            except Exception as exc:
                logger.exception("poll_cycle_error error=%s", exc)
            delay = self.next_delay(report)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("poll_loop_stopped")
