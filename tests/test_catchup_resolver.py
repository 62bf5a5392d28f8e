"""Catch-up resolver: ordering, first poll, page cap and quota denial."""

from datetime import datetime, timezone

import pytest

from uploadwatch.common.errors import QuotaExhausted, TransientError
from uploadwatch.common.schemas import LIVE, ItemExtras
from uploadwatch.services.catchup.resolver import EMPTY_FEED_ANCHOR, CatchUpResolver
from uploadwatch.services.quota.allocator import QuotaAllocator

from conftest import make_item

SOURCE = "UUchannel"


async def test_emits_items_after_checkpoint_oldest_first(feed, allocator):
    feed.publish(SOURCE, *(make_item(n, 100 + n - 10) for n in range(1, 14)))
    resolver = CatchUpResolver(feed, allocator, max_pages=5)

    result = await resolver.resolve(SOURCE, make_item(10, 100).checkpoint)

    assert [item.item_id for item in result.items] == ["v11", "v12", "v13"]
    assert result.new_checkpoint == make_item(13, 103).checkpoint
    assert result.complete
    assert result.pages_fetched == 1


async def test_no_new_items_keeps_checkpoint(feed, allocator):
    feed.publish(SOURCE, make_item(1), make_item(2))
    resolver = CatchUpResolver(feed, allocator)
    checkpoint = make_item(2).checkpoint

    result = await resolver.resolve(SOURCE, checkpoint)

    assert result.items == []
    assert result.new_checkpoint == checkpoint
    assert result.complete


async def test_first_poll_sets_checkpoint_without_backfill(feed, allocator):
    feed.page_size = 3
    feed.publish(SOURCE, *(make_item(n) for n in range(1, 10)))
    resolver = CatchUpResolver(feed, allocator)

    result = await resolver.resolve(SOURCE, None)

    assert result.items == []
    assert result.new_checkpoint == make_item(9).checkpoint
    assert feed.calls == [(SOURCE, None)]


async def test_first_poll_of_empty_feed_anchors_at_epoch(feed, allocator):
    resolver = CatchUpResolver(feed, allocator)

    result = await resolver.resolve(SOURCE, None)

    assert result.new_checkpoint == EMPTY_FEED_ANCHOR
    assert result.new_checkpoint.published_at == datetime(1970, 1, 1, tzinfo=timezone.utc)


async def test_first_upload_after_empty_feed_is_emitted_despite_old_publish_time(feed, allocator):
    resolver = CatchUpResolver(feed, allocator)
    anchor = (await resolver.resolve(SOURCE, None)).new_checkpoint
    # Publish times can trail the poll that saw the empty feed.
    feed.publish(SOURCE, make_item(1))

    result = await resolver.resolve(SOURCE, anchor)

    assert [item.item_id for item in result.items] == ["v1"]
    assert result.new_checkpoint == make_item(1).checkpoint


async def test_equal_timestamps_tie_break_on_item_id(feed, allocator):
    feed.publish(SOURCE, make_item(1, 50), make_item(3, 60), make_item(2, 60))
    resolver = CatchUpResolver(feed, allocator)

    result = await resolver.resolve(SOURCE, make_item(1, 50).checkpoint)

    assert [item.item_id for item in result.items] == ["v2", "v3"]


async def test_item_sharing_checkpoint_timestamp_with_higher_id_is_new(feed, allocator):
    feed.publish(SOURCE, make_item(4, 70), make_item(5, 70))
    resolver = CatchUpResolver(feed, allocator)

    result = await resolver.resolve(SOURCE, make_item(4, 70).checkpoint)

    assert [item.item_id for item in result.items] == ["v5"]


async def test_page_cap_stops_with_cursor_and_returns_items_to_buffer(feed, allocator):
    feed.page_size = 2
    feed.publish(SOURCE, *(make_item(n) for n in range(1, 12)))
    resolver = CatchUpResolver(feed, allocator, max_pages=2)

    result = await resolver.resolve(SOURCE, make_item(1).checkpoint)

    assert not result.complete
    assert result.new_checkpoint is None
    assert [item.item_id for item in result.items] == ["v8", "v9", "v10", "v11"]
    assert result.next_cursor == "4"
    assert result.pages_fetched == 2


async def test_resumed_walk_emits_buffer_once_checkpoint_is_reached(feed, allocator):
    feed.page_size = 2
    feed.publish(SOURCE, *(make_item(n) for n in range(1, 12)))
    resolver = CatchUpResolver(feed, allocator, max_pages=2)
    newest = [make_item(n) for n in range(8, 12)]

    # Offsets 4-7 hold v7..v4; v3 and v2 follow, then v1 at offset 10.
    middle = await resolver.resolve(SOURCE, make_item(1).checkpoint, cursor="4", buffered=newest)
    assert not middle.complete
    assert middle.next_cursor == "8"
    assert [item.item_id for item in middle.items] == ["v4", "v5", "v6", "v7"]

    final = await resolver.resolve(
        SOURCE, make_item(1).checkpoint, cursor="8", buffered=newest + middle.items
    )
    assert final.complete
    assert [item.item_id for item in final.items] == [f"v{n}" for n in range(2, 12)]
    assert final.new_checkpoint == make_item(11).checkpoint


async def test_buffered_items_at_or_before_checkpoint_are_dropped(feed, allocator):
    feed.publish(SOURCE, make_item(3), make_item(4))
    resolver = CatchUpResolver(feed, allocator)

    result = await resolver.resolve(
        SOURCE, make_item(3).checkpoint, buffered=[make_item(2), make_item(3), make_item(4)]
    )

    assert [item.item_id for item in result.items] == ["v4"]


async def test_feed_end_without_reaching_checkpoint_completes(feed, allocator):
    feed.publish(SOURCE, make_item(5), make_item(6))
    resolver = CatchUpResolver(feed, allocator)

    result = await resolver.resolve(SOURCE, make_item(1).checkpoint)

    assert [item.item_id for item in result.items] == ["v5", "v6"]


async def test_quota_denial_mid_walk_returns_unfetched_cursor(feed, clock):
    feed.page_size = 2
    feed.publish(SOURCE, *(make_item(n) for n in range(1, 10)))
    resolver = CatchUpResolver(feed, QuotaAllocator(2, clock=clock), max_pages=5)

    result = await resolver.resolve(SOURCE, make_item(1).checkpoint)

    assert result.quota_denied
    assert not result.complete
    assert [item.item_id for item in result.items] == ["v6", "v7", "v8", "v9"]
    assert result.next_cursor == "4"
    assert len(feed.calls) == 2


async def test_quota_denial_on_first_poll_fetches_nothing(feed, clock):
    allocator = QuotaAllocator(0, clock=clock)
    resolver = CatchUpResolver(feed, allocator)

    result = await resolver.resolve(SOURCE, None)

    assert result.quota_denied
    assert result.new_checkpoint is None
    assert feed.calls == []


async def test_transport_errors_propagate(feed, allocator):
    feed.fail_next = TransientError("boom")
    resolver = CatchUpResolver(feed, allocator)

    with pytest.raises(TransientError):
        await resolver.resolve(SOURCE, make_item(1).checkpoint)


def test_rejects_zero_page_budget(feed, allocator):
    with pytest.raises(ValueError):
        CatchUpResolver(feed, allocator, max_pages=0)


async def test_describe_charges_quota_per_batch(feed, clock):
    feed.extras_batch_size = 2
    feed.extras["v2"] = ItemExtras(item_id="v2", live_status=LIVE)
    allocator = QuotaAllocator(10, clock=clock)
    resolver = CatchUpResolver(feed, allocator)

    extras = await resolver.describe(SOURCE, [make_item(n) for n in (1, 2, 3)])

    assert feed.extras_calls == [["v1", "v2"], ["v3"]]
    assert allocator.snapshot().consumed == 2
    assert extras["v2"].live_status == LIVE
    assert set(extras) == {"v1", "v2", "v3"}


async def test_describe_denied_raises_before_lookup(feed, clock):
    resolver = CatchUpResolver(feed, QuotaAllocator(0, clock=clock))

    with pytest.raises(QuotaExhausted):
        await resolver.describe(SOURCE, [make_item(1)])
    assert feed.extras_calls == []


async def test_describe_leaves_missing_items_out(feed, allocator):
    feed.extras["v1"] = None
    resolver = CatchUpResolver(feed, allocator)

    extras = await resolver.describe(SOURCE, [make_item(1), make_item(2)])

    assert list(extras) == ["v2"]
