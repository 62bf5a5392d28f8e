"""Persistent store: subscriptions, atomic checkpoint advance, ledger."""

import pytest
from sqlalchemy.exc import OperationalError

from uploadwatch.common.errors import CheckpointRegression, StorageUnavailable
from uploadwatch.common.schemas import LedgerKey
from uploadwatch.services.store.repository import SubscriptionStore

from conftest import make_item

SOURCE = "UUchannel"
URL = "https://www.youtube.com/@channel"


def test_upsert_creates_source_with_null_checkpoint(store):
    subscription, created = store.upsert_subscription("chan-1", SOURCE, URL)

    assert created
    assert subscription.active
    assert store.get_checkpoint(SOURCE) is None
    assert [s.source_id for s in store.list_active_sources()] == [SOURCE]


def test_repeated_subscribe_is_a_noop(store):
    first, _ = store.upsert_subscription("chan-1", SOURCE, URL)
    again, created = store.upsert_subscription("chan-1", SOURCE, URL)

    assert not created
    assert again.subscription_id == first.subscription_id


def test_deactivate_is_idempotent_and_reactivation_keeps_identity(store):
    first, _ = store.upsert_subscription("chan-1", SOURCE, URL)

    assert store.deactivate_subscription("chan-1", SOURCE) is True
    assert store.deactivate_subscription("chan-1", SOURCE) is False
    assert store.list_active_sources() == []

    again, created = store.upsert_subscription("chan-1", SOURCE, URL)
    assert created
    assert again.subscription_id == first.subscription_id


def test_deactivate_unknown_subscription_returns_false(store):
    assert store.deactivate_subscription("chan-1", SOURCE) is False


def test_advance_checkpoint_writes_ledger_and_clears_cursor(store):
    subscription, _ = store.upsert_subscription("chan-1", SOURCE, URL)
    store.save_cursor(SOURCE, "page-3")
    item = make_item(5)

    store.advance_checkpoint(
        SOURCE, item.checkpoint, [LedgerKey(item_id=item.item_id, subscription_id=subscription.subscription_id)]
    )

    source = store.get_source(SOURCE)
    assert source.checkpoint == item.checkpoint
    assert source.pending_cursor is None
    assert source.last_polled_at is not None
    assert store.has_ledger_entry("v5", subscription.subscription_id)


def test_catchup_progress_buffers_items_until_checkpoint_covers_them(store):
    store.upsert_subscription("chan-1", SOURCE, URL)
    store.advance_checkpoint(SOURCE, make_item(1).checkpoint)

    store.save_catchup_progress(SOURCE, "4", [make_item(7), make_item(6)])
    store.save_catchup_progress(SOURCE, "6", [make_item(5), make_item(6)])

    assert store.get_source(SOURCE).pending_cursor == "6"
    assert [item.item_id for item in store.list_pending_items(SOURCE)] == ["v5", "v6", "v7"]

    store.advance_checkpoint(SOURCE, make_item(6).checkpoint)

    assert store.list_pending_items(SOURCE) == [make_item(7)]
    assert store.get_source(SOURCE).pending_cursor is None


def test_duplicate_ledger_keys_are_written_once(store):
    subscription, _ = store.upsert_subscription("chan-1", SOURCE, URL)
    key = LedgerKey(item_id="v5", subscription_id=subscription.subscription_id)

    store.advance_checkpoint(SOURCE, make_item(5).checkpoint, [key])
    store.advance_checkpoint(SOURCE, make_item(5).checkpoint, [key, key])

    assert store.count_ledger_entries("v5") == 1


def test_checkpoint_regression_is_rejected_without_writes(store):
    subscription, _ = store.upsert_subscription("chan-1", SOURCE, URL)
    store.advance_checkpoint(SOURCE, make_item(9).checkpoint)

    with pytest.raises(CheckpointRegression):
        store.advance_checkpoint(
            SOURCE,
            make_item(3).checkpoint,
            [LedgerKey(item_id="v3", subscription_id=subscription.subscription_id)],
        )

    assert store.get_checkpoint(SOURCE) == make_item(9).checkpoint
    assert not store.has_ledger_entry("v3", subscription.subscription_id)


def test_inactive_subscriptions_are_not_listed(store):
    store.upsert_subscription("chan-1", SOURCE, URL)
    store.upsert_subscription("chan-2", SOURCE, URL)
    store.deactivate_subscription("chan-1", SOURCE)

    assert [s.destination for s in store.list_active_subscriptions(SOURCE)] == ["chan-2"]
    assert store.count_sources() == 1


def test_dispatch_failure_round_trip(store):
    subscription, _ = store.upsert_subscription("chan-1", SOURCE, URL)
    key = LedgerKey(item_id="v5", subscription_id=subscription.subscription_id)

    store.record_dispatch_failure(SOURCE, key, "chan-1", "hello", "PERMANENT: gone", 1)
    [failure] = store.list_dispatch_failures()
    assert failure.error == "PERMANENT: gone"

    store.write_ledger_entry(SOURCE, key)
    assert store.list_dispatch_failures() == []
    assert store.has_ledger_entry("v5", subscription.subscription_id)


def test_database_errors_surface_as_storage_unavailable():
    def broken_session():
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    with pytest.raises(StorageUnavailable):
        SubscriptionStore(broken_session).list_active_sources()


def test_filters_change_only_the_named_flags(store):
    store.upsert_subscription("chan-a", SOURCE, URL)

    updated = store.set_filters("chan-a", SOURCE, shorts=False)
    again = store.set_filters("chan-a", SOURCE, vod=False)

    assert (updated.shorts_allowed, updated.live_allowed, updated.vod_allowed) == (False, True, True)
    assert (again.shorts_allowed, again.live_allowed, again.vod_allowed) == (False, True, False)
    [listed] = store.list_active_subscriptions(SOURCE)
    assert listed == again


def test_filters_need_an_active_subscription(store):
    store.upsert_subscription("chan-a", SOURCE, URL)
    store.deactivate_subscription("chan-a", SOURCE)

    assert store.set_filters("chan-a", SOURCE, live=False) is None
    assert store.set_filters("chan-b", SOURCE, live=False) is None


def test_ledger_subscriptions_reads_all_pairs_for_an_item(store):
    sub_a, _ = store.upsert_subscription("chan-a", SOURCE, URL)
    sub_b, _ = store.upsert_subscription("chan-b", SOURCE, URL)
    store.advance_checkpoint(
        SOURCE, make_item(1).checkpoint, [LedgerKey(item_id="v1", subscription_id=sub_a.subscription_id)]
    )

    assert store.ledger_subscriptions("v1", [sub_a.subscription_id, sub_b.subscription_id]) == {sub_a.subscription_id}
    assert store.ledger_subscriptions("v2", [sub_a.subscription_id]) == set()
    assert store.ledger_subscriptions("v1", []) == set()
