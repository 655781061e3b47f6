"""
Unit tests for the queue store.

Tests cover:
1. insert / get_item / update_item
2. select_due eligibility and ordering, claim_item
3. count_by_status and requeue_stale
4. Rate-limit windows, platform connections and breaker state rows
"""

from datetime import datetime, timedelta, timezone

from publisher.models.platform_connection import ConnectionStatus
from publisher.models.publishing_queue import PublishingQueueItem, PublishingStatus
from publisher.services.queue_store import MAX_ERROR_LENGTH, QueueStore, truncate_error

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _item(store: QueueStore, offset_seconds: int = 0, **fields) -> PublishingQueueItem:
    created = NOW + timedelta(seconds=offset_seconds)
    defaults = dict(product_id="prod_1", platform="etsy", created_at=created, updated_at=created)
    defaults.update(fields)
    [item] = store.insert([PublishingQueueItem(**defaults)])
    return item


class TestInsertAndGet:
    def test_insert_assigns_id_and_defaults(self, store):
        item = _item(store)

        assert item.id
        assert item.status == PublishingStatus.PENDING
        assert item.priority == 5
        assert item.retry_count == 0
        assert item.max_retries == 5

    def test_get_item_returns_aware_datetimes(self, store):
        item = _item(store, scheduled_for=NOW + timedelta(minutes=5))

        loaded = store.get_item(item.id)

        assert loaded.created_at == NOW
        assert loaded.scheduled_for == NOW + timedelta(minutes=5)
        assert loaded.scheduled_for.tzinfo is not None

    def test_get_missing_item(self, store):
        assert store.get_item("does-not-exist") is None


class TestUpdateItem:
    def test_updates_fields(self, store):
        item = _item(store)

        updated = store.update_item(item.id, status=PublishingStatus.PROCESSING, started_at=NOW)

        assert updated.status == PublishingStatus.PROCESSING
        assert updated.started_at == NOW
        assert store.get_item(item.id).status == PublishingStatus.PROCESSING

    def test_truncates_error_message(self, store):
        item = _item(store)

        updated = store.update_item(item.id, error_message="x" * (MAX_ERROR_LENGTH + 500))

        assert len(updated.error_message) == MAX_ERROR_LENGTH

    def test_missing_item_returns_none(self, store):
        assert store.update_item("missing", status=PublishingStatus.FAILED) is None

    def test_truncate_error_helper(self):
        assert truncate_error(None) is None
        assert truncate_error("short") == "short"
        assert len(truncate_error("y" * 5000)) == MAX_ERROR_LENGTH


class TestSelectDue:
    def test_orders_by_priority_then_age(self, store):
        low_old = _item(store, 0, priority=3)
        high = _item(store, 1, priority=9)
        low_new = _item(store, 2, priority=3)
        mid = _item(store, 3, priority=5)

        due = store.select_due(NOW + timedelta(minutes=1), limit=10)

        assert [i.id for i in due] == [high.id, mid.id, low_old.id, low_new.id]

    def test_respects_limit(self, store):
        for n in range(5):
            _item(store, n)

        assert len(store.select_due(NOW + timedelta(minutes=1), limit=3)) == 3

    def test_skips_future_scheduled(self, store):
        later = _item(store, scheduled_for=NOW + timedelta(minutes=10))
        now_due = _item(store, 1, scheduled_for=NOW)

        due_ids = [i.id for i in store.select_due(NOW, limit=10)]

        assert now_due.id in due_ids
        assert later.id not in due_ids
        assert later.id in [i.id for i in store.select_due(NOW + timedelta(minutes=10), limit=10)]

    def test_failed_with_budget_is_eligible(self, store):
        retryable = _item(store, status=PublishingStatus.FAILED, retry_count=2, max_retries=5)
        exhausted = _item(store, 1, status=PublishingStatus.FAILED, retry_count=5, max_retries=5)

        due_ids = [i.id for i in store.select_due(NOW, limit=10)]

        assert retryable.id in due_ids
        assert exhausted.id not in due_ids

    def test_skips_other_statuses(self, store):
        for n, status in enumerate(
            [PublishingStatus.PROCESSING, PublishingStatus.PUBLISHED, PublishingStatus.REJECTED]
        ):
            _item(store, n, status=status)

        assert store.select_due(NOW, limit=10) == []


class TestClaimItem:
    def test_claims_due_item(self, store):
        item = _item(store)

        claimed = store.claim_item(item.id, NOW)

        assert claimed.status == PublishingStatus.PROCESSING
        assert claimed.started_at == NOW
        assert store.get_item(item.id).status == PublishingStatus.PROCESSING

    def test_second_claim_loses(self, store):
        item = _item(store)

        assert store.claim_item(item.id, NOW) is not None
        assert store.claim_item(item.id, NOW) is None

    def test_rejected_item_not_claimed(self, store):
        item = _item(store)
        store.update_item(item.id, status=PublishingStatus.REJECTED)

        assert store.claim_item(item.id, NOW) is None
        assert store.get_item(item.id).status == PublishingStatus.REJECTED

    def test_rescheduled_item_not_claimed(self, store):
        item = _item(store)
        store.update_item(item.id, scheduled_for=NOW + timedelta(minutes=5))

        assert store.claim_item(item.id, NOW) is None
        assert store.get_item(item.id).status == PublishingStatus.PENDING

    def test_exhausted_failed_item_not_claimed(self, store):
        item = _item(store, status=PublishingStatus.FAILED, retry_count=5, max_retries=5)

        assert store.claim_item(item.id, NOW) is None

    def test_missing_item(self, store):
        assert store.claim_item("missing", NOW) is None


class TestListing:
    def test_list_by_status(self, store):
        _item(store, 0)
        failed = _item(store, 1, status=PublishingStatus.FAILED)

        assert [i.id for i in store.list_by_status(PublishingStatus.FAILED)] == [failed.id]

    def test_list_for_product_newest_first(self, store):
        first = _item(store, 0, product_id="prod_9")
        second = _item(store, 5, product_id="prod_9", platform="printify")
        _item(store, 2, product_id="other")

        assert [i.id for i in store.list_for_product("prod_9")] == [second.id, first.id]

    def test_count_by_status_includes_zeroes(self, store):
        _item(store, 0)
        _item(store, 1)
        _item(store, 2, status=PublishingStatus.PUBLISHED)

        counts = store.count_by_status()

        assert counts == {
            "pending": 2,
            "processing": 0,
            "published": 1,
            "failed": 0,
            "rejected": 0,
        }


class TestRequeueStale:
    def test_requeues_only_old_processing_rows(self, store):
        stale = _item(store, 0, status=PublishingStatus.PROCESSING, started_at=NOW - timedelta(hours=1))
        fresh = _item(store, 1, status=PublishingStatus.PROCESSING, started_at=NOW - timedelta(minutes=5))
        unstamped = _item(store, 2, status=PublishingStatus.PROCESSING)

        count = store.requeue_stale(NOW - timedelta(minutes=30), "requeued")

        assert count == 2
        assert store.get_item(stale.id).status == PublishingStatus.PENDING
        assert store.get_item(stale.id).error_message == "requeued"
        assert store.get_item(stale.id).started_at is None
        assert store.get_item(unstamped.id).status == PublishingStatus.PENDING
        assert store.get_item(fresh.id).status == PublishingStatus.PROCESSING

    def test_nothing_to_requeue(self, store):
        _item(store)
        assert store.requeue_stale(NOW, "requeued") == 0


class TestRateLimitWindows:
    def test_upsert_and_get(self, store):
        store.upsert_window("etsy", "default", request_count=3, limit_per_minute=10, window_start=NOW)
        store.upsert_window("etsy", "default", request_count=4, limit_per_minute=10, window_start=NOW, last_request_at=NOW)

        window = store.get_window("etsy", "default")

        assert window.request_count == 4
        assert window.window_start == NOW
        assert window.last_request_at == NOW

    def test_missing_window(self, store):
        assert store.get_window("etsy", "listings") is None


class TestPlatformConnections:
    def test_upsert_connection(self, store):
        store.upsert_connection("etsy", ConnectionStatus.CONNECTED)
        store.upsert_connection("etsy", ConnectionStatus.ERROR, error_message="token expired")

        connection = store.get_connection("etsy")

        assert connection.status == ConnectionStatus.ERROR
        assert connection.error_message == "token expired"
        assert store.get_connection("amazon") is None


class TestBreakerState:
    def test_save_and_load(self, store):
        store.save_breaker_state("etsy", "open", 5, NOW)

        saved = store.load_breaker_state("etsy")

        assert saved == {"state": "open", "failure_count": 5, "last_failure_at": NOW}
        assert store.load_breaker_state("printify") is None
