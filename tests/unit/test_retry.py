"""
Unit tests for the retry policy and retry decisions
"""

import pytest
from unittest.mock import AsyncMock
from datetime import date, datetime
from core.exceptions import (
    AuthError,
    BusUnavailableError,
    ConfigurationError,
    ErrorKind,
    MalformedResponseError,
    NotFoundError,
    RateLimitedError,
    TransientSourceError,
    UpsertError,
)
from ingestion.bus import INGEST_DEADLETTER_TOPIC, Delivery
from ingestion.retry import Disposition, RetryManager, RetryPolicy
from models.base import FetchStatus
from schemas.work_item import WorkItem


def make_manager(policy=None):
    return RetryManager(
        bus=AsyncMock(),
        watermark=AsyncMock(),
        policy=policy or RetryPolicy(max_retries=5, base_delay=30, max_delay=3600),
        clock=lambda: datetime(2024, 1, 15, 3, 0, 0)
    )


def make_work_item():
    return WorkItem(
        entity_id=7,
        source_id=1,
        profile_id=42,
        source_name="instagram",
        cycle_date=date(2024, 1, 15),
        scheduled_at=datetime(2024, 1, 15, 2, 0, 0)
    )


def make_delivery():
    return Delivery(
        delivery_id=9,
        message_id=3,
        topic="ingest-requests",
        consumer_group="structured-writer",
        payload=make_work_item().to_payload(),
        routing_key="instagram",
        delivery_count=1,
        published_at=datetime(2024, 1, 15, 2, 0, 0),
        lease_token="lease"
    )


class TestRetryPolicy:
    """Test backoff computation"""

    def test_backoff_doubles(self):
        policy = RetryPolicy(max_retries=5, base_delay=30, max_delay=3600)

        assert [policy.backoff_seconds(n) for n in range(5)] == [30, 60, 120, 240, 480]

    def test_backoff_capped(self):
        policy = RetryPolicy(max_retries=10, base_delay=30, max_delay=100)

        assert policy.backoff_seconds(2) == 100
        assert policy.backoff_seconds(8) == 100


class TestRetryDecision:
    """Test retry vs dead-letter decisions"""

    def test_transient_error_retried(self):
        manager = make_manager()

        decision = manager.decide(TransientSourceError("timeout"), retry_count=2)

        assert decision.disposition is Disposition.RETRY
        assert decision.retry_count == 3
        assert decision.delay_seconds == 120
        assert decision.error_kind is ErrorKind.TRANSIENT

    def test_sink_error_retried(self):
        decision = make_manager().decide(UpsertError("db busy"), retry_count=0)

        assert decision.disposition is Disposition.RETRY
        assert decision.error_kind is ErrorKind.SINK_WRITE

    @pytest.mark.parametrize("error, kind", [
        (AuthError("expired token"), ErrorKind.AUTH),
        (NotFoundError("gone"), ErrorKind.NOT_FOUND),
        (MalformedResponseError("schema drift"), ErrorKind.MALFORMED),
        (ConfigurationError("no adapter"), ErrorKind.CONFIGURATION),
    ])
    def test_non_retryable_goes_dead_immediately(self, error, kind):
        decision = make_manager().decide(error, retry_count=0)

        assert decision.disposition is Disposition.DEAD
        assert decision.retry_count == 0
        assert decision.error_kind is kind

    def test_exhausted_retries_go_dead(self):
        decision = make_manager().decide(TransientSourceError("timeout"), retry_count=5)

        assert decision.disposition is Disposition.DEAD
        assert decision.retry_count == 5

    def test_rate_limit_honours_retry_after(self):
        manager = make_manager()

        decision = manager.decide(RateLimitedError("429", retry_after=900), retry_count=0)

        assert decision.disposition is Disposition.RETRY
        assert decision.delay_seconds == 900
        assert decision.error_kind is ErrorKind.RATE_LIMITED

    def test_rate_limit_never_shorter_than_backoff(self):
        decision = make_manager().decide(RateLimitedError("429", retry_after=5), retry_count=3)

        assert decision.delay_seconds == 240

    def test_unknown_error_treated_as_transient(self):
        decision = make_manager().decide(ValueError("boom"), retry_count=1)

        assert decision.disposition is Disposition.RETRY
        assert decision.error_kind is ErrorKind.TRANSIENT


class TestHandleFailure:
    """Test the transitions performed for each decision"""

    @pytest.mark.asyncio
    async def test_retry_persists_count_and_releases_delivery(self):
        manager = make_manager()
        delivery = make_delivery()

        decision = await manager.handle_failure(
            make_work_item(), TransientSourceError("timeout"), 1, delivery
        )

        assert decision.retry_count == 2
        profile_id, cycle_date, retry_count, message = manager.watermark.record_retry.await_args.args
        assert (profile_id, cycle_date, retry_count) == (42, date(2024, 1, 15), 2)
        assert "timeout" in message
        manager.bus.nack.assert_awaited_once_with(delivery, 60)
        manager.bus.publish.assert_not_awaited()
        manager.bus.ack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dead_finalizes_and_publishes_dead_letter(self):
        manager = make_manager()
        delivery = make_delivery()
        error = AuthError("token expired", context={"source_name": "instagram"})

        decision = await manager.handle_failure(make_work_item(), error, 0, delivery)

        assert decision.disposition is Disposition.DEAD
        manager.watermark.finalize.assert_awaited_once()
        args = manager.watermark.finalize.await_args.args
        assert args[2] is FetchStatus.FAILED
        assert args[3] == 0

        topic, payload = manager.bus.publish.await_args.args
        assert topic == INGEST_DEADLETTER_TOPIC
        assert manager.bus.publish.await_args.kwargs["routing_key"] == "instagram"
        assert manager.bus.publish.await_args.kwargs["require_subscribers"] is True
        assert payload["error_kind"] == "auth"
        assert payload["error_type"] == "AuthError"
        assert payload["work_item"]["profile_id"] == 42
        assert payload["context"]["source_name"] == "instagram"

        manager.bus.ack.assert_awaited_once_with(delivery)
        manager.bus.nack.assert_not_awaited()


    @pytest.mark.asyncio
    async def test_unpublished_dead_letter_leaves_entry_pending(self):
        """The entry settles only after the dead letter is on the bus"""
        manager = make_manager()
        manager.bus.publish.side_effect = BusUnavailableError("no subscribers")
        delivery = make_delivery()

        with pytest.raises(BusUnavailableError):
            await manager.handle_failure(make_work_item(), AuthError("token expired"), 0, delivery)

        manager.watermark.finalize.assert_not_awaited()
        manager.bus.ack.assert_not_awaited()
