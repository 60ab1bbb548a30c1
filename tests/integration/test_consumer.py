"""
Integration tests for the ingestion consumer and retry / dead-letter flow

These run the real bus, watermark store, structured sink and archive on
SQLite with scripted source adapters.
"""

import asyncio
import pytest
from datetime import date, timedelta
from core.exceptions import AuthError, NotFoundError
from ingestion.bus import (
    INGEST_DEADLETTER_TOPIC,
    INGEST_REQUESTS_TOPIC,
    OPERATOR_TRIAGE_GROUP,
    STRUCTURED_WRITER_GROUP,
)
from ingestion.archive import archive_path
from ingestion.consumer import IngestionConsumer, ProcessingStatus
from ingestion.rate_limit import RateLimiterRegistry
from models.base import FetchStatus
from schemas.work_item import DeadLetterMessage, WorkItem
from tests.factories import CYCLE_TIME, raw_item, transient

CYCLE_DATE = date(2024, 1, 15)


def work_item_for(profile, source_name="instagram", scheduled_at=CYCLE_TIME):
    return WorkItem(
        entity_id=profile.entity_id,
        source_id=profile.source_id,
        profile_id=profile.id,
        source_name=source_name,
        cycle_date=scheduled_at.date(),
        scheduled_at=scheduled_at
    )


async def pull_one(bus, topic=INGEST_REQUESTS_TOPIC, group=STRUCTURED_WRITER_GROUP):
    deliveries = await bus.pull(topic, group)
    assert len(deliveries) == 1
    return deliveries[0]


class TestEndToEnd:
    """Scheduler -> bus -> consumer -> sinks"""

    @pytest.mark.asyncio
    async def test_successful_cycle(self, cycle_scheduler, consumer, bus, watermark,
                                    structured_sink, archive, adapters, make_profile):
        profile = await make_profile("instagram")
        adapters["instagram"].script([raw_item("p1", likes=10, comments=2)])

        await cycle_scheduler.run_cycle()
        outcome = await consumer.handle(await pull_one(bus))

        assert outcome.status is ProcessingStatus.SUCCESS
        assert outcome.items_written == 1

        record = await structured_sink.get_metadata(profile.id, "p1")
        assert record.like_count == 10
        assert record.comment_count == 2
        assert record.raw_path == f"rawdata/instagram/2024-01-15/{profile.entity_id}_p1.json"
        assert b'"like_count": 10' in await archive.get(record.raw_path)

        entry = await watermark.get_entry(profile.id, CYCLE_DATE)
        assert entry.status is FetchStatus.SUCCESS
        assert entry.items_written == 1
        assert (await watermark.get_profile(profile.id)).last_checked == CYCLE_TIME

        assert adapters["instagram"].calls == [{"handle": profile.handle, "since": CYCLE_TIME - timedelta(days=7)}]
        assert await bus.count_pending(INGEST_REQUESTS_TOPIC, STRUCTURED_WRITER_GROUP) == 0

    @pytest.mark.asyncio
    async def test_next_cycle_overwrites_counters(self, cycle_scheduler, consumer, bus, watermark,
                                                  structured_sink, adapters, make_profile, clock):
        """Re-ingesting a post updates it in place; no second row"""
        profile = await make_profile("instagram")
        adapters["instagram"].script([raw_item("p1", likes=10)])
        await cycle_scheduler.run_cycle()
        await consumer.handle(await pull_one(bus))

        clock.advance(days=1)
        adapters["instagram"].script([raw_item("p1", likes=25)])
        result = await cycle_scheduler.run_cycle()
        outcome = await consumer.handle(await pull_one(bus))

        assert result.items_enqueued == 1
        assert outcome.status is ProcessingStatus.SUCCESS
        assert (await structured_sink.get_metadata(profile.id, "p1")).like_count == 25
        assert await structured_sink.count_for_profile(profile.id) == 1
        assert (await watermark.get_profile(profile.id)).last_checked == CYCLE_TIME + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_redelivery_after_success_is_harmless(self, consumer, watermark, structured_sink,
                                                        adapters, make_profile):
        """At-least-once: a duplicate attempt rewrites the same record and leaves the log settled"""
        profile = await make_profile("instagram")
        item = work_item_for(profile)

        adapters["instagram"].script([raw_item("p1", likes=10)])
        await consumer.process(item)
        adapters["instagram"].script([raw_item("p1", likes=25)])
        outcome = await consumer.process(item)

        assert outcome.status is ProcessingStatus.SUCCESS
        assert (await structured_sink.get_metadata(profile.id, "p1")).like_count == 25
        assert await structured_sink.count_for_profile(profile.id) == 1
        entry = await watermark.get_entry(profile.id, CYCLE_DATE)
        assert entry.status is FetchStatus.SUCCESS
        assert entry.items_written == 1

    @pytest.mark.asyncio
    async def test_empty_fetch_is_success(self, consumer, watermark, adapters, make_profile):
        profile = await make_profile("facebook")
        adapters["facebook"].script([])

        outcome = await consumer.process(work_item_for(profile, "facebook"))

        assert outcome.status is ProcessingStatus.SUCCESS
        assert outcome.items_written == 0
        assert (await watermark.get_profile(profile.id)).last_checked == CYCLE_TIME


class TestPartialAndFailures:
    """Partial writes, retries and dead letters"""

    @pytest.mark.asyncio
    async def test_partial_write(self, consumer, watermark, structured_sink, adapters, make_profile):
        profile = await make_profile("instagram")
        adapters["instagram"].script([
            raw_item("p1", likes=1),
            raw_item("p2", likes=2),
            raw_item("p3", likes=-1),
        ])

        outcome = await consumer.process(work_item_for(profile))

        assert outcome.status is ProcessingStatus.PARTIAL
        assert outcome.items_fetched == 3
        assert outcome.items_written == 2
        assert await structured_sink.count_for_profile(profile.id) == 2

        entry = await watermark.get_entry(profile.id, CYCLE_DATE)
        assert entry.status is FetchStatus.PARTIAL
        assert entry.items_written == 2
        assert entry.message.startswith("2 of 3 items written")
        assert "MalformedResponseError" in entry.message
        assert (await watermark.get_profile(profile.id)).last_checked == CYCLE_TIME

    @pytest.mark.asyncio
    async def test_rejected_item_is_not_archived(self, consumer, archive, adapters, make_profile):
        profile = await make_profile("instagram")
        adapters["instagram"].script([raw_item("p1", likes=1), raw_item("p2", likes=-1)])

        await consumer.process(work_item_for(profile))

        kept = archive_path("instagram", CYCLE_DATE, profile.entity_id, "p1")
        rejected = archive_path("instagram", CYCLE_DATE, profile.entity_id, "p2")
        assert b'"like_count": 1' in await archive.get(kept)
        assert not (archive.root / rejected).exists()

    @pytest.mark.asyncio
    async def test_retries_exhausted_then_dead_letter(self, cycle_scheduler, consumer, bus, watermark,
                                                      adapters, make_profile, clock):
        profile = await make_profile("instagram")
        adapters["instagram"].script(transient())
        await cycle_scheduler.run_cycle()

        delays = []
        for attempt in range(5):
            outcome = await consumer.handle(await pull_one(bus))
            assert outcome.status is ProcessingStatus.RETRY_SCHEDULED
            assert outcome.retry_count == attempt + 1

            entry = await watermark.get_entry(profile.id, CYCLE_DATE)
            assert entry.status is FetchStatus.PENDING
            assert entry.retry_count == attempt + 1

            delays.append(outcome.delay_seconds)
            # Not visible before the backoff elapses
            clock.advance(seconds=outcome.delay_seconds - 1)
            assert await bus.pull(INGEST_REQUESTS_TOPIC, STRUCTURED_WRITER_GROUP) == []
            clock.advance(seconds=1)

        assert delays == [30, 60, 120, 240, 480]

        outcome = await consumer.handle(await pull_one(bus))

        assert outcome.status is ProcessingStatus.DEAD
        assert len(adapters["instagram"].calls) == 6

        entry = await watermark.get_entry(profile.id, CYCLE_DATE)
        assert entry.status is FetchStatus.FAILED
        assert entry.retry_count == 5
        assert "upstream timed out" in entry.message
        assert (await watermark.get_profile(profile.id)).last_checked is None

        assert await bus.count_pending(INGEST_REQUESTS_TOPIC, STRUCTURED_WRITER_GROUP) == 0
        dead = await bus.list_pending(INGEST_DEADLETTER_TOPIC, OPERATOR_TRIAGE_GROUP)
        assert len(dead) == 1
        letter = DeadLetterMessage.from_payload(dead[0].payload)
        assert letter.work_item.profile_id == profile.id
        assert letter.error_kind == "transient"
        assert letter.retry_count == 5
        assert dead[0].routing_key == "instagram"

    @pytest.mark.asyncio
    async def test_auth_error_dead_without_retry(self, cycle_scheduler, consumer, bus, watermark,
                                                 adapters, make_profile):
        profile = await make_profile("tiktok")
        adapters["tiktok"].script(AuthError("token expired", context={"source_name": "tiktok"}))
        await cycle_scheduler.run_cycle()

        outcome = await consumer.handle(await pull_one(bus))

        assert outcome.status is ProcessingStatus.DEAD
        assert outcome.retry_count == 0
        entry = await watermark.get_entry(profile.id, CYCLE_DATE)
        assert entry.status is FetchStatus.FAILED
        assert entry.retry_count == 0
        letter = DeadLetterMessage.from_payload(
            (await bus.list_pending(INGEST_DEADLETTER_TOPIC, OPERATOR_TRIAGE_GROUP))[0].payload
        )
        assert letter.error_kind == "auth"
        assert letter.context["source_name"] == "tiktok"

    @pytest.mark.asyncio
    async def test_retry_count_survives_consumer_restart(self, cycle_scheduler, consumer, bus, watermark,
                                                         structured_sink, archive, adapters, retry_manager,
                                                         make_profile, clock):
        """Retry state is read from the fetch log, not from the consumer"""
        profile = await make_profile("instagram")
        adapters["instagram"].script(transient(), transient(), [raw_item("p1")])
        await cycle_scheduler.run_cycle()

        await consumer.handle(await pull_one(bus))
        clock.advance(seconds=30)

        restarted = IngestionConsumer(
            bus=bus,
            watermark=watermark,
            structured_sink=structured_sink,
            archive=archive,
            adapters=adapters,
            rate_limiters=RateLimiterRegistry({}, default_rate=0),
            retry_manager=retry_manager,
            lookback=timedelta(days=7),
            clock=clock
        )
        second = await restarted.handle(await pull_one(bus))
        clock.advance(seconds=60)
        third = await restarted.handle(await pull_one(bus))

        assert second.retry_count == 2
        assert third.status is ProcessingStatus.SUCCESS
        entry = await watermark.get_entry(profile.id, CYCLE_DATE)
        assert entry.status is FetchStatus.SUCCESS
        assert entry.retry_count == 2

    @pytest.mark.asyncio
    async def test_fetch_timeout_is_retryable(self, consumer, watermark, adapters, make_profile):
        profile = await make_profile("instagram")

        async def hang(handle, since=None):
            await asyncio.sleep(5)

        adapters["instagram"].fetch = hang
        consumer.fetch_timeout = 0.01

        outcome = await consumer.process(work_item_for(profile))

        assert outcome.status is ProcessingStatus.RETRY_SCHEDULED
        entry = await watermark.get_entry(profile.id, CYCLE_DATE)
        assert entry.retry_count == 1
        assert "exceeded" in entry.message


class TestSkipsAndGuards:
    """Work items that cannot be processed normally"""

    @pytest.mark.asyncio
    async def test_missing_adapter_is_dead(self, consumer, bus, watermark, adapters, make_profile):
        profile = await make_profile("tiktok")
        del adapters["tiktok"]

        outcome = await consumer.process(work_item_for(profile, "tiktok"))

        assert outcome.status is ProcessingStatus.DEAD
        letter = DeadLetterMessage.from_payload(
            (await bus.list_pending(INGEST_DEADLETTER_TOPIC, OPERATOR_TRIAGE_GROUP))[0].payload
        )
        assert letter.error_kind == "configuration"

    @pytest.mark.asyncio
    async def test_inactive_profile_discarded(self, consumer, watermark, adapters, make_profile):
        profile = await make_profile("instagram", is_active=False)

        outcome = await consumer.process(work_item_for(profile))

        assert outcome.status is ProcessingStatus.SKIPPED
        assert adapters["instagram"].calls == []
        entry = await watermark.get_entry(profile.id, CYCLE_DATE)
        assert entry.status is FetchStatus.FAILED
        assert "inactive" in entry.message

    @pytest.mark.asyncio
    async def test_invalid_payload_dropped(self, consumer, bus):
        await bus.publish(INGEST_REQUESTS_TOPIC, {"profile_id": "not-a-work-item"}, routing_key="instagram")

        outcome = await consumer.handle(await pull_one(bus))

        assert outcome.status is ProcessingStatus.SKIPPED
        assert await bus.count_pending(INGEST_REQUESTS_TOPIC, STRUCTURED_WRITER_GROUP) == 0

    @pytest.mark.asyncio
    async def test_last_checked_never_moves_backward(self, consumer, watermark, adapters, make_profile):
        profile = await make_profile("instagram", last_checked=CYCLE_TIME)
        adapters["instagram"].script([raw_item("p1")])

        stale = work_item_for(profile, scheduled_at=CYCLE_TIME - timedelta(days=2))
        outcome = await consumer.process(stale)

        assert outcome.status is ProcessingStatus.SUCCESS
        assert (await watermark.get_profile(profile.id)).last_checked == CYCLE_TIME


class TestReplay:
    """Operator replay of dead letters"""

    @pytest.mark.asyncio
    async def test_replay_after_fix(self, cycle_scheduler, consumer, bus, watermark, structured_sink,
                                    retry_manager, adapters, make_profile):
        profile = await make_profile("facebook")
        adapters["facebook"].script(NotFoundError("page renamed"))
        await cycle_scheduler.run_cycle()
        await consumer.handle(await pull_one(bus))

        dead = (await bus.list_pending(INGEST_DEADLETTER_TOPIC, OPERATOR_TRIAGE_GROUP))[0]
        adapters["facebook"].script([raw_item("f1", likes=4)])

        message_id = await retry_manager.replay_dead_letter(dead.delivery_id)

        assert message_id is not None
        assert await bus.count_pending(INGEST_DEADLETTER_TOPIC, OPERATOR_TRIAGE_GROUP) == 0

        delivery = await pull_one(bus)
        assert delivery.message_id == message_id
        assert WorkItem.from_payload(delivery.payload).replay is True

        outcome = await consumer.handle(delivery)

        assert outcome.status is ProcessingStatus.SUCCESS
        assert (await structured_sink.get_metadata(profile.id, "f1")).like_count == 4
        assert (await watermark.get_profile(profile.id)).last_checked == CYCLE_TIME
        # The day's audit entry keeps the original failure
        assert (await watermark.get_entry(profile.id, CYCLE_DATE)).status is FetchStatus.FAILED

    @pytest.mark.asyncio
    async def test_replay_unknown_delivery(self, retry_manager):
        assert await retry_manager.replay_dead_letter(999) is None

    @pytest.mark.asyncio
    async def test_replay_rejects_work_queue_delivery(self, retry_manager, bus):
        await bus.publish(INGEST_REQUESTS_TOPIC, {"profile_id": 1})
        delivery = (await bus.list_pending(INGEST_REQUESTS_TOPIC, STRUCTURED_WRITER_GROUP))[0]

        assert await retry_manager.replay_dead_letter(delivery.delivery_id) is None
