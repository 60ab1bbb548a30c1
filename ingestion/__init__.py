"""
Ingestion pipeline components.

Modules:
    watermark: Per-profile last_checked and the fetch log (ground truth for "due")
    bus: Durable publish/subscribe work queue with visibility timeouts
    scheduler: Cycle enumeration and the APScheduler daily trigger
    consumer: Fetch, archive, upsert and settle one work item
    retry: Retry / dead-letter state machine
    rate_limit: Per-source token buckets
    workers: Per-source worker pools draining the bus
    archive: Raw payload sink
    structured_sink: Idempotent metadata record upserts
    normalizer: Raw item to validated record
    runtime: Component wiring from settings

Subpackages:
    sources: Source adapters (Instagram, Facebook, TikTok)

Architecture:
    Scheduler -> Bus -> Ingestion Consumer -> {Structured Sink, Raw Archive, Watermark Store}

    Failed attempts go through the retry manager; exhausted or
    non-retryable ones end as a FAILED fetch log entry plus a message on
    the dead-letter topic.

Usage:
    from ingestion.runtime import build_pipeline, build_worker_pool

    pipeline = build_pipeline(session_factory)
    result = await pipeline.scheduler.run_cycle()

    pool = await build_worker_pool(session_factory, client)
    await pool.drain()

Error Handling:
    Per-item errors are contained in the consumer and recorded in the
    fetch log. InfrastructureError (bus or watermark store unavailable)
    propagates and halts the process.
"""

__all__ = [
    "MessageBus",
    "WatermarkStore",
    "CycleScheduler",
    "IngestionScheduler",
    "IngestionConsumer",
    "RetryManager",
    "RetryPolicy",
    "WorkerPool",
]
