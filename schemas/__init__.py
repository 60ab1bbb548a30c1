"""
Pydantic schemas for data validation and serialization.

Schemas:
    work_item: Bus payloads (WorkItem, DeadLetterMessage)
    normalized: Adapter output (RawItem) and validated records (MetadataRecordCreate)
    api: API endpoint response models

Usage:
    from schemas.work_item import WorkItem
    from schemas.normalized import RawItem, MetadataRecordCreate

Example:
    item = WorkItem(
        entity_id=1,
        source_id=1,
        profile_id=7,
        source_name="instagram",
        cycle_date=date(2024, 1, 15),
        scheduled_at=datetime(2024, 1, 15, 2, 0)
    )
    assert WorkItem.from_payload(item.to_payload()) == item
"""

__all__ = [
    "WorkItem",
    "DeadLetterMessage",
    "RawItem",
    "MetadataRecordCreate",
    "HealthCheckResponse",
    "FetchLogResponse",
    "DeadLetterListResponse",
    "StatsResponse",
]
