"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class, shared column types and enums
        (AuthType, FetchStatus, CycleStatus)
    entity: Tracked restaurants (managed externally, read-only for ingestion)
    source: External data providers (static reference data)
    profile: Entity-to-source bindings carrying the last_checked watermark
    metadata_record: Normalized posts keyed by (profile, post_id)
    fetch_log: One fetch attempt record per (profile, cycle date)
    ingestion_cycle: Audit row per scheduling pass
    bus: Durable work queue (subscriptions, messages, deliveries)

Importing this package registers every table on Base.metadata.

Relationships:
    - Entity → Profile (one-to-many)
    - Source → Profile (one-to-many)
    - Profile → MetadataRecord, FetchLogEntry (one-to-many)
    - BusMessage → BusDelivery (one per consumer group)
"""

from models.base import Base, AuthType, FetchStatus, CycleStatus
from models.entity import Entity
from models.source import Source
from models.profile import Profile
from models.metadata_record import MetadataRecord
from models.fetch_log import FetchLogEntry
from models.ingestion_cycle import IngestionCycle
from models.bus import BusSubscription, BusMessage, BusDelivery

__all__ = [
    "Base",
    "AuthType",
    "FetchStatus",
    "CycleStatus",
    "Entity",
    "Source",
    "Profile",
    "MetadataRecord",
    "FetchLogEntry",
    "IngestionCycle",
    "BusSubscription",
    "BusMessage",
    "BusDelivery",
]
