"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import date, datetime
from models.base import CycleStatus, FetchStatus, utcnow
from schemas.work_item import WorkItem


class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    total_items: int
    total_pages: int
    current_page: int
    page_size: int
    has_next: bool
    has_previous: bool


# ============================================================================
# Cycle Schemas
# ============================================================================

class CycleSummary(BaseModel):
    run_id: str
    cycle_date: date
    status: CycleStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    profiles_scanned: int = 0
    items_enqueued: int = 0
    items_skipped: int = 0
    error_message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    pending_work_items: int = 0
    pending_dead_letters: int = 0
    last_cycle: Optional[CycleSummary] = None

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.last_cycle is not None and self.last_cycle.status in (
            CycleStatus.FAILED.value, CycleStatus.ABANDONED.value
        ):
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "pending_work_items": 120,
                "pending_dead_letters": 3,
                "last_cycle": {
                    "run_id": "0b7e7a4e-3f1e-4a53-9b52-1d2f0c1e9a10",
                    "cycle_date": "2024-01-15",
                    "status": "completed",
                    "started_at": "2024-01-15T02:00:00Z",
                    "profiles_scanned": 90000,
                    "items_enqueued": 89650,
                    "items_skipped": 350
                }
            }
        }
    )


# ============================================================================
# Fetch Log Schemas
# ============================================================================

class FetchLogEntryResponse(BaseModel):
    id: int
    profile_id: int
    cycle_date: date
    status: FetchStatus
    retry_count: int
    message: Optional[str] = None
    items_written: int = 0
    published_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class FetchLogResponse(BaseModel):
    """Paginated fetch log response"""
    items: List[FetchLogEntryResponse]
    pagination: PaginationMetadata
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Dead Letter Schemas
# ============================================================================

class DeadLetterResponse(BaseModel):
    delivery_id: int
    message_id: int
    published_at: datetime
    delivery_count: int
    work_item: WorkItem
    error_kind: str
    error_type: str
    message: str
    retry_count: int
    context: Dict[str, Any] = Field(default_factory=dict)
    failed_at: datetime


class DeadLetterListResponse(BaseModel):
    items: List[DeadLetterResponse]
    total: int
    limit: int
    offset: int


class ReplayResponse(BaseModel):
    delivery_id: int
    message_id: int
    profile_id: int
    source_name: str


# ============================================================================
# Statistics Schemas
# ============================================================================

class SourceStatistics(BaseModel):
    """Statistics for a single source"""
    source_name: str
    total_profiles: int
    active_profiles: int
    total_records: int
    pending_work_items: int
    last_checked: Optional[datetime] = None


class StatsResponse(BaseModel):
    """Statistics response model"""
    timestamp: datetime = Field(default_factory=utcnow)

    total_entities: int
    total_profiles: int
    active_profiles: int
    total_records: int

    # Fetch log status counts for cycle_date
    cycle_date: Optional[date] = None
    fetch_status_counts: Dict[str, int] = Field(default_factory=dict)

    source_statistics: List[SourceStatistics] = Field(default_factory=list)
    recent_cycles: List[CycleSummary] = Field(default_factory=list)
    pending_dead_letters: int = 0


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Resource not found",
                "detail": "The requested dead letter does not exist",
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
    )
