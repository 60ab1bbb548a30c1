"""
Pydantic schemas for messages carried on the bus
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any
from datetime import date, datetime


class WorkItem(BaseModel):
    """
    "Fetch this profile now", one per due profile per cycle date.

    cycle_date keys the fetch log entry; scheduled_at is the cycle time the
    profile's last_checked advances to on success.
    """
    entity_id: int
    source_id: int
    profile_id: int
    source_name: str = Field(..., min_length=1, max_length=50)
    cycle_date: date
    scheduled_at: datetime
    cycle_run_id: Optional[str] = None
    replay: bool = False

    model_config = ConfigDict(frozen=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "WorkItem":
        return cls.model_validate(payload)


class DeadLetterMessage(BaseModel):
    """Failed work item plus full error context for operator triage"""
    work_item: WorkItem
    error_kind: str
    error_type: str
    message: str
    retry_count: int = 0
    context: Dict[str, Any] = Field(default_factory=dict)
    failed_at: datetime

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "DeadLetterMessage":
        return cls.model_validate(payload)
