from datetime import datetime, timezone
from sqlalchemy import JSON, BigInteger, Integer
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite for local runs and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
IdType = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store UTC without tzinfo"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# ENUMS
# ============================================================================

class AuthType(str, enum.Enum):
    """How a source authenticates requests"""
    OAUTH2 = "oauth2"
    API_KEY = "api_key"
    NONE = "none"


class FetchStatus(str, enum.Enum):
    """Fetch log entry status"""
    PENDING = "pending"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not FetchStatus.PENDING


class CycleStatus(str, enum.Enum):
    """Scheduling cycle status"""
    RUNNING = "running"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    FAILED = "failed"
