"""Sync queue model: one row per pending offline mutation."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class SyncOperation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class EntityType(str, Enum):
    BUDGET = "BUDGET"
    EXPENSE = "EXPENSE"
    CREDIT_CARD = "CREDIT_CARD"
    CATEGORY = "CATEGORY"
    BUDGET_PERIOD = "BUDGET_PERIOD"


class SyncQueueStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ConflictResolution(str, Enum):
    LOCAL = "LOCAL"
    REMOTE = "REMOTE"
    MERGE = "MERGE"


class SyncQueueItem(SQLModel, table=True):
    """
    A durable record of one mutation a client made while offline.

    Status lifecycle:
        PENDING → PROCESSING → COMPLETED
                             → PENDING (transient error, retries left)
                             → FAILED  (conflict, or retries exhausted)
        FAILED → COMPLETED (manual conflict resolution)

    COMPLETED rows are never picked up again and are only removed by
    retention cleanup.
    """

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    operation: SyncOperation
    entity_type: EntityType = Field(index=True)
    entity_id: str = Field(index=True)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    status: SyncQueueStatus = Field(default=SyncQueueStatus.PENDING, index=True)
    retry_count: int = 0
    max_retries: int = 3
    error_message: Optional[str] = None
    # Structured conflict flag; error_message is for humans only
    is_conflict: bool = False

    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
