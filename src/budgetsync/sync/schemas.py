"""Request and result shapes for the sync engine.

Input models accept both snake_case and the camelCase keys offline clients
send (``entityType``, ``mergedData``, ...). Results are plain snake_case.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from budgetsync.db.repository import normalize_timestamp
from budgetsync.models.sync import EntityType, SyncOperation

UPDATED_AT_KEYS = ("updatedAt", "updated_at")


class _ClientModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncItemIn(_ClientModel):
    """One mutation as submitted by a client."""

    operation: SyncOperation
    entity_type: EntityType
    entity_id: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(validation_alias=AliasChoices("payload", "data"))

    @model_validator(mode="after")
    def _check_payload(self) -> "SyncItemIn":
        payload_id = self.payload.get("id")
        if payload_id is not None and str(payload_id) != self.entity_id:
            raise ValueError(
                f"payload id {payload_id!r} does not match entityId {self.entity_id!r}"
            )
        if self.operation == SyncOperation.UPDATE:
            updated_at = next(
                (self.payload[k] for k in UPDATED_AT_KEYS if self.payload.get(k)), None
            )
            if updated_at is None:
                raise ValueError("UPDATE payload must carry updatedAt")
            try:
                normalize_timestamp(updated_at)
            except (ValueError, TypeError):
                raise ValueError(f"updatedAt is not a valid timestamp: {updated_at!r}") from None
        if self.operation != SyncOperation.DELETE and payload_id is None:
            self.payload["id"] = self.entity_id
        return self


class ResolutionRequest(_ClientModel):
    conflict_id: Optional[str] = None
    # Left as a string so unsupported strategies reach the resolver and are
    # reported as InvalidResolutionError rather than a schema failure.
    resolution: str
    merged_data: Optional[Dict[str, Any]] = None


class BatchResolutionRequest(_ClientModel):
    resolutions: List[ResolutionRequest]


class SyncResult(BaseModel):
    processed: int = 0
    successful: int = 0
    failed: int = 0
    conflicts: int = 0
    errors: List[str] = Field(default_factory=list)


class SyncStatus(BaseModel):
    user_id: str
    pending_items: int
    processing_items: int
    failed_items: int
    last_sync_at: Optional[datetime] = None


class ConflictRecord(BaseModel):
    """A conflicted queue item paired with the current authoritative entity."""

    id: str
    entity_type: EntityType
    entity_id: str
    operation: SyncOperation
    local_data: Dict[str, Any]
    remote_data: Optional[Dict[str, Any]] = None  # None: remote since deleted
    conflict_reason: str
    detected_at: datetime


class ResolvedItem(BaseModel):
    conflict_id: str
    resolved: bool


class ResolutionFailure(BaseModel):
    conflict_id: Optional[str]
    error: str


class BatchResolutionResult(BaseModel):
    resolved: List[ResolvedItem] = Field(default_factory=list)
    errors: List[ResolutionFailure] = Field(default_factory=list)
    total_processed: int = 0
    success_count: int = 0
    error_count: int = 0
