"""
SyncService: the caller-facing surface of the offline sync engine.

Wires the queue store, processor and conflict resolver together and adds
request validation. Validation failures raise ValidationError synchronously;
nothing malformed is ever queued.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

import pydantic

from budgetsync.config import get_settings
from budgetsync.models.sync import ConflictResolution, SyncQueueItem, utcnow
from budgetsync.sync.appliers import default_appliers
from budgetsync.sync.conflicts import ConflictResolver
from budgetsync.sync.errors import ValidationError
from budgetsync.sync.processor import SyncProcessor
from budgetsync.sync.queue_store import SyncQueueStore
from budgetsync.sync.schemas import (
    BatchResolutionResult,
    ConflictRecord,
    ResolutionRequest,
    SyncItemIn,
    SyncResult,
    SyncStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_DAYS = 7


class SyncService:
    def __init__(
        self,
        store: SyncQueueStore,
        processor: SyncProcessor,
        resolver: ConflictResolver,
    ):
        self.store = store
        self.processor = processor
        self.resolver = resolver

    # ─── Queue ────────────────────────────────────────────────────────────────

    def enqueue(
        self,
        user_id: str,
        operation: Any = None,
        entity_type: Any = None,
        entity_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> SyncQueueItem:
        """Validate and queue one mutation."""
        return self.enqueue_request(
            user_id,
            {
                "operation": operation,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "payload": payload,
            },
        )

    def enqueue_request(self, user_id: str, raw: Dict[str, Any]) -> SyncQueueItem:
        """Queue one mutation given as a client document (camelCase keys allowed)."""
        item = _validate_item(raw)
        queued = self.store.enqueue(
            user_id, item.operation, item.entity_type, item.entity_id, item.payload
        )
        logger.info(
            "Queued %s %s %s for user %s",
            queued.operation.value, queued.entity_type.value, queued.entity_id, user_id,
        )
        return queued

    def batch_enqueue(self, user_id: str, items: Iterable[Dict[str, Any]]) -> List[SyncQueueItem]:
        """Validate every item, then queue them all in one transaction."""
        if items is None or isinstance(items, (str, bytes, dict)):
            raise ValidationError("Items array is required")
        validated = [_validate_item(raw, index=i) for i, raw in enumerate(items)]
        queued = self.store.batch_enqueue(
            user_id,
            [
                {
                    "operation": v.operation,
                    "entity_type": v.entity_type,
                    "entity_id": v.entity_id,
                    "payload": v.payload,
                }
                for v in validated
            ],
        )
        logger.info("Queued batch of %d item(s) for user %s", len(queued), user_id)
        return queued

    # ─── Processing & status ──────────────────────────────────────────────────

    async def process(self, user_id: str) -> SyncResult:
        return await self.processor.process_sync_queue(user_id)

    def status(self, user_id: str) -> SyncStatus:
        return self.store.status_summary(user_id)

    def cleanup(self, user_id: Optional[str], days_old: int = DEFAULT_CLEANUP_DAYS) -> int:
        """Purge COMPLETED items older than ``days_old`` days. Returns the count.

        ``user_id=None`` purges for every user (scheduled retention job).
        """
        if isinstance(days_old, bool) or not isinstance(days_old, int) or days_old < 1:
            raise ValidationError("Days must be a positive number")
        cutoff = utcnow() - timedelta(days=days_old)
        deleted = self.store.purge_completed_older_than(user_id, cutoff)
        logger.info(
            "Purged %d completed sync item(s) older than %d day(s) for %s",
            deleted, days_old, user_id or "all users",
        )
        return deleted

    # ─── Conflicts ────────────────────────────────────────────────────────────

    async def list_conflicts(self, user_id: str) -> List[ConflictRecord]:
        return await self.resolver.get_conflicts(user_id)

    async def resolve_conflict(
        self,
        user_id: str,
        conflict_id: str,
        resolution: Union[ConflictResolution, str],
        merged_data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return await self.resolver.resolve_conflict(user_id, conflict_id, resolution, merged_data)

    async def resolve_conflicts_batch(
        self,
        user_id: str,
        resolutions: Iterable[Union[ResolutionRequest, Dict[str, Any]]],
    ) -> BatchResolutionResult:
        if resolutions is None or isinstance(resolutions, (str, bytes, dict)):
            raise ValidationError("Resolutions array is required")
        return await self.resolver.batch_resolve_conflicts(user_id, resolutions)


def build_sync_service(engine, max_retries: Optional[int] = None) -> SyncService:
    """Assemble a SyncService over the SQLModel tables on ``engine``."""
    if max_retries is None:
        max_retries = get_settings().sync_max_retries
    store = SyncQueueStore(engine, default_max_retries=max_retries)
    appliers = default_appliers(engine)
    return SyncService(
        store=store,
        processor=SyncProcessor(store, appliers),
        resolver=ConflictResolver(store, appliers),
    )


def _validate_item(raw: Any, index: Optional[int] = None) -> SyncItemIn:
    where = "" if index is None else f"Item {index}: "
    if not isinstance(raw, dict):
        raise ValidationError(f"{where}each item must be an object")
    try:
        item = SyncItemIn.model_validate({k: v for k, v in raw.items() if v is not None})
    except pydantic.ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'item'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(f"{where}{details}") from exc
    # JSON column: datetimes etc. in the payload are stored as ISO strings
    item.payload = item.model_dump(mode="json", include={"payload"})["payload"]
    return item
