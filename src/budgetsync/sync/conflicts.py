"""
ConflictResolver: surfaces conflicted queue items and settles them.

Strategies:
  LOCAL   force-apply the stored payload (upsert, or delete for DELETE items)
  REMOTE  keep the server's version; the queued mutation is dropped
  MERGE   force-apply a caller-supplied merged document

Force-applies skip the existence and timestamp checks the processor makes,
but never write over an entity owned by another user. A resolution that
succeeds leaves the item COMPLETED; one that is rejected leaves it FAILED.
"""
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import pydantic

from budgetsync.db.repository import to_snake
from budgetsync.models.sync import ConflictResolution, EntityType, SyncQueueItem
from budgetsync.sync.appliers import EntityApplier, is_foreign
from budgetsync.sync.errors import InvalidResolutionError, NotFoundError
from budgetsync.sync.queue_store import SyncQueueStore
from budgetsync.sync.schemas import (
    BatchResolutionResult,
    ConflictRecord,
    ResolutionFailure,
    ResolutionRequest,
    ResolvedItem,
)

logger = logging.getLogger(__name__)


class ConflictResolver:
    def __init__(self, store: SyncQueueStore, appliers: Mapping[EntityType, EntityApplier]):
        self.store = store
        self.appliers = dict(appliers)

    async def get_conflicts(self, user_id: str) -> List[ConflictRecord]:
        """Conflicted items for ``user_id``, each paired with the current remote entity.

        An item whose remote entity cannot be read is logged and left out.
        Remote entities owned by another user are reported as None.
        """
        conflicts: List[ConflictRecord] = []
        for item in self.store.list_conflicted(user_id):
            remote = None
            applier = self.appliers.get(item.entity_type)
            if applier is not None:
                try:
                    entity = await applier.read(item.entity_id)
                except Exception:
                    logger.warning(
                        "Could not read remote %s %s for conflict %s",
                        item.entity_type.value, item.entity_id, item.id, exc_info=True,
                    )
                    continue
                if entity is not None and not is_foreign(entity, user_id):
                    remote = _shape_like(item.payload, entity.model_dump(mode="json"))
            conflicts.append(
                ConflictRecord(
                    id=item.id,
                    entity_type=item.entity_type,
                    entity_id=item.entity_id,
                    operation=item.operation,
                    local_data=item.payload,
                    remote_data=remote,
                    conflict_reason=item.error_message or "Data conflict detected",
                    detected_at=item.updated_at,
                )
            )
        return conflicts

    async def resolve_conflict(
        self,
        user_id: str,
        conflict_id: str,
        resolution: Union[ConflictResolution, str],
        merged_data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Settle one conflicted item.

        Raises:
            InvalidResolutionError: unknown strategy, MERGE without merged_data,
                a document the entity model rejects, or a target entity owned
                by another user.
            NotFoundError: the item does not exist or belongs to another user.
        """
        strategy = _parse_resolution(resolution)
        if strategy == ConflictResolution.MERGE and not merged_data:
            raise InvalidResolutionError("Merged data is required for MERGE resolution")

        item = self.store.get(conflict_id)
        if item is None or item.user_id != user_id:
            raise NotFoundError("Conflict not found or access denied")

        try:
            if strategy == ConflictResolution.LOCAL:
                await self._applier_for(item).force_apply(item)
            elif strategy == ConflictResolution.MERGE:
                document = dict(merged_data)
                document["id"] = item.entity_id
                await self._applier_for(item).force_apply(item, data=document)
        except pydantic.ValidationError as exc:
            raise InvalidResolutionError(
                f"Invalid resolution data for {item.entity_type.value} {item.entity_id}: "
                f"{exc.error_count()} field error(s)"
            ) from exc

        self.store.mark_completed(item.id)
        logger.info(
            "Resolved conflict %s (%s %s) with %s",
            item.id, item.entity_type.value, item.entity_id, strategy.value,
        )
        return True

    async def batch_resolve_conflicts(
        self,
        user_id: str,
        resolutions: Iterable[Union[ResolutionRequest, Dict[str, Any]]],
    ) -> BatchResolutionResult:
        """Resolve each request independently; one failure never stops the rest."""
        result = BatchResolutionResult()
        for raw in resolutions:
            result.total_processed += 1
            conflict_id = None
            try:
                request = (
                    raw if isinstance(raw, ResolutionRequest)
                    else ResolutionRequest.model_validate(raw)
                )
                conflict_id = request.conflict_id
                if not conflict_id:
                    raise InvalidResolutionError("conflictId is required")
                resolved = await self.resolve_conflict(
                    user_id, conflict_id, request.resolution, request.merged_data
                )
                result.resolved.append(ResolvedItem(conflict_id=conflict_id, resolved=resolved))
            except Exception as exc:
                logger.warning("Error resolving conflict %s: %s", conflict_id, exc)
                result.errors.append(
                    ResolutionFailure(conflict_id=conflict_id, error=str(exc) or "Unknown error")
                )
        result.success_count = len(result.resolved)
        result.error_count = len(result.errors)
        return result

    def _applier_for(self, item: SyncQueueItem) -> EntityApplier:
        applier = self.appliers.get(item.entity_type)
        if applier is None:
            raise InvalidResolutionError(f"Unknown entity type: {item.entity_type.value}")
        return applier


def _parse_resolution(resolution: Union[ConflictResolution, str]) -> ConflictResolution:
    try:
        return ConflictResolution(resolution)
    except ValueError:
        raise InvalidResolutionError(
            f"Unknown resolution type: {resolution} (expected LOCAL, REMOTE or MERGE)"
        ) from None


def _shape_like(local: Dict[str, Any], remote: Dict[str, Any]) -> Dict[str, Any]:
    """Re-key ``remote`` with the client's spelling of each field, where known.

    A payload sent as ``{"totalIncome": ...}`` gets the remote column
    ``total_income`` back as ``totalIncome`` so the two sides diff cleanly.
    """
    spelling = {to_snake(key): key for key in local}
    return {spelling.get(name, name): value for name, value in remote.items()}
