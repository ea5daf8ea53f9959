"""
Entity appliers: replay one queued mutation against the authoritative store.

Every entity type gets the same contract:

    CREATE  remote exists                      → conflict
    UPDATE  remote missing                     → error (retryable)
            remote.updated_at > payload's view → conflict
    DELETE  remote already gone                → success (idempotent)
    any     remote owned by another user       → error

Conflict detection is last-writer-wins on ``updatedAt``: a timestamp
comparison, not causal history. Clock skew between devices can yield false
conflicts or false successes; that limitation is accepted here.

Appliers never raise from apply(); failures come back as an ApplyOutcome so
the processor decides what happens to the queue item. A repository that
raises ConflictError yields a conflict outcome; TransientError or any other
exception yields a retryable failure.

An entity whose user_id is set and differs from the item's owner is never
touched, by apply() or force_apply(). Unowned rows (user_id NULL) are open
to every user.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from sqlmodel import SQLModel

from budgetsync.db.repository import EntityRepository, normalize_timestamp
from budgetsync.models.entities import Budget, BudgetPeriod, Category, CreditCard, Expense
from budgetsync.models.sync import EntityType, SyncOperation, SyncQueueItem
from budgetsync.sync.errors import ConflictError, InvalidResolutionError
from budgetsync.sync.schemas import UPDATED_AT_KEYS

logger = logging.getLogger(__name__)


@dataclass
class ApplyOutcome:
    success: bool
    is_conflict: bool = False
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "ApplyOutcome":
        return cls(success=True)

    @classmethod
    def conflict(cls, reason: str) -> "ApplyOutcome":
        return cls(success=False, is_conflict=True, error=reason)

    @classmethod
    def failure(cls, reason: str) -> "ApplyOutcome":
        return cls(success=False, error=reason)


class EntityApplier:
    """Mutation replay for one entity type, over an injected repository."""

    entity_type: EntityType
    label: str  # human name used in outcome messages, e.g. "Budget"

    def __init__(self, repository: EntityRepository):
        self.repository = repository

    # ─── Capabilities ─────────────────────────────────────────────────────────

    async def exists(self, entity_id: str) -> bool:
        return self.repository.exists(entity_id)

    async def read(self, entity_id: str) -> Optional[SQLModel]:
        return self.repository.get(entity_id)

    async def read_updated_at(self, entity_id: str):
        return self.repository.read_updated_at(entity_id)

    async def owned_by_other(self, entity_id: str, user_id: str) -> bool:
        entity = await self.read(entity_id)
        return is_foreign(entity, user_id)

    async def create(self, entity_id: str, data: Dict[str, Any], user_id: str) -> SQLModel:
        return self.repository.create(entity_id, data, user_id=user_id)

    async def update(self, entity_id: str, data: Dict[str, Any]) -> Optional[SQLModel]:
        return self.repository.update(entity_id, data)

    async def delete(self, entity_id: str) -> bool:
        return self.repository.delete(entity_id)

    async def upsert(self, entity_id: str, data: Dict[str, Any], user_id: str) -> SQLModel:
        return self.repository.upsert(entity_id, data, user_id=user_id)

    # ─── Replay ───────────────────────────────────────────────────────────────

    async def apply(self, item: SyncQueueItem) -> ApplyOutcome:
        """Replay ``item`` with ownership, existence and timestamp checks."""
        try:
            if await self.owned_by_other(item.entity_id, item.user_id):
                return ApplyOutcome.failure(f"{self.label} belongs to another user")
            if item.operation == SyncOperation.CREATE:
                return await self._apply_create(item)
            if item.operation == SyncOperation.UPDATE:
                return await self._apply_update(item)
            if item.operation == SyncOperation.DELETE:
                # Absent target is fine: the client's intent already holds
                await self.delete(item.entity_id)
                return ApplyOutcome.ok()
            return ApplyOutcome.failure(f"Unknown operation: {item.operation.value}")
        except ConflictError as exc:
            # Entity services may detect concurrent writes on their own
            return ApplyOutcome.conflict(str(exc))
        except Exception as exc:
            logger.warning(
                "Applying %s %s %s failed: %s",
                item.operation.value, self.label, item.entity_id, exc,
            )
            return ApplyOutcome.failure(str(exc) or exc.__class__.__name__)

    async def force_apply(self, item: SyncQueueItem, data: Optional[Dict[str, Any]] = None) -> None:
        """Write without existence or timestamp checks.

        With ``data`` (a merged document) the entity is upserted regardless of
        the queued operation. Otherwise CREATE/UPDATE upsert the stored payload
        and DELETE removes the entity if it is still there.

        Raises:
            InvalidResolutionError: the entity belongs to another user.
        """
        if await self.owned_by_other(item.entity_id, item.user_id):
            raise InvalidResolutionError(f"{self.label} belongs to another user")
        if data is not None:
            await self.upsert(item.entity_id, data, item.user_id)
        elif item.operation == SyncOperation.DELETE:
            await self.delete(item.entity_id)
        else:
            await self.upsert(item.entity_id, item.payload, item.user_id)

    async def _apply_create(self, item: SyncQueueItem) -> ApplyOutcome:
        if await self.exists(item.entity_id):
            return ApplyOutcome.conflict(f"{self.label} already exists")
        await self.create(item.entity_id, item.payload, item.user_id)
        return ApplyOutcome.ok()

    async def _apply_update(self, item: SyncQueueItem) -> ApplyOutcome:
        remote_updated_at = await self.read_updated_at(item.entity_id)
        if remote_updated_at is None:
            return ApplyOutcome.failure(f"{self.label} not found for update")

        local_updated_at = normalize_timestamp(_payload_updated_at(item.payload))
        if local_updated_at is None:
            return ApplyOutcome.failure(f"{self.label} update is missing updatedAt")
        if normalize_timestamp(remote_updated_at) > local_updated_at:
            return ApplyOutcome.conflict(
                f"{self.label} was modified more recently on server"
            )

        await self.update(item.entity_id, item.payload)
        return ApplyOutcome.ok()


def is_foreign(entity: Optional[SQLModel], user_id: str) -> bool:
    """True when ``entity`` exists and is owned by someone other than ``user_id``."""
    owner = getattr(entity, "user_id", None) if entity is not None else None
    return owner is not None and owner != user_id


def _payload_updated_at(payload: Dict[str, Any]):
    for key in UPDATED_AT_KEYS:
        if payload.get(key):
            return payload[key]
    return None


# ─── Concrete appliers ────────────────────────────────────────────────────────

class BudgetApplier(EntityApplier):
    entity_type = EntityType.BUDGET
    label = "Budget"


class ExpenseApplier(EntityApplier):
    entity_type = EntityType.EXPENSE
    label = "Expense"


class CreditCardApplier(EntityApplier):
    entity_type = EntityType.CREDIT_CARD
    label = "Credit card"


class CategoryApplier(EntityApplier):
    entity_type = EntityType.CATEGORY
    label = "Category"


class BudgetPeriodApplier(EntityApplier):
    entity_type = EntityType.BUDGET_PERIOD
    label = "Budget period"


APPLIER_CLASSES = {
    EntityType.BUDGET: (BudgetApplier, Budget),
    EntityType.EXPENSE: (ExpenseApplier, Expense),
    EntityType.CREDIT_CARD: (CreditCardApplier, CreditCard),
    EntityType.CATEGORY: (CategoryApplier, Category),
    EntityType.BUDGET_PERIOD: (BudgetPeriodApplier, BudgetPeriod),
}


def build_applier_registry(
    repositories: Mapping[EntityType, EntityRepository],
) -> Dict[EntityType, EntityApplier]:
    """Wrap each entity repository in the applier for its type.

    Types without a repository are left out; the processor reports items of
    such types as errors instead of crashing.
    """
    return {
        entity_type: applier_cls(repositories[entity_type])
        for entity_type, (applier_cls, _) in APPLIER_CLASSES.items()
        if entity_type in repositories
    }


def default_appliers(engine) -> Dict[EntityType, EntityApplier]:
    """Registry backed by the SQLModel entity tables on ``engine``."""
    repositories = {
        entity_type: EntityRepository(engine, model)
        for entity_type, (_, model) in APPLIER_CLASSES.items()
    }
    return build_applier_registry(repositories)
