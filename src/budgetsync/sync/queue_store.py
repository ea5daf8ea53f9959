"""
SyncQueueStore: durable persistence of sync queue items.

Pure storage: no knowledge of entities or conflict policy. Every status
transition is its own short session/commit, so progress through a sync pass
is durable per item. The one multi-row write, batch_enqueue(), runs in a
single transaction and persists all items or none.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlmodel import Session, col, select

from budgetsync.models.sync import (
    EntityType,
    SyncOperation,
    SyncQueueItem,
    SyncQueueStatus,
    utcnow,
)
from budgetsync.sync.errors import NotFoundError
from budgetsync.sync.schemas import SyncStatus

DEFAULT_MAX_RETRIES = 3


class SyncQueueStore:
    def __init__(self, engine, default_max_retries: int = DEFAULT_MAX_RETRIES):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            default_max_retries: retry budget stamped on new items.
        """
        self.engine = engine
        self.default_max_retries = default_max_retries

    # ─── Enqueue ──────────────────────────────────────────────────────────────

    def enqueue(
        self,
        user_id: str,
        operation: SyncOperation,
        entity_type: EntityType,
        entity_id: str,
        payload: Dict[str, Any],
        max_retries: Optional[int] = None,
    ) -> SyncQueueItem:
        """Persist one PENDING item with a zero retry count."""
        return self.batch_enqueue(
            user_id,
            [
                {
                    "operation": operation,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "payload": payload,
                    "max_retries": max_retries,
                }
            ],
        )[0]

    def batch_enqueue(self, user_id: str, items: Iterable[Dict[str, Any]]) -> List[SyncQueueItem]:
        """Persist several items atomically, preserving their order.

        Each dict carries operation, entity_type, entity_id, payload and an
        optional max_retries. created_at is strictly increasing per user so
        FIFO replay order is total even within one batch.
        """
        rows: List[SyncQueueItem] = []
        with Session(self.engine) as s:
            last = s.exec(
                select(func.max(SyncQueueItem.created_at)).where(
                    SyncQueueItem.user_id == user_id
                )
            ).first()
            for item in items:
                created_at = utcnow()
                if last is not None and created_at <= last:
                    created_at = last + timedelta(microseconds=1)
                last = created_at
                max_retries = item.get("max_retries")
                row = SyncQueueItem(
                    user_id=user_id,
                    operation=item["operation"],
                    entity_type=item["entity_type"],
                    entity_id=item["entity_id"],
                    payload=item.get("payload") or {},
                    status=SyncQueueStatus.PENDING,
                    retry_count=0,
                    max_retries=self.default_max_retries if max_retries is None else max_retries,
                    created_at=created_at,
                    updated_at=created_at,
                )
                s.add(row)
                rows.append(row)
            s.commit()
            for row in rows:
                s.refresh(row)
        return rows

    # ─── Queries ──────────────────────────────────────────────────────────────

    def get(self, item_id: str) -> Optional[SyncQueueItem]:
        with Session(self.engine) as s:
            return s.get(SyncQueueItem, item_id)

    def list_pending(self, user_id: str) -> List[SyncQueueItem]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncQueueItem)
                .where(SyncQueueItem.user_id == user_id)
                .where(SyncQueueItem.status == SyncQueueStatus.PENDING)
                .order_by(SyncQueueItem.created_at)
            ).all())

    def list_failed_retryable(self, user_id: str) -> List[SyncQueueItem]:
        """FAILED items with retry budget left, conflicted ones included.

        A conflict does not spend retry budget, so a conflicted item is
        replayed each pass until it applies cleanly or is resolved.
        """
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncQueueItem)
                .where(SyncQueueItem.user_id == user_id)
                .where(SyncQueueItem.status == SyncQueueStatus.FAILED)
                .where(SyncQueueItem.retry_count < SyncQueueItem.max_retries)
                .order_by(SyncQueueItem.created_at)
            ).all())

    def list_candidates(self, user_id: str) -> List[SyncQueueItem]:
        """Pending plus retryable failed items, oldest first."""
        items = self.list_pending(user_id) + self.list_failed_retryable(user_id)
        return sorted(items, key=lambda i: i.created_at)

    def list_conflicted(self, user_id: str) -> List[SyncQueueItem]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncQueueItem)
                .where(SyncQueueItem.user_id == user_id)
                .where(SyncQueueItem.status == SyncQueueStatus.FAILED)
                .where(col(SyncQueueItem.is_conflict).is_(True))
                .order_by(SyncQueueItem.created_at)
            ).all())

    def users_with_work(self) -> List[str]:
        """Distinct users owning pending or retryable failed items."""
        with Session(self.engine) as s:
            rows = s.exec(
                select(SyncQueueItem.user_id)
                .where(
                    (SyncQueueItem.status == SyncQueueStatus.PENDING)
                    | (
                        (SyncQueueItem.status == SyncQueueStatus.FAILED)
                        & (SyncQueueItem.retry_count < SyncQueueItem.max_retries)
                    )
                )
                .distinct()
                .order_by(SyncQueueItem.user_id)
            ).all()
        return list(rows)

    def status_summary(self, user_id: str) -> SyncStatus:
        with Session(self.engine) as s:
            counts = dict(s.exec(
                select(SyncQueueItem.status, func.count())
                .where(SyncQueueItem.user_id == user_id)
                .group_by(SyncQueueItem.status)
            ).all())
            last_sync_at = s.exec(
                select(func.max(SyncQueueItem.updated_at))
                .where(SyncQueueItem.user_id == user_id)
                .where(SyncQueueItem.status == SyncQueueStatus.COMPLETED)
            ).first()
        return SyncStatus(
            user_id=user_id,
            pending_items=counts.get(SyncQueueStatus.PENDING, 0),
            processing_items=counts.get(SyncQueueStatus.PROCESSING, 0),
            failed_items=counts.get(SyncQueueStatus.FAILED, 0),
            last_sync_at=last_sync_at,
        )

    # ─── Transitions ──────────────────────────────────────────────────────────

    def claim(self, item_id: str) -> bool:
        """Atomically move a PENDING or retryable FAILED item to PROCESSING.

        Returns False when the item is no longer claimable, i.e. another
        pass (possibly in another process) took or settled it first.
        """
        claimable = (SyncQueueItem.status == SyncQueueStatus.PENDING) | (
            (SyncQueueItem.status == SyncQueueStatus.FAILED)
            & (SyncQueueItem.retry_count < SyncQueueItem.max_retries)
        )
        with Session(self.engine) as s:
            result = s.exec(
                update(SyncQueueItem)
                .where(SyncQueueItem.id == item_id)
                .where(claimable)
                .values(
                    status=SyncQueueStatus.PROCESSING,
                    error_message=None,
                    is_conflict=False,
                    updated_at=utcnow(),
                )
            )
            s.commit()
        return result.rowcount == 1

    def set_status(
        self,
        item_id: str,
        status: SyncQueueStatus,
        error_message: Optional[str] = None,
    ) -> SyncQueueItem:
        """Move an item to ``status``. Leaving FAILED clears the failure fields."""
        with Session(self.engine) as s:
            item = self._load(s, item_id)
            item.status = status
            if status == SyncQueueStatus.FAILED:
                item.error_message = error_message
            else:
                item.error_message = None
                item.is_conflict = False
            item.updated_at = utcnow()
            s.add(item)
            s.commit()
            s.refresh(item)
            return item

    def increment_retry(self, item_id: str) -> SyncQueueItem:
        """Add one to retry_count (never past max_retries). Returns the row."""
        with Session(self.engine) as s:
            item = self._load(s, item_id)
            item.retry_count = min(item.retry_count + 1, item.max_retries)
            item.updated_at = utcnow()
            s.add(item)
            s.commit()
            s.refresh(item)
            return item

    def mark_completed(self, item_id: str) -> SyncQueueItem:
        return self.set_status(item_id, SyncQueueStatus.COMPLETED)

    def mark_failed(self, item_id: str, reason: str, is_conflict: bool = False) -> SyncQueueItem:
        with Session(self.engine) as s:
            item = self._load(s, item_id)
            item.status = SyncQueueStatus.FAILED
            item.error_message = reason
            item.is_conflict = is_conflict
            item.updated_at = utcnow()
            s.add(item)
            s.commit()
            s.refresh(item)
            return item

    # ─── Retention ────────────────────────────────────────────────────────────

    def purge_completed_older_than(self, user_id: Optional[str], cutoff: datetime) -> int:
        """Delete COMPLETED items last touched before ``cutoff``.

        ``user_id=None`` purges across all users.
        """
        stmt = (
            select(SyncQueueItem)
            .where(SyncQueueItem.status == SyncQueueStatus.COMPLETED)
            .where(SyncQueueItem.updated_at < cutoff)
        )
        if user_id is not None:
            stmt = stmt.where(SyncQueueItem.user_id == user_id)
        with Session(self.engine) as s:
            stale = s.exec(stmt).all()
            for item in stale:
                s.delete(item)
            s.commit()
        return len(stale)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _load(s: Session, item_id: str) -> SyncQueueItem:
        item = s.get(SyncQueueItem, item_id)
        if item is None:
            raise NotFoundError(f"Sync queue item {item_id} not found")
        return item
