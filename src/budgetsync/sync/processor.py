"""
SyncProcessor: replays a user's queued mutations against the store.

Flow for one pass (process_sync_queue):
  1. Capture candidates: PENDING + retryable FAILED items, oldest first.
  2. For each item, strictly one at a time:
       claim (→ PROCESSING) → applier.apply(item) →
         success   → COMPLETED
         conflict  → FAILED (is_conflict); replayed by later passes
                     until it applies or a resolver settles it
         error     → retry_count += 1; FAILED once the budget is spent,
                     otherwise back to PENDING for a later pass
  3. Return aggregate counts.

Two mutations of the same entity must land in the order they were issued,
so items of one user are never processed concurrently. Overlapping passes
for the same user in this process queue up behind a per-user lock; passes
for different users are independent.

The lock only reaches this process. Across processes sharing a database,
each item is taken with an atomic claim; a pass that finds its next
candidate already taken stops there, so the other pass keeps the user's
FIFO order. An item whose process dies mid-apply stays PROCESSING and is
not picked up again automatically.

A pass never raises: an item that blows up is recorded as FAILED and the
pass moves on to the next one.
"""
import asyncio
import logging
from typing import Dict, Mapping

from budgetsync.models.sync import EntityType, SyncQueueItem, SyncQueueStatus
from budgetsync.sync.appliers import ApplyOutcome, EntityApplier
from budgetsync.sync.queue_store import SyncQueueStore
from budgetsync.sync.schemas import SyncResult

logger = logging.getLogger(__name__)


class SyncProcessor:
    def __init__(self, store: SyncQueueStore, appliers: Mapping[EntityType, EntityApplier]):
        """
        Args:
            store: queue persistence.
            appliers: registry of entity type → applier.
        """
        self.store = store
        self.appliers = dict(appliers)
        self._user_locks: Dict[str, asyncio.Lock] = {}

    async def process_sync_queue(self, user_id: str) -> SyncResult:
        """Run one synchronization pass for ``user_id``."""
        async with self._lock_for(user_id):
            return await self._run_pass(user_id)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    async def _run_pass(self, user_id: str) -> SyncResult:
        result = SyncResult()
        try:
            candidates = self.store.list_candidates(user_id)
        except Exception as exc:
            logger.exception("Could not load sync queue for user %s", user_id)
            result.errors.append(str(exc))
            return result

        logger.info("Sync pass for user %s: %d item(s)", user_id, len(candidates))
        for item in candidates:
            try:
                claimed = self.store.claim(item.id)
            except Exception as exc:
                logger.exception("Could not claim sync item %s", item.id)
                result.processed += 1
                result.failed += 1
                result.errors.append(str(exc) or exc.__class__.__name__)
                continue
            if not claimed:
                logger.info(
                    "Sync item %s was taken by another pass; stopping pass for user %s",
                    item.id, user_id,
                )
                break

            result.processed += 1
            try:
                await self._process_item(item, result)
            except Exception as exc:
                logger.exception("Error processing sync item %s", item.id)
                message = str(exc) or exc.__class__.__name__
                self._fail_after_exception(item, message)
                result.failed += 1
                result.errors.append(message)

        logger.info(
            "Sync pass for user %s done: %d ok, %d conflict(s), %d failed",
            user_id, result.successful, result.conflicts, result.failed,
        )
        return result

    async def _process_item(self, item: SyncQueueItem, result: SyncResult) -> None:
        outcome = await self._dispatch(item)

        if outcome.success:
            self.store.mark_completed(item.id)
            result.successful += 1
            return

        if outcome.is_conflict:
            reason = outcome.error or "Conflict detected"
            logger.warning("Conflict on %s %s: %s", item.entity_type.value, item.entity_id, reason)
            self.store.mark_failed(item.id, reason, is_conflict=True)
            result.conflicts += 1
            return

        reason = outcome.error or "Max retries exceeded"
        updated = self.store.increment_retry(item.id)
        if updated.retry_count >= updated.max_retries:
            logger.warning(
                "Sync item %s failed after %d attempt(s): %s",
                item.id, updated.retry_count, reason,
            )
            self.store.mark_failed(item.id, reason)
            result.failed += 1
        else:
            logger.info(
                "Sync item %s will be retried (%d/%d): %s",
                item.id, updated.retry_count, updated.max_retries, reason,
            )
            self.store.set_status(item.id, SyncQueueStatus.PENDING)
        result.errors.append(reason)

    async def _dispatch(self, item: SyncQueueItem) -> ApplyOutcome:
        applier = self.appliers.get(item.entity_type)
        if applier is None:
            return ApplyOutcome.failure(f"Unknown entity type: {item.entity_type.value}")
        return await applier.apply(item)

    def _fail_after_exception(self, item: SyncQueueItem, message: str) -> None:
        """Count the attempt against the retry budget and park the item as FAILED.

        If the queue store itself is what failed, there is nothing more to
        record; the item keeps whatever status it last reached.
        """
        try:
            self.store.increment_retry(item.id)
            self.store.mark_failed(item.id, message)
        except Exception:
            logger.exception("Could not record failure for sync item %s", item.id)
