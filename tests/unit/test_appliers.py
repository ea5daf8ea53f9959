"""Tests for entity appliers and the repository beneath them."""
from datetime import date, datetime
from unittest.mock import patch

import pytest
from sqlmodel import Session

from budgetsync.db.repository import EntityRepository, normalize_timestamp, to_snake
from budgetsync.models.entities import Budget, BudgetPeriod, Category, CreditCard, Expense
from budgetsync.models.sync import EntityType, SyncOperation, SyncQueueItem
from budgetsync.sync.appliers import (
    APPLIER_CLASSES,
    BudgetApplier,
    ExpenseApplier,
    build_applier_registry,
)
from budgetsync.sync.errors import ConflictError, InvalidResolutionError, TransientError

USER = "user-123"


def make_item(operation, entity_type, entity_id, payload) -> SyncQueueItem:
    return SyncQueueItem(
        user_id=USER,
        operation=operation,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload,
    )


# ─── Repository helpers ──────────────────────────────────────────────────────

class TestKeyAndTimestampHelpers:
    @pytest.mark.parametrize("key,expected", [
        ("totalIncome", "total_income"),
        ("limitGTQ", "limit_gtq"),
        ("currentBalanceUSD", "current_balance_usd"),
        ("updated_at", "updated_at"),
        ("id", "id"),
    ])
    def test_to_snake(self, key, expected):
        assert to_snake(key) == expected

    def test_normalize_z_suffix(self):
        assert normalize_timestamp("2024-01-10T12:00:00Z") == datetime(2024, 1, 10, 12, 0)

    def test_normalize_offset_converts_to_utc(self):
        assert normalize_timestamp("2024-01-10T06:00:00-06:00") == datetime(2024, 1, 10, 12, 0)

    def test_normalize_naive_is_utc(self):
        naive = datetime(2024, 1, 10, 12, 0)
        assert normalize_timestamp(naive) == naive

    def test_normalize_empty(self):
        assert normalize_timestamp(None) is None
        assert normalize_timestamp("") is None


class TestEntityRepository:
    def test_create_maps_camel_case_and_ignores_unknown(self, engine):
        repo = EntityRepository(engine, CreditCard)
        card = repo.create(
            "c1",
            {"id": "c1", "name": "Visa", "limitGTQ": 10000, "limitUSD": 1200, "nickname": "x"},
            user_id=USER,
        )
        assert card.limit_gtq == 10000
        assert card.limit_usd == 1200
        assert card.user_id == USER

    def test_payload_cannot_change_owner(self, engine):
        repo = EntityRepository(engine, Category)
        category = repo.create("cat1", {"name": "Food", "userId": "intruder"}, user_id=USER)
        assert category.user_id == USER

    def test_dates_are_coerced(self, engine):
        repo = EntityRepository(engine, BudgetPeriod)
        period = repo.create("p1", {"budgetId": "b1", "startDate": "2024-01-01", "income": 2500})
        assert period.start_date == date(2024, 1, 1)

    def test_update_keeps_unmentioned_fields(self, engine):
        repo = EntityRepository(engine, Expense)
        repo.create("e1", {"amount": 10, "description": "Coffee"}, user_id=USER)
        updated = repo.update("e1", {"amount": 12})
        assert updated.amount == 12
        assert updated.description == "Coffee"

    def test_update_uses_payload_updated_at(self, engine):
        repo = EntityRepository(engine, Expense)
        repo.create("e1", {"amount": 10}, user_id=USER)
        updated = repo.update("e1", {"amount": 12, "updatedAt": "2030-01-01T00:00:00Z"})
        assert updated.updated_at == datetime(2030, 1, 1)

    def test_update_missing_returns_none(self, engine):
        assert EntityRepository(engine, Expense).update("ghost", {"amount": 1}) is None

    def test_upsert_creates_then_updates(self, engine):
        repo = EntityRepository(engine, Budget)
        repo.upsert("b1", {"month": 1, "year": 2024}, user_id=USER)
        repo.upsert("b1", {"month": 1, "year": 2024, "totalIncome": 900}, user_id=USER)
        assert repo.get("b1").total_income == 900

    def test_delete_reports_absence(self, engine):
        repo = EntityRepository(engine, Budget)
        repo.create("b1", {"month": 1, "year": 2024})
        assert repo.delete("b1") is True
        assert repo.delete("b1") is False


# ─── Appliers ────────────────────────────────────────────────────────────────

class TestCreate:
    @pytest.mark.asyncio
    async def test_create_new_entity(self, engine):
        applier = BudgetApplier(EntityRepository(engine, Budget))
        item = make_item(
            SyncOperation.CREATE, EntityType.BUDGET, "b1",
            {"id": "b1", "month": 1, "year": 2024, "totalIncome": 5000},
        )
        outcome = await applier.apply(item)
        assert outcome.success is True
        assert (await applier.read("b1")).total_income == 5000

    @pytest.mark.asyncio
    async def test_create_existing_is_conflict(self, engine):
        applier = BudgetApplier(EntityRepository(engine, Budget))
        item = make_item(SyncOperation.CREATE, EntityType.BUDGET, "b1",
                         {"id": "b1", "month": 1, "year": 2024})
        await applier.apply(item)
        outcome = await applier.apply(item)
        assert outcome.success is False
        assert outcome.is_conflict is True
        assert outcome.error == "Budget already exists"

    @pytest.mark.asyncio
    async def test_invalid_payload_is_plain_error(self, engine):
        applier = BudgetApplier(EntityRepository(engine, Budget))
        # month/year are required columns
        item = make_item(SyncOperation.CREATE, EntityType.BUDGET, "b1", {"id": "b1"})
        outcome = await applier.apply(item)
        assert outcome.success is False
        assert outcome.is_conflict is False
        assert outcome.error


class TestUpdate:
    @pytest.mark.asyncio
    async def test_missing_remote_is_not_a_conflict(self, engine):
        applier = ExpenseApplier(EntityRepository(engine, Expense))
        item = make_item(SyncOperation.UPDATE, EntityType.EXPENSE, "e1",
                         {"id": "e1", "amount": 1, "updatedAt": "2024-01-01T00:00:00Z"})
        outcome = await applier.apply(item)
        assert outcome.is_conflict is False
        assert outcome.error == "Expense not found for update"

    @pytest.mark.asyncio
    async def test_newer_remote_is_conflict(self, engine, seeded_expense):
        applier = ExpenseApplier(EntityRepository(engine, Expense))
        item = make_item(SyncOperation.UPDATE, EntityType.EXPENSE, "e1",
                         {"id": "e1", "amount": 100, "updatedAt": "2024-01-09T12:00:00Z"})
        outcome = await applier.apply(item)
        assert outcome.is_conflict is True
        assert outcome.error == "Expense was modified more recently on server"
        assert (await applier.read("e1")).amount == 250.0

    @pytest.mark.asyncio
    async def test_equal_timestamp_applies(self, engine, seeded_expense):
        applier = ExpenseApplier(EntityRepository(engine, Expense))
        item = make_item(SyncOperation.UPDATE, EntityType.EXPENSE, "e1",
                         {"id": "e1", "amount": 100, "updatedAt": "2024-01-10T12:00:00Z"})
        outcome = await applier.apply(item)
        assert outcome.success is True
        assert (await applier.read("e1")).amount == 100

    @pytest.mark.asyncio
    async def test_timezone_offsets_compared_in_utc(self, engine, seeded_expense):
        """06:30 at UTC-6 is 12:30 UTC, later than the server's 12:00."""
        applier = ExpenseApplier(EntityRepository(engine, Expense))
        item = make_item(SyncOperation.UPDATE, EntityType.EXPENSE, "e1",
                         {"id": "e1", "amount": 75, "updatedAt": "2024-01-10T06:30:00-06:00"})
        outcome = await applier.apply(item)
        assert outcome.success is True


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_existing(self, engine, seeded_expense):
        applier = ExpenseApplier(EntityRepository(engine, Expense))
        item = make_item(SyncOperation.DELETE, EntityType.EXPENSE, "e1", {})
        assert (await applier.apply(item)).success is True
        assert await applier.exists("e1") is False

    @pytest.mark.asyncio
    async def test_delete_absent_is_success(self, engine):
        applier = ExpenseApplier(EntityRepository(engine, Expense))
        item = make_item(SyncOperation.DELETE, EntityType.EXPENSE, "ghost", {})
        outcome = await applier.apply(item)
        assert outcome.success is True
        assert outcome.error is None


class TestOwnership:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation,payload", [
        (SyncOperation.UPDATE, {"id": "e1", "amount": 1, "updatedAt": "2099-01-01T00:00:00Z"}),
        (SyncOperation.DELETE, {}),
        (SyncOperation.CREATE, {"id": "e1", "amount": 1}),
    ])
    async def test_foreign_entity_is_not_touched(self, engine, seeded_expense, operation, payload):
        applier = ExpenseApplier(EntityRepository(engine, Expense))
        item = make_item(operation, EntityType.EXPENSE, "e1", payload)
        item.user_id = "intruder"

        outcome = await applier.apply(item)

        assert outcome.success is False
        assert outcome.is_conflict is False
        assert outcome.error == "Expense belongs to another user"
        remote = await applier.read("e1")
        assert remote.amount == 250.0
        assert remote.user_id == USER

    @pytest.mark.asyncio
    async def test_unowned_entity_is_open(self, engine):
        applier = BudgetApplier(EntityRepository(engine, Budget))
        EntityRepository(engine, Budget).create("b1", {"month": 1, "year": 2024})
        item = make_item(SyncOperation.DELETE, EntityType.BUDGET, "b1", {})
        assert (await applier.apply(item)).success is True

    @pytest.mark.asyncio
    async def test_force_apply_refuses_foreign_entity(self, engine, seeded_expense):
        applier = ExpenseApplier(EntityRepository(engine, Expense))
        item = make_item(SyncOperation.DELETE, EntityType.EXPENSE, "e1", {})
        item.user_id = "intruder"
        with pytest.raises(InvalidResolutionError, match="belongs to another user"):
            await applier.force_apply(item)
        assert await applier.exists("e1") is True

    @pytest.mark.asyncio
    async def test_read_updated_at(self, engine, seeded_expense):
        applier = ExpenseApplier(EntityRepository(engine, Expense))
        assert await applier.read_updated_at("e1") == datetime(2024, 1, 10, 12, 0)
        assert await applier.read_updated_at("ghost") is None


class TestRepositoryErrors:
    @pytest.mark.asyncio
    async def test_conflict_error_becomes_conflict(self, engine):
        applier = BudgetApplier(EntityRepository(engine, Budget))
        item = make_item(SyncOperation.CREATE, EntityType.BUDGET, "b1",
                         {"id": "b1", "month": 1, "year": 2024})
        with patch.object(applier.repository, "create",
                          side_effect=ConflictError("Budget changed concurrently")):
            outcome = await applier.apply(item)
        assert outcome.is_conflict is True
        assert outcome.error == "Budget changed concurrently"

    @pytest.mark.asyncio
    async def test_transient_error_is_retryable_failure(self, engine):
        applier = BudgetApplier(EntityRepository(engine, Budget))
        item = make_item(SyncOperation.DELETE, EntityType.BUDGET, "b1", {})
        with patch.object(applier.repository, "delete",
                          side_effect=TransientError("database is locked")):
            outcome = await applier.apply(item)
        assert outcome.success is False
        assert outcome.is_conflict is False
        assert outcome.error == "database is locked"


class TestForceApply:
    @pytest.mark.asyncio
    async def test_force_apply_ignores_timestamps(self, engine, seeded_expense):
        applier = ExpenseApplier(EntityRepository(engine, Expense))
        item = make_item(SyncOperation.UPDATE, EntityType.EXPENSE, "e1",
                         {"id": "e1", "amount": 100, "updatedAt": "2020-01-01T00:00:00Z"})
        await applier.force_apply(item)
        assert (await applier.read("e1")).amount == 100

    @pytest.mark.asyncio
    async def test_force_apply_with_data_upserts_even_for_delete(self, engine):
        applier = ExpenseApplier(EntityRepository(engine, Expense))
        item = make_item(SyncOperation.DELETE, EntityType.EXPENSE, "e9", {})
        await applier.force_apply(item, data={"id": "e9", "amount": 42})
        assert (await applier.read("e9")).amount == 42


class TestRegistry:
    def test_registry_covers_every_entity_type(self, appliers):
        assert set(appliers) == set(EntityType)
        for entity_type, applier in appliers.items():
            assert applier.entity_type == entity_type

    def test_registry_skips_missing_repositories(self, engine):
        registry = build_applier_registry({EntityType.BUDGET: EntityRepository(engine, Budget)})
        assert list(registry) == [EntityType.BUDGET]

    def test_model_mapping(self):
        assert APPLIER_CLASSES[EntityType.CATEGORY][1] is Category
