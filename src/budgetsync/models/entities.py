"""Authoritative budgeting entities the sync engine replays mutations against.

Only the columns needed to persist a client's document are modelled here;
business rules (period income totals, card balances) belong to each entity's
own service and are not enforced at this layer.
"""
from datetime import date, datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from budgetsync.models.sync import utcnow


class Budget(SQLModel, table=True):
    """One monthly budget per user."""

    id: str = Field(primary_key=True)
    user_id: Optional[str] = Field(default=None, index=True)
    month: int  # 1-12
    year: int
    payment_frequency: str = "MONTHLY"  # "MONTHLY" or "BIWEEKLY"
    total_income: float = 0.0

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class BudgetPeriod(SQLModel, table=True):
    """A pay period inside a budget (one for monthly, two for biweekly)."""

    id: str = Field(primary_key=True)
    user_id: Optional[str] = Field(default=None, index=True)
    budget_id: Optional[str] = Field(default=None, index=True)
    period_number: int = 1
    income: float = 0.0
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Category(SQLModel, table=True):
    id: str = Field(primary_key=True)
    user_id: Optional[str] = Field(default=None, index=True)
    name: str
    color: Optional[str] = None  # hex, e.g. "#FF5733"
    icon: Optional[str] = None
    is_default: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CreditCard(SQLModel, table=True):
    """Card with separate local-currency (GTQ) and USD limits and balances."""

    id: str = Field(primary_key=True)
    user_id: Optional[str] = Field(default=None, index=True)
    name: str
    bank: str = ""
    limit_gtq: float = 0.0
    limit_usd: float = 0.0
    current_balance_gtq: float = 0.0
    current_balance_usd: float = 0.0
    is_active: bool = True

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Expense(SQLModel, table=True):
    id: str = Field(primary_key=True)
    user_id: Optional[str] = Field(default=None, index=True)
    category_id: Optional[str] = Field(default=None, index=True)
    credit_card_id: Optional[str] = None
    budget_period_id: Optional[str] = None
    amount: float
    currency: str = "GTQ"  # "GTQ" or "USD"
    description: str = ""
    date: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
