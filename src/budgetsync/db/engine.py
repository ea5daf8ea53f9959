"""SQLModel engine singleton."""
from sqlmodel import SQLModel, create_engine

from budgetsync.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it on first call.

    Only bootstrap code (API lifespan, scheduler, CLI) should reach for
    this; sync components take an engine in their constructor.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        _engine = create_engine(settings.database_url, connect_args=connect_args)
        # Import all models so metadata is populated before create_all
        from budgetsync.models.entities import Budget, BudgetPeriod, Category, CreditCard, Expense  # noqa
        from budgetsync.models.sync import SyncQueueItem  # noqa
        SQLModel.metadata.create_all(_engine)
        from budgetsync.db.migrations import run_migrations
        run_migrations(_engine)
    return _engine
