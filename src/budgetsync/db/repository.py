"""
Per-entity persistence primitives for the authoritative store.

Clients send documents shaped like the API responses they received
(camelCase keys, ISO timestamps). EntityRepository maps such a document onto
its SQLModel table: keys are converted to snake_case, unknown keys are
dropped, values are validated/coerced by the model, and aware datetimes are
normalized to naive UTC so they compare and persist like server-side ones.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type

from sqlmodel import Session, SQLModel

from budgetsync.models.sync import utcnow

logger = logging.getLogger(__name__)

# Ownership is decided by the queue item, never by the payload
_PROTECTED_FIELDS = {"user_id"}

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def to_snake(key: str) -> str:
    """'totalIncome' → 'total_income', 'limitGTQ' → 'limit_gtq'."""
    return _CAMEL_BOUNDARY.sub(r"_\1", key).lower()


def normalize_timestamp(value: Any) -> Optional[datetime]:
    """Parse a timestamp and normalize it to naive UTC.

    Accepts datetimes and ISO-8601 strings (a trailing "Z" included).
    Naive values are taken to already be UTC. Returns None for None/"".
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise ValueError(f"Not a timestamp: {value!r}")
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class EntityRepository:
    """Create/read/update/delete for one entity table, keyed by string id."""

    def __init__(self, engine, model: Type[SQLModel]):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            model: SQLModel table class with a string ``id`` primary key.
        """
        self.engine = engine
        self.model = model

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get(self, entity_id: str) -> Optional[SQLModel]:
        with Session(self.engine) as s:
            return s.get(self.model, entity_id)

    def exists(self, entity_id: str) -> bool:
        return self.get(entity_id) is not None

    def read_updated_at(self, entity_id: str) -> Optional[datetime]:
        entity = self.get(entity_id)
        return entity.updated_at if entity is not None else None

    # ─── Writes ───────────────────────────────────────────────────────────────

    def create(self, entity_id: str, data: Dict[str, Any], user_id: Optional[str] = None) -> SQLModel:
        """Insert a new row. The primary key always comes from ``entity_id``."""
        fields = self.fields_from_document(data)
        fields["id"] = entity_id
        if user_id is not None:
            fields["user_id"] = user_id
        entity = self._normalize(self.model.model_validate(fields))
        with Session(self.engine) as s:
            s.add(entity)
            s.commit()
            s.refresh(entity)
        return entity

    def update(self, entity_id: str, data: Dict[str, Any]) -> Optional[SQLModel]:
        """Apply the document's fields to an existing row.

        Returns None if the row does not exist. ``updated_at`` is taken from
        the document when present, otherwise stamped with the current time.
        """
        fields = self.fields_from_document(data)
        fields.pop("id", None)
        with Session(self.engine) as s:
            existing = s.get(self.model, entity_id)
            if existing is None:
                return None
            merged = existing.model_dump()
            merged.update(fields)
            validated = self._normalize(self.model.model_validate(merged))
            for key in fields:
                setattr(existing, key, getattr(validated, key))
            if "updated_at" not in fields:
                existing.updated_at = utcnow()
            s.add(existing)
            s.commit()
            s.refresh(existing)
            return existing

    def upsert(self, entity_id: str, data: Dict[str, Any], user_id: Optional[str] = None) -> SQLModel:
        """Update the row if it exists, create it otherwise. No checks."""
        updated = self.update(entity_id, data)
        if updated is not None:
            return updated
        return self.create(entity_id, data, user_id=user_id)

    def delete(self, entity_id: str) -> bool:
        """Delete by id. Returns False if there was nothing to delete."""
        with Session(self.engine) as s:
            existing = s.get(self.model, entity_id)
            if existing is None:
                return False
            s.delete(existing)
            s.commit()
            return True

    # ─── Helpers ──────────────────────────────────────────────────────────────

    def fields_from_document(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Map a client document onto this table's column names."""
        fields: Dict[str, Any] = {}
        known = self.model.model_fields
        for key, value in (data or {}).items():
            name = to_snake(key)
            if name not in known or name in _PROTECTED_FIELDS:
                logger.debug("Ignoring %s.%s from sync payload", self.model.__name__, key)
                continue
            fields[name] = value
        return fields

    def _normalize(self, entity: SQLModel) -> SQLModel:
        for name in self.model.model_fields:
            value = getattr(entity, name)
            if isinstance(value, datetime) and value.tzinfo is not None:
                setattr(entity, name, normalize_timestamp(value))
        return entity
