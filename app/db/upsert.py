"""Dialect-aware INSERT constructs supporting ON CONFLICT."""

from typing import Callable, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def dialect_name(db: AsyncSession) -> str:
    return db.get_bind().dialect.name


def upsert_insert(db: AsyncSession, model):
    """
    Return an `insert()` for `model` exposing `on_conflict_do_nothing` /
    `on_conflict_do_update`, or None when the bound dialect has neither.
    """
    factory: Optional[Callable] = _INSERTS.get(dialect_name(db))
    if factory is None:
        return None
    return factory(model)
