"""Declarative base and column types shared by the ORM models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import DateTime, Enum
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops tzinfo on the way in; values read back are re-tagged as
    UTC so comparisons with :func:`utcnow` never mix naive and aware.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def status_enum(enum_cls: type[PyEnum]) -> Enum:
    """Store a str Enum by value in a plain VARCHAR column."""
    return Enum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class Base(DeclarativeBase):
    pass


async def insert_ignoring_conflicts(
    session: AsyncSession,
    model: type[Base],
    index_elements: list[str],
    **values: Any,
) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING.  Returns True if a row was written."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"unsupported dialect: {dialect}")
    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = await session.execute(stmt)
    return result.rowcount == 1
