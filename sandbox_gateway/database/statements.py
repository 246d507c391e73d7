"""Dialect-aware statements shared by the engine."""
from typing import Any, Dict, Sequence, Type

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


async def insert_ignore(
    db: AsyncSession,
    model: Type[Any],
    values: Dict[str, Any],
    index_elements: Sequence[str],
) -> bool:
    """
    INSERT ... ON CONFLICT DO NOTHING.

    Returns:
        bool: True if a row was inserted, False if it already existed
    """
    dialect = db.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=list(index_elements))
    result = await db.execute(stmt)
    return bool(result.rowcount)
