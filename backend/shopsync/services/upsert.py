"""Dialect-aware INSERT ... ON CONFLICT DO UPDATE helper.

WHAT: One statement that inserts a row or overwrites the conflicting one
WHY: Concurrent or redelivered events for the same (tenant, external id) must
     converge on a single row without a read-then-write race. PostgreSQL in
     production, SQLite in tests; both support ON CONFLICT.
"""

from datetime import datetime
from typing import Any, Dict, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session


def dialect_insert(db: Session, model):
    """Return the INSERT construct for the session's dialect."""
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def upsert_row(
    db: Session,
    model,
    values: Dict[str, Any],
    index_elements: Sequence[str],
):
    """Insert `values` or overwrite every non-key column on conflict.

    Args:
        db: Database session (not committed here)
        model: ORM model class
        values: Column values for the row
        index_elements: Columns of the unique constraint to conflict on

    Returns:
        The ORM instance, refreshed from the store
    """
    values = dict(values)
    values.setdefault("updated_at", datetime.utcnow())

    stmt = dialect_insert(db, model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(index_elements),
        set_={
            column: getattr(stmt.excluded, column)
            for column in values
            if column not in index_elements
        },
    )
    db.execute(stmt)

    filters = [getattr(model, column) == values[column] for column in index_elements]
    return db.query(model).filter(*filters).populate_existing().one()
