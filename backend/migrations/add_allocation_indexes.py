"""
Allocation / Position Indexes

Indexes backing the month-scoped reconciliation reads and the allocation
lookups by position. Safe to run repeatedly against an existing database.
"""

import logging
from typing import Dict

from sqlalchemy import text, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


# (index name, table, columns)
ALLOCATION_INDEXES = [
    ("ix_positions_project", "positions", "project_id"),
    ("ix_positions_month_year", "positions", "month_year"),
    ("ix_positions_allocated", "positions", "allocated"),
    ("ix_positions_month_year_allocated", "positions", "month_year, allocated"),
    ("ix_allocations_position", "allocations", "position_id"),
    ("ix_allocations_resource", "allocations", "resource_id"),
    ("ix_allocations_project", "allocations", "project_id"),
    ("ix_allocations_month_year", "allocations", "month_year"),
    ("ix_allocations_resource_month_year", "allocations", "resource_id, month_year"),
]


def add_allocation_indexes(engine: Engine):
    """
    Create any missing position/allocation indexes.
    """
    with engine.connect() as conn:
        for name, table, columns in ALLOCATION_INDEXES:
            try:
                conn.execute(text(f"CREATE INDEX IF NOT EXISTS {name} ON {table}({columns})"))
                conn.commit()
            except SQLAlchemyError as e:
                conn.rollback()
                logger.warning(f"Index {name} could not be created: {e}")


def verify_allocation_indexes(engine: Engine) -> Dict[str, bool]:
    """
    Verify that the indexes are in place.
    Returns a dict of index name -> present.
    """
    inspector = inspect(engine)
    present = set()
    for table in {t for _, t, _ in ALLOCATION_INDEXES}:
        present.update(ix["name"] for ix in inspector.get_indexes(table))

    return {name: name in present for name, _, _ in ALLOCATION_INDEXES}
