"""
Snapshot Loader

Reads the positions and allocations a reconciliation run will judge.

For a bounded run the snapshot is closed under references:
  - positions in the requested months, plus any position referenced by an
    in-range allocation
  - allocations in the requested months, plus every allocation referencing
    one of those positions
so link counts are always complete for every position in the snapshot.
"""

import logging
import re
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence

from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta
from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from reconciliation_models import (
    AllocationRow, InvalidArgument, MonthFilter, PositionRow, Snapshot,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)

# Keeps IN (...) lists below SQLite's bound-parameter limit
ID_CHUNK_SIZE = 500

# Year and month first; isoparse alone would also accept "2025" or "2025-W05"
MONTH_VALUE_PATTERN = re.compile(r"^\d{4}-\d{2}(-\d{2})?([T ].*)?$")


def parse_month_filter(values: Optional[Any]) -> MonthFilter:
    """
    Build a MonthFilter from request strings.

    Accepts "YYYY-MM-DD", "YYYY-MM" or full ISO datetimes; only the year and
    month are used. An empty or missing list is rejected, since an unbounded
    run must be asked for with MonthFilter.all_months().
    """
    if values is not None and not isinstance(values, (list, tuple)):
        raise InvalidArgument("monthYears must be a list of months")
    if not values:
        raise InvalidArgument("monthYears must be a non-empty list of months")

    months = []
    for value in values:
        if not isinstance(value, str) or not MONTH_VALUE_PATTERN.match(value.strip()):
            raise InvalidArgument(f"Invalid month value: {value!r}")
        try:
            parsed = isoparse(value.strip())
        except (ValueError, OverflowError) as e:
            raise InvalidArgument(f"Invalid month value: {value!r}") from e
        months.append(parsed.date() if isinstance(parsed, datetime) else parsed)

    return MonthFilter.of(months)


def _month_condition(column, month_filter: MonthFilter):
    return or_(*[
        and_(column >= month, column < month + relativedelta(months=1))
        for month in sorted(month_filter.months)
    ])


def chunked(ids: Sequence[str]) -> Iterable[List[str]]:
    for i in range(0, len(ids), ID_CHUNK_SIZE):
        yield list(ids[i:i + ID_CHUNK_SIZE])


def _position_row(p: models.Position) -> PositionRow:
    return PositionRow(
        id=p.id,
        project_id=p.project_id,
        position_name=p.position_name,
        month_year=p.month_year,
        allocated=p.allocated,
    )


def _allocation_query(db: Session):
    # LEFT JOIN so allocations whose position is gone are still returned
    return db.query(
        models.Allocation.id,
        models.Allocation.project_id,
        models.Allocation.resource_id,
        models.Allocation.position_id,
        models.Allocation.month_year,
        models.Position.id.label("joined_position_id"),
        models.Position.project_id.label("position_project_id"),
        models.Position.position_name.label("position_name"),
    ).outerjoin(
        models.Position, models.Position.id == models.Allocation.position_id
    )


def _allocation_row(row) -> AllocationRow:
    return AllocationRow(
        id=row.id,
        project_id=row.project_id,
        resource_id=row.resource_id,
        position_id=row.position_id,
        month_year=row.month_year,
        position_exists=row.joined_position_id is not None,
        position_project_id=row.position_project_id,
        position_name=row.position_name,
    )


def load_snapshot(db: Session, month_filter: MonthFilter) -> Snapshot:
    """
    Load positions and allocations for the given scope.

    Read-only. Any store error is raised as StoreUnavailable.
    """
    if month_filter is None:
        raise InvalidArgument("A month filter is required")
    if not month_filter.unbounded and not month_filter.months:
        raise InvalidArgument("Month filter must contain at least one month")

    try:
        if month_filter.unbounded:
            positions = db.query(models.Position).all()
            allocations = _allocation_query(db).all()
        else:
            positions, allocations = _load_bounded(db, month_filter)
    except SQLAlchemyError as e:
        logger.error(f"Snapshot load failed for scope {month_filter.describe()}: {e}")
        raise StoreUnavailable("Could not read positions and allocations") from e

    snapshot = Snapshot(
        month_filter=month_filter,
        positions=sorted((_position_row(p) for p in positions), key=lambda p: p.id),
        allocations=sorted((_allocation_row(a) for a in allocations), key=lambda a: a.id),
    )
    logger.info(
        f"Loaded snapshot for {month_filter.describe()}: "
        f"{len(snapshot.positions)} positions, {len(snapshot.allocations)} allocations"
    )
    return snapshot


def _load_bounded(db: Session, month_filter: MonthFilter):
    positions = {
        p.id: p for p in db.query(models.Position).filter(
            _month_condition(models.Position.month_year, month_filter)
        ).all()
    }
    allocations = {
        a.id: a for a in _allocation_query(db).filter(
            _month_condition(models.Allocation.month_year, month_filter)
        ).all()
    }

    # Positions outside the window that in-range allocations point at
    referenced = sorted({
        a.joined_position_id for a in allocations.values()
        if a.joined_position_id is not None and a.joined_position_id not in positions
    })
    for chunk in chunked(referenced):
        for p in db.query(models.Position).filter(models.Position.id.in_(chunk)).all():
            positions[p.id] = p

    # Every allocation of every position in scope, whatever its month
    for chunk in chunked(sorted(positions)):
        for a in _allocation_query(db).filter(models.Allocation.position_id.in_(chunk)).all():
            allocations.setdefault(a.id, a)

    return list(positions.values()), list(allocations.values())
