"""
Repair Executor

Applies a reconciliation plan inside the caller's transaction.

Allocation deletes run first, one batch per category; flag updates run after
all deletes. Every statement is guarded: deletes must remove exactly the rows
planned and flag updates only touch positions whose flag still holds the
value the plan was computed from. Any shortfall means another writer got in
between snapshot and repair, and the whole run must roll back.

The executor never commits or rolls back itself.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
from reconciliation_models import (
    ActionKind, CATEGORY_ORDER, ConcurrentModification, DefectCategory,
    PartialFailure, RepairAction, RepairResult,
)
from snapshot_loader import chunked

logger = logging.getLogger(__name__)

# PostgreSQL serialization_failure / deadlock_detected
SERIALIZATION_SQLSTATES = {"40001", "40P01"}


def is_serialization_failure(error: SQLAlchemyError) -> bool:
    """True when the database refused the transaction because of a concurrent writer."""
    if not isinstance(error, DBAPIError) or error.orig is None:
        return False
    sqlstate = getattr(error.orig, "pgcode", None) or getattr(error.orig, "sqlstate", None)
    if sqlstate in SERIALIZATION_SQLSTATES:
        return True
    return "database is locked" in str(error.orig)


class RepairExecutor:
    """
    Executes RepairActions against the store.
    """

    def __init__(self, db: Session):
        self.db = db

    def apply(self, actions: Sequence[RepairAction]) -> RepairResult:
        """
        Apply the plan. Raises ConcurrentModification or PartialFailure; the
        caller must roll back on either.
        """
        result = RepairResult()
        if not actions:
            return result

        deletes: Dict[DefectCategory, List[str]] = defaultdict(list)
        flag_updates: Dict[Tuple[Optional[str], str], List[RepairAction]] = defaultdict(list)

        for action in actions:
            if action.kind == ActionKind.DELETE_ALLOCATION:
                deletes[action.category].append(action.allocation_id)
            elif action.kind == ActionKind.SET_FLAG:
                flag_updates[(action.expected_flag, action.new_flag.value)].append(action)

        try:
            for category in CATEGORY_ORDER:
                if deletes.get(category):
                    result.allocations_deleted += self._delete_allocations(category, deletes[category])

            for (expected, new_flag), group in flag_updates.items():
                result.flags_updated += self._update_flags(expected, new_flag, group)
        except ConcurrentModification:
            raise
        except SQLAlchemyError as e:
            if is_serialization_failure(e):
                raise ConcurrentModification(
                    "Another writer changed positions or allocations during repair"
                ) from e
            logger.error(f"Repair statement failed: {e}")
            raise PartialFailure("Repair failed; no changes were kept") from e

        return result

    def _delete_allocations(self, category: DefectCategory, allocation_ids: List[str]) -> int:
        deleted = 0
        for chunk in chunked(sorted(set(allocation_ids))):
            count = self.db.query(models.Allocation).filter(
                models.Allocation.id.in_(chunk)
            ).delete(synchronize_session=False)
            if count != len(chunk):
                raise ConcurrentModification(
                    f"Expected to delete {len(chunk)} {category.value} allocations, "
                    f"store deleted {count}"
                )
            deleted += count

        logger.debug(f"Deleted {deleted} {category.value} allocations: {sorted(allocation_ids)}")
        return deleted

    def _update_flags(self, expected: Optional[str], new_flag: str, group: List[RepairAction]) -> int:
        position_ids = sorted({a.position_id for a in group})
        updated = 0
        for chunk in chunked(position_ids):
            query = self.db.query(models.Position).filter(models.Position.id.in_(chunk))
            if expected is None:
                query = query.filter(models.Position.allocated.is_(None))
            else:
                query = query.filter(models.Position.allocated == expected)

            count = query.update({models.Position.allocated: new_flag}, synchronize_session=False)
            if count != len(chunk):
                raise ConcurrentModification(
                    f"Expected to set Allocated={new_flag} on {len(chunk)} positions, "
                    f"store updated {count}"
                )
            updated += count

        logger.debug(f"Set Allocated={new_flag} (was {expected}) on positions {position_ids}")
        return updated
