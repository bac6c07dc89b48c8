"""
Allocation Service

The ordinary allocation write path. Creating an allocation marks its position
allocated and deleting one clears the flag, each in the same transaction as
the row change so the two cannot drift apart here.

Writes take the same lock as reconciliation runs, so a run never plans a flag
change against a position that a create or delete is about to touch.
"""

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

import models
from database import ALLOCATION_LOCK_KEY, allocation_lock

logger = logging.getLogger(__name__)


class AllocationNotFoundError(Exception):
    """Raised when the allocation to delete does not exist"""
    pass


class AllocationConflictError(Exception):
    """Raised when the position already has an allocation"""

    def __init__(self, position_id: str, allocation_id: str):
        self.details = {"positionId": position_id, "existingAllocationId": allocation_id}
        super().__init__(f"Position {position_id} is already allocated ({allocation_id})")


class InvalidReferenceError(ValueError):
    """Raised when a project, resource or position reference does not resolve"""

    def __init__(
        self,
        project_found: bool,
        resource_found: bool,
        position_found: bool,
        project_matches_position: bool = True,
    ):
        self.details = {
            "projectFound": project_found,
            "resourceFound": resource_found,
            "positionFound": position_found,
            "projectMatchesPosition": project_matches_position,
        }
        super().__init__(f"Invalid reference data: {self.details}")


@contextmanager
def _allocation_write(db: Session):
    """Hold the allocation lock until the write commits or rolls back."""
    allocation_lock.acquire()
    try:
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": ALLOCATION_LOCK_KEY})
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        allocation_lock.release()


def create_allocation(
    db: Session,
    project_id: str,
    resource_id: str,
    position_id: str,
    allocation_mode: Optional[str] = None,
    loe: Optional[Decimal] = None,
) -> models.Allocation:
    """
    Allocate a resource to a position.

    The allocation takes its month from the position, and its mode from the
    position (or the project) when not given. The project must be the
    position's own project, and a position holds at most one allocation.
    """
    with _allocation_write(db):
        project = db.get(models.Project, project_id)
        resource = db.get(models.Resource, resource_id)
        position = db.get(models.Position, position_id)

        if project is None or resource is None or position is None:
            raise InvalidReferenceError(project is not None, resource is not None, position is not None)
        if position.project_id != project.id:
            raise InvalidReferenceError(True, True, True, project_matches_position=False)

        existing = db.query(models.Allocation.id).filter(
            models.Allocation.position_id == position.id,
            models.Allocation.project_id == position.project_id,
        ).first()
        if existing is not None:
            raise AllocationConflictError(position.id, existing.id)

        allocation = models.Allocation(
            project_id=project.id,
            resource_id=resource.id,
            position_id=position.id,
            month_year=position.month_year,
            allocation_mode=allocation_mode or position.allocation_mode or project.allocation_mode,
            loe=loe if loe is not None else position.loe,
        )
        db.add(allocation)
        position.allocated = models.AllocatedFlag.YES.value

    db.refresh(allocation)
    logger.info(f"Allocated resource {resource.id} to position {position.id} ({allocation.id})")
    return allocation


def delete_allocation(db: Session, allocation_id: str) -> models.Allocation:
    """
    Delete an allocation and reset its position's flag to No, unless another
    allocation of the same project still references the position.
    """
    with _allocation_write(db):
        allocation = db.get(models.Allocation, allocation_id)
        if allocation is None:
            raise AllocationNotFoundError(f"Allocation {allocation_id} not found")

        position_id = allocation.position_id
        db.delete(allocation)
        db.flush()

        position = db.get(models.Position, position_id) if position_id else None
        if position is not None:
            remaining = db.query(models.Allocation).filter(
                models.Allocation.position_id == position.id,
                models.Allocation.project_id == position.project_id,
            ).count()
            if remaining == 0:
                position.allocated = models.AllocatedFlag.NO.value

    logger.info(f"Deleted allocation {allocation_id} (position {position_id})")
    return allocation
