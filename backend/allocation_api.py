"""
Allocation API

Create and delete allocations through the transactional write path.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from allocation_service import (
    AllocationConflictError, AllocationNotFoundError, InvalidReferenceError,
    create_allocation, delete_allocation,
)
from database import get_db

router = APIRouter(
    prefix="/allocations",
    tags=["allocations"]
)


class AllocationCreate(BaseModel):
    project_id: str = Field(alias="projectId")
    resource_id: str = Field(alias="resourceId")
    position_id: str = Field(alias="positionId")
    allocation_mode: Optional[str] = Field(default=None, alias="allocationMode")
    loe: Optional[Decimal] = None

    class Config:
        populate_by_name = True


class AllocationResponse(BaseModel):
    id: str
    project_id: str = Field(alias="projectId")
    resource_id: str = Field(alias="resourceId")
    position_id: Optional[str] = Field(default=None, alias="positionId")
    month_year: date = Field(alias="monthYear")
    allocation_mode: Optional[str] = Field(default=None, alias="allocationMode")
    loe: Optional[Decimal] = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    class Config:
        from_attributes = True
        populate_by_name = True


@router.post("", response_model=AllocationResponse, response_model_by_alias=True, status_code=201)
def post_allocation(payload: AllocationCreate, db: Session = Depends(get_db)):
    """Allocate a resource to a position and mark the position allocated."""
    try:
        allocation = create_allocation(
            db,
            project_id=payload.project_id,
            resource_id=payload.resource_id,
            position_id=payload.position_id,
            allocation_mode=payload.allocation_mode,
            loe=payload.loe,
        )
    except InvalidReferenceError as e:
        raise HTTPException(status_code=400, detail={"error": "Invalid reference data", "details": e.details})
    except AllocationConflictError as e:
        raise HTTPException(status_code=409, detail={"error": "Position already allocated", "details": e.details})
    return AllocationResponse.model_validate(allocation)


@router.delete("/{allocation_id}")
def remove_allocation(allocation_id: str, db: Session = Depends(get_db)):
    """Delete an allocation and update its position."""
    try:
        delete_allocation(db, allocation_id)
    except AllocationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "message": "Allocation deleted and position updated"}
