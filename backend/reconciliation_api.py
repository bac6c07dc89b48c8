"""
Reconciliation API

Expose the position/allocation reconciler. Both endpoints run the same core;
they differ only in how the scope is given.
"""

import logging
from typing import Any, List, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from database import get_db
from reconciler import reconcile_months
from reconciliation_models import ReconciliationError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# ROUTER
# ═══════════════════════════════════════════════════════════════════════════════

router = APIRouter(tags=["reconciliation"])


# ═══════════════════════════════════════════════════════════════════════════════
# SCHEMAS
# ═══════════════════════════════════════════════════════════════════════════════

class ValidatePositionsRequest(BaseModel):
    # Checked by parse_month_filter so bad values map to invalid_argument
    month_years: Any = Field(default_factory=list, alias="monthYears")
    timeout_seconds: Optional[float] = Field(default=None, alias="timeoutSeconds")

    class Config:
        populate_by_name = True


class ValidateAllocationsRequest(BaseModel):
    month_years: Any = Field(default=None, alias="monthYears")
    all_months: bool = Field(default=False, alias="allMonths")
    timeout_seconds: Optional[float] = Field(default=None, alias="timeoutSeconds")

    class Config:
        populate_by_name = True


class ChangeResponse(BaseModel):
    category: str
    action: str
    position_id: Optional[str] = Field(default=None, alias="positionId")
    position_name: Optional[str] = Field(default=None, alias="positionName")
    allocation_id: Optional[str] = Field(default=None, alias="allocationId")
    details: str

    class Config:
        populate_by_name = True


class ReconciliationResponse(BaseModel):
    success: bool
    scope: List[str]
    total_positions: int = Field(alias="totalPositions")
    total_allocations: int = Field(alias="totalAllocations")
    changes_count: int = Field(alias="changesCount")
    changes: List[ChangeResponse] = []
    category_counts: Dict[str, int] = Field(default_factory=dict, alias="categoryCounts")
    applied: bool = False
    allocations_deleted: int = Field(default=0, alias="allocationsDeleted")
    flags_updated: int = Field(default=0, alias="flagsUpdated")

    class Config:
        populate_by_name = True


# ═══════════════════════════════════════════════════════════════════════════════
# ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════════

def _run(
    db: Session,
    month_years: Any,
    all_months: bool,
    timeout_seconds: Optional[float],
) -> ReconciliationResponse:
    try:
        report = reconcile_months(
            db,
            month_years=month_years,
            all_months=all_months,
            timeout_seconds=timeout_seconds,
        )
    except ReconciliationError as e:
        raise HTTPException(
            status_code=e.http_status,
            detail={"error": e.code, "message": str(e), "retryable": e.retryable},
        )
    except Exception:
        logger.exception("Unexpected reconciliation failure")
        raise HTTPException(
            status_code=500,
            detail={"error": "internal_error", "message": "Reconciliation failed; no changes were made"},
        )

    return ReconciliationResponse(**report.to_dict())


@router.post(
    "/allocations/validate-positions",
    response_model=ReconciliationResponse,
    response_model_by_alias=True,
)
def validate_positions(
    request: ValidatePositionsRequest,
    db: Session = Depends(get_db)
):
    """
    Reconcile positions and allocations for the given months.

    Only the year-month part of each value is used.
    """
    return _run(db, request.month_years, False, request.timeout_seconds)


@router.post(
    "/positions/validate-allocations",
    response_model=ReconciliationResponse,
    response_model_by_alias=True,
)
def validate_allocations(
    request: Optional[ValidateAllocationsRequest] = None,
    db: Session = Depends(get_db)
):
    """
    Reconcile positions and allocations for the given months, or for every
    month when allMonths is true. A scope must always be given.
    """
    if request is None:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_argument",
                "message": "Request body must give monthYears or allMonths=true",
                "retryable": False,
            },
        )
    return _run(db, request.month_years, request.all_months, request.timeout_seconds)
