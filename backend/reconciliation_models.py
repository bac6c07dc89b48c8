"""
Reconciliation Models

In-memory types shared by the position/allocation reconciler:
snapshot rows, repair actions and the error taxonomy.
Nothing here is persisted.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, FrozenSet
import enum

from models import AllocatedFlag


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class DefectCategory(str, enum.Enum):
    """Defect categories, declared in evaluation order."""
    MISMATCHED = "mismatched"
    DUPLICATE = "duplicate"
    ORPHANED_REFERENCE = "orphaned_reference"
    FLAG_OUT_OF_SYNC = "flag_out_of_sync"


CATEGORY_ORDER = list(DefectCategory)


class ActionKind(str, enum.Enum):
    DELETE_ALLOCATION = "delete_allocation"
    SET_FLAG = "set_flag"


# ═══════════════════════════════════════════════════════════════════════════════
# MONTH FILTER
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class MonthFilter:
    """
    Scope of a reconciliation run.

    Either an explicit, non-empty set of months (each normalized to the first
    of the month) or unbounded. Unbounded must be requested explicitly.
    """
    months: FrozenSet[date] = frozenset()
    unbounded: bool = False

    @classmethod
    def of(cls, months) -> "MonthFilter":
        normalized = frozenset(date(m.year, m.month, 1) for m in months)
        if not normalized:
            raise InvalidArgument("Month filter must contain at least one month")
        return cls(months=normalized)

    @classmethod
    def all_months(cls) -> "MonthFilter":
        return cls(unbounded=True)

    def describe(self) -> List[str]:
        if self.unbounded:
            return ["*"]
        return [m.strftime("%Y-%m") for m in sorted(self.months)]


# ═══════════════════════════════════════════════════════════════════════════════
# SNAPSHOT ROWS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PositionRow:
    id: str
    project_id: str
    position_name: Optional[str]
    month_year: Optional[date]
    allocated: str


@dataclass(frozen=True)
class AllocationRow:
    """An allocation plus what the LEFT JOIN resolved about its position."""
    id: str
    project_id: str
    resource_id: Optional[str]
    position_id: Optional[str]
    month_year: Optional[date]
    position_exists: bool
    position_project_id: Optional[str] = None
    position_name: Optional[str] = None


@dataclass
class Snapshot:
    month_filter: MonthFilter
    positions: List[PositionRow] = field(default_factory=list)
    allocations: List[AllocationRow] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# REPAIR ACTIONS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RepairAction:
    """A single planned write."""
    category: DefectCategory
    kind: ActionKind
    position_id: Optional[str]
    position_name: Optional[str]
    detail: str
    allocation_id: Optional[str] = None
    expected_flag: Optional[str] = None  # stored value the write is guarded on
    new_flag: Optional[AllocatedFlag] = None


@dataclass
class RepairResult:
    allocations_deleted: int = 0
    flags_updated: int = 0


# ═══════════════════════════════════════════════════════════════════════════════
# ERRORS
# ═══════════════════════════════════════════════════════════════════════════════

class ReconciliationError(Exception):
    """Base class for reconciliation failures. No changes were committed."""
    code = "reconciliation_error"
    http_status = 500
    retryable = False


class InvalidArgument(ReconciliationError, ValueError):
    """Empty or malformed month filter."""
    code = "invalid_argument"
    http_status = 400


class StoreUnavailable(ReconciliationError):
    """Snapshot read failed."""
    code = "store_unavailable"
    http_status = 503
    retryable = True


class PartialFailure(ReconciliationError):
    """Repair transaction failed mid-way and was rolled back."""
    code = "partial_failure"
    http_status = 500
    retryable = True


class ConcurrentModification(ReconciliationError):
    """Rows changed by another writer between snapshot and repair."""
    code = "concurrent_modification"
    http_status = 409
    retryable = True


class ReconcileTimeout(ReconciliationError):
    """Deadline expired before commit; transaction rolled back."""
    code = "timeout"
    http_status = 504
    retryable = True
