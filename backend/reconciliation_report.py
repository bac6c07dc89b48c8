"""
Reconciliation Report Builder

Projects a reconciliation plan into the change log returned to callers and
written to the logs. Side-effect free.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from reconciliation_models import (
    ActionKind, CATEGORY_ORDER, RepairAction, Snapshot,
)


@dataclass(frozen=True)
class ChangeRecord:
    category: str
    action: str
    position_id: Optional[str]
    position_name: Optional[str]
    allocation_id: Optional[str]
    detail: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "action": self.action,
            "positionId": self.position_id,
            "positionName": self.position_name,
            "allocationId": self.allocation_id,
            "details": self.detail,
        }


@dataclass
class ReconciliationReport:
    scope: List[str]
    total_positions: int
    total_allocations: int
    changes: List[ChangeRecord] = field(default_factory=list)
    category_counts: Dict[str, int] = field(default_factory=dict)
    applied: bool = False
    allocations_deleted: int = 0
    flags_updated: int = 0

    @property
    def changes_count(self) -> int:
        return len(self.changes)

    def to_dict(self) -> Dict[str, Any]:
        """Response shape of the validate endpoints."""
        return {
            "success": True,
            "scope": self.scope,
            "totalPositions": self.total_positions,
            "totalAllocations": self.total_allocations,
            "changesCount": self.changes_count,
            "changes": [c.to_dict() for c in self.changes],
            "categoryCounts": self.category_counts,
            "applied": self.applied,
            "allocationsDeleted": self.allocations_deleted,
            "flagsUpdated": self.flags_updated,
        }


def _change_record(action: RepairAction) -> ChangeRecord:
    if action.kind == ActionKind.DELETE_ALLOCATION:
        label = "delete_allocation"
    else:
        label = f"set_allocated_{action.new_flag.value.lower()}"

    return ChangeRecord(
        category=action.category.value,
        action=label,
        position_id=action.position_id,
        position_name=action.position_name,
        allocation_id=action.allocation_id,
        detail=action.detail,
    )


def build_report(
    snapshot: Snapshot,
    actions: Sequence[RepairAction],
    applied: bool = False,
    allocations_deleted: int = 0,
    flags_updated: int = 0,
) -> ReconciliationReport:
    """Build the report for one run, preserving detection order."""
    counts = {category.value: 0 for category in CATEGORY_ORDER}
    for action in actions:
        counts[action.category.value] += 1

    return ReconciliationReport(
        scope=snapshot.month_filter.describe(),
        total_positions=len(snapshot.positions),
        total_allocations=len(snapshot.allocations),
        changes=[_change_record(a) for a in actions],
        category_counts=counts,
        applied=applied,
        allocations_deleted=allocations_deleted,
        flags_updated=flags_updated,
    )
