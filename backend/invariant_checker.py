"""
Invariant Checker

Classifies a snapshot against the position/allocation invariant:

    Position.allocated == "Yes"  <=>  exactly one allocation references the
    position and that allocation belongs to the position's project.

Categories are evaluated in a fixed order, each one removing allocations
from later steps' consideration:
1. Mismatched: allocation project differs from its position's project
2. Duplicate: a position still has more than one allocation
3. Orphaned reference: the referenced position does not exist
4. Flag out of sync: stored flag disagrees with the surviving link count

Pure function of the snapshot. Rows are visited in id order so the plan does
not depend on the order the store returned them in.
"""

from collections import defaultdict
from typing import Dict, List, Set

from models import AllocatedFlag
from reconciliation_models import (
    ActionKind, AllocationRow, DefectCategory, PositionRow, RepairAction,
    Snapshot,
)


def _delete(category: DefectCategory, allocation: AllocationRow, detail: str) -> RepairAction:
    return RepairAction(
        category=category,
        kind=ActionKind.DELETE_ALLOCATION,
        position_id=allocation.position_id,
        position_name=allocation.position_name,
        allocation_id=allocation.id,
        detail=detail,
    )


def _set_flag(
    category: DefectCategory,
    position: PositionRow,
    new_flag: AllocatedFlag,
    detail: str,
) -> RepairAction:
    return RepairAction(
        category=category,
        kind=ActionKind.SET_FLAG,
        position_id=position.id,
        position_name=position.position_name,
        expected_flag=position.allocated,
        new_flag=new_flag,
        detail=detail,
    )


def check_invariants(snapshot: Snapshot) -> List[RepairAction]:
    """
    Plan the repairs that restore the invariant for every row in the snapshot.

    Returns the actions in detection order. An empty list means the snapshot
    is already consistent.
    """
    positions: Dict[str, PositionRow] = {
        p.id: p for p in sorted(snapshot.positions, key=lambda p: p.id)
    }
    allocations = sorted(snapshot.allocations, key=lambda a: a.id)

    actions: List[RepairAction] = []
    removed: Set[str] = set()

    # 1. Mismatched
    for allocation in allocations:
        if not allocation.position_exists:
            continue
        if allocation.project_id != allocation.position_project_id:
            actions.append(_delete(
                DefectCategory.MISMATCHED,
                allocation,
                f"Deleted allocation {allocation.id}: project {allocation.project_id} "
                f"does not match position project {allocation.position_project_id}",
            ))
            removed.add(allocation.id)

    # 2. Duplicate
    links: Dict[str, List[AllocationRow]] = defaultdict(list)
    for allocation in allocations:
        if allocation.id in removed or not allocation.position_exists:
            continue
        links[allocation.position_id].append(allocation)

    settled: Set[str] = set()
    for position_id in sorted(links):
        referencing = links[position_id]
        if len(referencing) < 2:
            continue

        # No way to tell which duplicate is authoritative: clear them all
        for allocation in referencing:
            actions.append(_delete(
                DefectCategory.DUPLICATE,
                allocation,
                f"Deleted allocation {allocation.id}: position has "
                f"{len(referencing)} allocations",
            ))
            removed.add(allocation.id)
        links[position_id] = []

        position = positions.get(position_id)
        if position is not None:
            settled.add(position_id)
            if position.allocated != AllocatedFlag.NO.value:
                actions.append(_set_flag(
                    DefectCategory.DUPLICATE,
                    position,
                    AllocatedFlag.NO,
                    f"Set Allocated to No after removing {len(referencing)} duplicate allocations",
                ))

    # 3. Orphaned reference
    for allocation in allocations:
        if allocation.position_exists or allocation.id in removed:
            continue
        actions.append(_delete(
            DefectCategory.ORPHANED_REFERENCE,
            allocation,
            f"Deleted allocation {allocation.id}: position "
            f"{allocation.position_id or '(none)'} does not exist",
        ))
        removed.add(allocation.id)

    # 4. Flag out of sync, against the post-deletion state
    for position_id, position in positions.items():
        if position_id in settled:
            continue
        surviving = len(links.get(position_id, []))

        if surviving == 1 and position.allocated != AllocatedFlag.YES.value:
            actions.append(_set_flag(
                DefectCategory.FLAG_OUT_OF_SYNC,
                position,
                AllocatedFlag.YES,
                f"Set Allocated to Yes: allocation {links[position_id][0].id} exists "
                f"but flag was {position.allocated}",
            ))
        elif surviving == 0 and position.allocated != AllocatedFlag.NO.value:
            actions.append(_set_flag(
                DefectCategory.FLAG_OUT_OF_SYNC,
                position,
                AllocatedFlag.NO,
                f"Set Allocated to No: no allocation exists but flag was {position.allocated}",
            ))

    return actions
