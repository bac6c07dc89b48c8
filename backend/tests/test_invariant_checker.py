"""
Invariant Checker Tests

Pure classification tests: snapshots are built in memory, no database.
"""

import random

import pytest

from conftest import JAN
from invariant_checker import check_invariants
from models import AllocatedFlag
from reconciliation_models import (
    ActionKind, AllocationRow, DefectCategory, MonthFilter, PositionRow,
    Snapshot,
)


def position(pid, project="X", allocated="No"):
    return PositionRow(id=pid, project_id=project, position_name=f"Pos {pid}", month_year=JAN, allocated=allocated)


def allocation(aid, pid, project="X", position_project="X", exists=True):
    return AllocationRow(
        id=aid,
        project_id=project,
        resource_id="R1",
        position_id=pid,
        month_year=JAN,
        position_exists=exists,
        position_project_id=position_project if exists else None,
        position_name=f"Pos {pid}" if exists else None,
    )


def snapshot(positions, allocations):
    return Snapshot(month_filter=MonthFilter.of([JAN]), positions=positions, allocations=allocations)


def deleted(actions):
    return {(a.category, a.allocation_id) for a in actions if a.kind == ActionKind.DELETE_ALLOCATION}


def flags(actions):
    return {(a.category, a.position_id, a.new_flag) for a in actions if a.kind == ActionKind.SET_FLAG}


# ═══════════════════════════════════════════════════════════════════════════════
# SCENARIOS
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.unit
class TestScenarios:

    def test_mismatch_deletes_allocation_and_clears_flag(self):
        snap = snapshot(
            [position("P1", allocated="Yes")],
            [allocation("A1", "P1", project="Y", position_project="X")],
        )
        actions = check_invariants(snap)

        assert deleted(actions) == {(DefectCategory.MISMATCHED, "A1")}
        assert flags(actions) == {(DefectCategory.FLAG_OUT_OF_SYNC, "P1", AllocatedFlag.NO)}

    def test_duplicates_are_all_deleted_and_flag_reset(self):
        snap = snapshot(
            [position("P2", allocated="Yes")],
            [allocation("A2", "P2"), allocation("A3", "P2")],
        )
        actions = check_invariants(snap)

        assert deleted(actions) == {(DefectCategory.DUPLICATE, "A2"), (DefectCategory.DUPLICATE, "A3")}
        assert flags(actions) == {(DefectCategory.DUPLICATE, "P2", AllocatedFlag.NO)}

    def test_orphan_is_deleted_without_flag_update(self):
        snap = snapshot([], [allocation("A4", "P-missing", exists=False)])
        actions = check_invariants(snap)

        assert deleted(actions) == {(DefectCategory.ORPHANED_REFERENCE, "A4")}
        assert flags(actions) == set()

    def test_understated_flag_set_to_yes(self):
        snap = snapshot([position("P3", allocated="No")], [allocation("A5", "P3")])
        actions = check_invariants(snap)

        assert deleted(actions) == set()
        assert flags(actions) == {(DefectCategory.FLAG_OUT_OF_SYNC, "P3", AllocatedFlag.YES)}

    def test_overstated_flag_set_to_no(self):
        snap = snapshot([position("P4", allocated="Yes")], [])
        actions = check_invariants(snap)

        assert flags(actions) == {(DefectCategory.FLAG_OUT_OF_SYNC, "P4", AllocatedFlag.NO)}

    def test_consistent_position_produces_no_action(self):
        snap = snapshot([position("P5", allocated="Yes")], [allocation("A6", "P5")])
        assert check_invariants(snap) == []

    def test_unallocated_position_without_links_is_consistent(self):
        assert check_invariants(snapshot([position("P6")], [])) == []


# ═══════════════════════════════════════════════════════════════════════════════
# CATEGORY INTERACTIONS
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.unit
class TestCategoryInteractions:

    def test_mismatch_removed_before_duplicate_counting(self):
        """One wrong-project link and one valid link leave the position allocated."""
        snap = snapshot(
            [position("P1", allocated="No")],
            [
                allocation("A1", "P1", project="Y", position_project="X"),
                allocation("A2", "P1"),
            ],
        )
        actions = check_invariants(snap)

        assert deleted(actions) == {(DefectCategory.MISMATCHED, "A1")}
        assert flags(actions) == {(DefectCategory.FLAG_OUT_OF_SYNC, "P1", AllocatedFlag.YES)}

    def test_duplicate_on_unallocated_position_only_deletes(self):
        snap = snapshot(
            [position("P1", allocated="No")],
            [allocation("A1", "P1"), allocation("A2", "P1"), allocation("A3", "P1")],
        )
        actions = check_invariants(snap)

        assert len(deleted(actions)) == 3
        assert flags(actions) == set()

    def test_orphan_with_null_position_reference(self):
        snap = snapshot([], [allocation("A1", None, exists=False)])
        actions = check_invariants(snap)

        assert deleted(actions) == {(DefectCategory.ORPHANED_REFERENCE, "A1")}
        assert "(none)" in actions[0].detail

    def test_actions_follow_category_order(self):
        snap = snapshot(
            [position("P1", allocated="Yes"), position("P2", allocated="Yes"), position("P3")],
            [
                allocation("A9", "P1", project="Y"),
                allocation("A2", "P2"),
                allocation("A3", "P2"),
                allocation("A1", "P-gone", exists=False),
                allocation("A4", "P3"),
            ],
        )
        categories = [a.category for a in check_invariants(snap)]

        order = [DefectCategory.MISMATCHED, DefectCategory.DUPLICATE,
                 DefectCategory.ORPHANED_REFERENCE, DefectCategory.FLAG_OUT_OF_SYNC]
        assert categories == sorted(categories, key=order.index)
        assert set(categories) == set(order)

    def test_flag_action_carries_expected_value(self):
        snap = snapshot([position("P4", allocated="Yes")], [])
        (action,) = check_invariants(snap)

        assert action.expected_flag == "Yes"
        assert action.new_flag == AllocatedFlag.NO

    def test_mismatch_against_position_outside_snapshot(self):
        """The join still knows the position's project even when the position is out of scope."""
        snap = snapshot([], [allocation("A1", "P-other-month", project="Y", position_project="X")])
        actions = check_invariants(snap)

        assert deleted(actions) == {(DefectCategory.MISMATCHED, "A1")}
        assert flags(actions) == set()


# ═══════════════════════════════════════════════════════════════════════════════
# DETERMINISM
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.unit
def test_shuffle_order_same_results():
    positions = [position(f"P{i}", allocated="Yes" if i % 2 else "No") for i in range(10)]
    allocations = [
        allocation("A0", "P0"),
        allocation("A1", "P1", project="Y"),
        allocation("A2", "P2"),
        allocation("A3", "P2"),
        allocation("A4", "P-missing", exists=False),
        allocation("A5", "P5"),
        allocation("A6", "P7"),
    ]
    baseline = check_invariants(snapshot(positions, allocations))

    rng = random.Random(42)
    for _ in range(5):
        shuffled_p = positions[:]
        shuffled_a = allocations[:]
        rng.shuffle(shuffled_p)
        rng.shuffle(shuffled_a)
        assert check_invariants(snapshot(shuffled_p, shuffled_a)) == baseline
