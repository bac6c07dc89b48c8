"""
Position / Allocation Reconciler

Orchestrates one reconciliation run:

    load snapshot -> check invariants -> repair (if needed) -> report

The read and every repair write share a single transaction. Either the whole
plan commits or nothing does. Runs are serialized: a process-wide lock, and on
PostgreSQL a transaction-scoped advisory lock under SERIALIZABLE isolation so
that runs in other processes and racing allocation writes cannot interleave
with a repair.
"""

import logging
import time
from typing import Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session

from database import ALLOCATION_LOCK_KEY, RECONCILE_TIMEOUT_SECONDS, allocation_lock
from invariant_checker import check_invariants
from reconciliation_models import (
    ConcurrentModification, InvalidArgument, MonthFilter, PartialFailure,
    ReconcileTimeout, ReconciliationError, RepairResult, StoreUnavailable,
)
from reconciliation_report import ReconciliationReport, build_report
from repair_executor import RepairExecutor, is_serialization_failure
from snapshot_loader import load_snapshot, parse_month_filter

logger = logging.getLogger(__name__)

# PostgreSQL query_canceled, raised when statement_timeout fires
QUERY_CANCELED_SQLSTATE = "57014"


def _sqlstate(error: SQLAlchemyError) -> Optional[str]:
    if not isinstance(error, DBAPIError) or error.orig is None:
        return None
    return getattr(error.orig, "pgcode", None) or getattr(error.orig, "sqlstate", None)


class Reconciler:
    """
    Detects and repairs drift between Position.allocated and the allocations
    referencing each position.
    """

    def __init__(self, db: Session, timeout_seconds: Optional[float] = None):
        self.db = db
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else RECONCILE_TIMEOUT_SECONDS

    def reconcile(
        self,
        month_filter: MonthFilter,
        timeout_seconds: Optional[float] = None,
    ) -> ReconciliationReport:
        """
        Run one reconciliation over the given scope.

        Args:
            month_filter: explicit months, or MonthFilter.all_months()
            timeout_seconds: overrides the configured deadline for this run

        Returns:
            ReconciliationReport of the committed changes

        Raises:
            InvalidArgument, StoreUnavailable, PartialFailure,
            ConcurrentModification, ReconcileTimeout. No changes are kept
            when any of these is raised.
        """
        if month_filter is None:
            raise InvalidArgument("A month filter is required; use MonthFilter.all_months() for every month")

        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        if timeout is not None and timeout <= 0:
            raise InvalidArgument("timeout_seconds must be positive")
        deadline = time.monotonic() + timeout if timeout is not None else None

        acquired = allocation_lock.acquire(timeout=timeout) if timeout is not None else allocation_lock.acquire()
        if not acquired:
            raise ReconcileTimeout("Timed out waiting for another reconciliation to finish")

        scope = month_filter.describe()
        start_time = time.time()
        logger.info(f"Reconciliation started for {scope}")

        try:
            self._begin(deadline)

            snapshot = load_snapshot(self.db, month_filter)
            self._check_deadline(deadline, "snapshot load")

            actions = check_invariants(snapshot)
            self._check_deadline(deadline, "invariant check")

            result = RepairResult()
            if actions:
                result = RepairExecutor(self.db).apply(actions)

            self._check_deadline(deadline, "commit")
            self.db.commit()
        except ReconciliationError as e:
            self.db.rollback()
            logger.warning(f"Reconciliation for {scope} rolled back ({e.code}): {e}")
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Reconciliation for {scope} failed at commit: {e}")
            if is_serialization_failure(e):
                raise ConcurrentModification("Another writer changed positions or allocations") from e
            if _sqlstate(e) == QUERY_CANCELED_SQLSTATE:
                raise ReconcileTimeout("Reconciliation exceeded its deadline") from e
            raise PartialFailure("Reconciliation could not be committed") from e
        except Exception:
            self.db.rollback()
            logger.exception(f"Reconciliation for {scope} failed")
            raise
        finally:
            allocation_lock.release()

        report = build_report(
            snapshot,
            actions,
            applied=bool(actions),
            allocations_deleted=result.allocations_deleted,
            flags_updated=result.flags_updated,
        )

        execution_time_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Reconciliation for {scope} committed {report.changes_count} changes "
            f"({report.category_counts}) over {report.total_positions} positions / "
            f"{report.total_allocations} allocations in {execution_time_ms:.0f}ms"
        )
        for change in report.changes:
            logger.debug(f"[{change.category}] {change.position_id} {change.detail}")

        return report

    def _begin(self, deadline: Optional[float]):
        """Open the run's transaction and take the PostgreSQL locks."""
        try:
            if self.db.in_transaction():
                conn = self.db.connection()
            else:
                conn = self.db.connection(execution_options={"isolation_level": "SERIALIZABLE"})

            if conn.dialect.name != "postgresql":
                return

            if deadline is not None:
                remaining_ms = max(1, int((deadline - time.monotonic()) * 1000))
                conn.execute(text(f"SET LOCAL statement_timeout = {remaining_ms}"))
            conn.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": ALLOCATION_LOCK_KEY})
        except SQLAlchemyError as e:
            if _sqlstate(e) == QUERY_CANCELED_SQLSTATE:
                raise ReconcileTimeout("Timed out waiting for the reconciliation lock") from e
            raise StoreUnavailable("Could not open the reconciliation transaction") from e

    @staticmethod
    def _check_deadline(deadline: Optional[float], stage: str):
        if deadline is not None and time.monotonic() > deadline:
            raise ReconcileTimeout(f"Reconciliation deadline passed after {stage}")


def reconcile_months(
    db: Session,
    month_years: Optional[Sequence[str]] = None,
    all_months: bool = False,
    timeout_seconds: Optional[float] = None,
) -> ReconciliationReport:
    """
    Entry point used by the API: build the scope from request values and run.

    An unbounded run happens only when all_months is set; otherwise
    month_years must name at least one month.
    """
    if all_months and month_years:
        raise InvalidArgument("Pass either monthYears or allMonths, not both")

    month_filter = MonthFilter.all_months() if all_months else parse_month_filter(month_years)
    return Reconciler(db).reconcile(month_filter, timeout_seconds=timeout_seconds)
