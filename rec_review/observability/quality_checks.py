"""
Data quality checks for the review store.

This module implements LifecycleQualityChecker, which runs SQL-based
validation checks against the ``documents`` table.

Checks implemented:
- Statuses in vocabulary: every protocol status is a known status
- One active decision per author: per (protocol, author, collection)
- Single active chairperson: at most one active chairperson registered
- No orphan decisions: every decision belongs to an existing protocol
- Stalled protocols: non-terminal protocols untouched for too long

Design decisions:
- Each check returns a QualityCheckResult with pass/fail and details
- Checks are SQL over the JSON documents, not Python loops
- Timestamps are stored in a fixed-width ISO form, so they compare
  correctly as strings
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..lifecycle.statuses import ProtocolStatus, ReviewerRole, TERMINAL_STATUSES
from ..storage.database import Database
from ..storage.mappers import format_timestamp


@dataclass
class QualityCheckResult:
    """
    Result of a single quality check.

    Attributes:
        check_name: Unique identifier for the check
        passed: True if check passed, False otherwise
        message: Human-readable summary of the result
        details: Optional dict with additional context (e.g., counts)
    """
    check_name: str
    passed: bool
    message: str
    details: Optional[Dict[str, Any]] = None


class LifecycleQualityChecker:
    """
    Runs data quality checks against the review store.

    Each check method executes a SQL query and returns a
    QualityCheckResult indicating pass/fail status.
    """

    def __init__(self, database: Database, stalled_after_days: int = 90):
        """
        Initialize quality checker.

        Args:
            database: Database with an initialized schema
            stalled_after_days: Age after which a non-terminal protocol
                counts as stalled
        """
        self.db = database
        self.stalled_after_days = stalled_after_days

    def run_all_checks(self) -> List[QualityCheckResult]:
        return [
            self.check_statuses_in_vocabulary(),
            self.check_one_active_decision_per_author(),
            self.check_single_active_chairperson(),
            self.check_no_orphan_decisions(),
            self.check_stalled_protocols(),
        ]

    def status_distribution(self) -> Dict[str, int]:
        rows = self.db.connect().execute("""
            SELECT json_extract_string(data, '$.status') AS status, count(*)
            FROM documents
            WHERE collection = 'submissions'
            GROUP BY status
        """).fetchall()
        return {row[0]: row[1] for row in rows}

    def check_statuses_in_vocabulary(self) -> QualityCheckResult:
        """Every protocol must carry a status from the closed vocabulary."""
        statuses = [s.value for s in ProtocolStatus]
        placeholders = ", ".join("?" for _ in statuses)
        result = self.db.connect().execute(f"""
            SELECT count(*) FROM documents
            WHERE collection = 'submissions'
              AND (json_extract_string(data, '$.status') IS NULL
                   OR json_extract_string(data, '$.status') NOT IN ({placeholders}))
        """, statuses).fetchone()[0]

        return QualityCheckResult(
            check_name="statuses_in_vocabulary",
            passed=result == 0,
            message=f"{result} protocols with unknown status" if result > 0 else "All protocol statuses valid",
            details={"invalid_count": result}
        )

    def check_one_active_decision_per_author(self) -> QualityCheckResult:
        """
        Superseding must leave exactly one active decision per
        (protocol, author, collection).
        """
        result = self.db.connect().execute("""
            SELECT count(*) FROM (
                SELECT json_extract_string(data, '$.protocolId') AS protocol_id,
                       json_extract_string(data, '$.authorId') AS author_id,
                       collection
                FROM documents
                WHERE collection IN ('accepted', 'approved')
                  AND json_extract_string(data, '$.isActive') = 'true'
                GROUP BY protocol_id, author_id, collection
                HAVING count(*) > 1
            )
        """).fetchone()[0]

        return QualityCheckResult(
            check_name="one_active_decision_per_author",
            passed=result == 0,
            message=f"{result} authors with several active decisions" if result > 0 else "One active decision per author",
            details={"duplicate_count": result}
        )

    def check_single_active_chairperson(self) -> QualityCheckResult:
        result = self.db.connect().execute("""
            SELECT count(*) FROM documents
            WHERE collection = 'reviewers'
              AND json_extract_string(data, '$.role') = ?
              AND json_extract_string(data, '$.isActive') = 'true'
        """, [ReviewerRole.CHAIRPERSON.value]).fetchone()[0]

        return QualityCheckResult(
            check_name="single_active_chairperson",
            passed=result <= 1,
            message=f"{result} active chairpersons" if result != 1 else "One active chairperson",
            details={"chairperson_count": result}
        )

    def check_no_orphan_decisions(self) -> QualityCheckResult:
        result = self.db.connect().execute("""
            SELECT count(*) FROM documents d
            WHERE d.collection IN ('accepted', 'approved')
              AND NOT EXISTS (
                  SELECT 1 FROM documents p
                  WHERE p.collection = 'submissions'
                    AND p.doc_id = json_extract_string(d.data, '$.protocolId')
              )
        """).fetchone()[0]

        return QualityCheckResult(
            check_name="no_orphan_decisions",
            passed=result == 0,
            message=f"{result} decisions without a protocol" if result > 0 else "All decisions belong to a protocol",
            details={"orphan_count": result}
        )

    def check_stalled_protocols(self, now: Optional[datetime] = None) -> QualityCheckResult:
        """
        Detect non-terminal protocols untouched for longer than the
        threshold. These are candidates for the expiry sweep.

        Warning threshold: 10 stalled protocols
        """
        now = now or datetime.now(timezone.utc)
        cutoff = format_timestamp(now - timedelta(days=self.stalled_after_days))
        terminal = [s.value for s in TERMINAL_STATUSES]
        placeholders = ", ".join("?" for _ in terminal)
        result = self.db.connect().execute(f"""
            SELECT count(*) FROM documents
            WHERE collection = 'submissions'
              AND json_extract_string(data, '$.status') NOT IN ({placeholders})
              AND json_extract_string(data, '$.lastModifiedAt') < ?
        """, terminal + [cutoff]).fetchone()[0]

        return QualityCheckResult(
            check_name="stalled_protocols",
            passed=result < 10,
            message=(
                f"{result} protocols stalled >{self.stalled_after_days} days"
                if result > 0 else "No stalled protocols"
            ),
            details={"stalled_count": result}
        )
