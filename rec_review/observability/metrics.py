"""
Metrics collection for the review lifecycle.

This module provides LifecycleMetrics, a dataclass that tracks what the
service did during one process lifetime (or one CLI invocation):
- Protocols created and status transitions made
- Decisions recorded per collection and decisions superseded
- Sweep results (expired and archived protocols)
- Errors by stable reason code

Design decisions:
- One metrics object per service instance
- Defaultdict used for automatic initialization of counters
- Transition tracking uses tuple keys (from_status, to_status)
- Serializable to_dict() for reports and logs
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class LifecycleMetrics:
    """
    Counters for one service instance.

    Status changes, decisions and errors are counted as they happen;
    ``status_counts`` is a snapshot filled in by whoever reports.
    """
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    protocols_created: int = 0
    status_changes: int = 0
    decisions_superseded: int = 0
    expired: int = 0
    archived: int = 0
    errors: int = 0

    # Current status distribution
    status_counts: Dict[str, int] = field(default_factory=dict)

    # Key: (from_status, to_status), Value: count
    transitions: Dict[tuple, int] = field(default_factory=lambda: defaultdict(int))

    # Key: collection ("accepted" / "approved"), Value: count
    decisions_recorded: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    # Key: error code (e.g., "INVALID_TRANSITION"), Value: count
    errors_by_code: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_transition(self, from_status: Optional[str], to_status: str):
        """
        Record a status transition.

        Only counts as a change if from_status != to_status.

        Args:
            from_status: Previous status (None for a new protocol)
            to_status: Status after the write
        """
        from_label = _label(from_status) or "new"
        to_label = _label(to_status)
        if from_label != to_label:
            self.transitions[(from_label, to_label)] += 1
            self.status_changes += 1

    def record_decision(self, collection: str, superseded: int = 0):
        self.decisions_recorded[_label(collection)] += 1
        self.decisions_superseded += superseded

    def record_error(self, code: str):
        self.errors += 1
        self.errors_by_code[code] += 1

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert metrics to a dictionary for JSON serialization.

        Transition keys are converted from tuples to strings.
        """
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "protocols_created": self.protocols_created,
            "status_changes": self.status_changes,
            "decisions_superseded": self.decisions_superseded,
            "expired": self.expired,
            "archived": self.archived,
            "errors": self.errors,
            "status_counts": dict(self.status_counts),
            "transitions": {f"{k[0]}->{k[1]}": v for k, v in self.transitions.items()},
            "decisions_recorded": dict(self.decisions_recorded),
            "errors_by_code": dict(self.errors_by_code),
        }


def _label(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value.value if hasattr(value, "value") else str(value)
