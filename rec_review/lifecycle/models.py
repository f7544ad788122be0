"""
Domain entities for the review lifecycle.

Protocol is the aggregate root; decisions and assessments are owned by
it but stored as separate addressable records. All entities are frozen:
a change is a new value produced by the data access layer, never an
in-place mutation.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .statuses import (
    ActorRole,
    AssessmentFormType,
    AssessmentStatus,
    DecisionCollection,
    ProtocolStatus,
    ReviewerRole,
    Verdict,
)


@dataclass(frozen=True)
class Decision:
    """
    One participant's verdict on a protocol.

    The verdict is immutable. Only the audit metadata (is_active,
    superseded_at, superseded_by) changes when a newer decision from the
    same author, or a resubmission, supersedes it.
    """
    id: str
    protocol_id: str
    author_role: ActorRole
    author_id: str
    collection: DecisionCollection
    verdict: Verdict
    created_at: datetime
    comment: Optional[str] = None
    is_active: bool = True
    superseded_at: Optional[datetime] = None
    superseded_by: Optional[str] = None  # decision id or "resubmission"

    def superseded(self, at: datetime, by: str) -> "Decision":
        return replace(self, is_active=False, superseded_at=at, superseded_by=by)


@dataclass(frozen=True)
class Protocol:
    """A research-ethics submission under review."""
    id: str
    status: ProtocolStatus
    submitted_by: str
    created_at: datetime
    last_modified_at: datetime
    title: str = ""
    document_id: Optional[str] = None
    assigned_reviewers: Tuple[str, ...] = ()
    decisions: Tuple[Decision, ...] = ()
    deadline_at: Optional[datetime] = None
    version: int = 0

    def active_decisions(self, collection: Optional[DecisionCollection] = None) -> Tuple[Decision, ...]:
        return tuple(
            d for d in self.decisions
            if d.is_active and (collection is None or d.collection == collection)
        )


@dataclass(frozen=True)
class Reviewer:
    """A person eligible to author decisions."""
    id: str
    name: str
    role: ReviewerRole
    is_active: bool = True
    email: Optional[str] = None
    created_at: Optional[datetime] = None
    last_modified_at: Optional[datetime] = None


@dataclass(frozen=True)
class Assessment:
    """Structured scoring and feedback from one reviewer on one form."""
    id: str
    protocol_id: str
    reviewer_id: str
    form_type: AssessmentFormType
    status: AssessmentStatus
    responses: Dict[str, Any] = field(default_factory=dict)
    submitted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    last_modified_at: Optional[datetime] = None
