"""
Closed vocabularies shared by the lifecycle, storage and sync layers.

Values are the wire representation stored in documents; every enum is
closed, so an out-of-vocabulary value fails ``Enum(value)`` lookup and
is reported by the validator rather than persisted.
"""
from enum import Enum
from typing import Dict


class ProtocolStatus(str, Enum):
    """Protocol states, ordered by typical progression."""
    PENDING_UPLOAD = "Pending Upload"
    SUBMITTED = "Submitted"
    UNDER_REVIEW = "Under Review"
    NEEDS_REVISION = "Needs Revision"
    RESUBMITTED = "Resubmitted"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    EXEMPTED = "Exempted"
    EXPIRED = "Expired"
    ARCHIVED = "Archived"


TERMINAL_STATUSES = frozenset({
    ProtocolStatus.APPROVED,
    ProtocolStatus.REJECTED,
    ProtocolStatus.EXEMPTED,
    ProtocolStatus.EXPIRED,
    ProtocolStatus.ARCHIVED,
})

# Statuses in which a decision may be recorded.
DECISION_STATUSES = frozenset({
    ProtocolStatus.UNDER_REVIEW,
    ProtocolStatus.RESUBMITTED,
})


class ActorRole(str, Enum):
    PROPONENT = "proponent"
    REVIEWER = "reviewer"
    CHAIRPERSON = "chairperson"
    SYSTEM = "system"


class ReviewerRole(str, Enum):
    """Role of a person in the reviewer pool."""
    REVIEWER = "reviewer"
    CHAIRPERSON = "chairperson"


class DecisionCollection(str, Enum):
    """Decision set a record belongs to."""
    ACCEPTED = "accepted"  # reviewer pool
    APPROVED = "approved"  # chairperson


class Verdict(str, Enum):
    APPROVE = "approve"
    REVISE = "revise"
    REJECT = "reject"
    EXEMPT = "exempt"


REVIEWER_VERDICTS = frozenset({Verdict.APPROVE, Verdict.REVISE, Verdict.REJECT})

# Status a chairperson verdict drives the protocol into.
CHAIRPERSON_VERDICT_STATUS: Dict[Verdict, ProtocolStatus] = {
    Verdict.APPROVE: ProtocolStatus.APPROVED,
    Verdict.REJECT: ProtocolStatus.REJECTED,
    Verdict.REVISE: ProtocolStatus.NEEDS_REVISION,
    Verdict.EXEMPT: ProtocolStatus.EXEMPTED,
}

VERDICT_LABELS: Dict[Verdict, str] = {
    Verdict.APPROVE: "Approved",
    Verdict.REVISE: "Revision Required",
    Verdict.REJECT: "Disapproved",
    Verdict.EXEMPT: "Exempted from Review",
}


class AssessmentStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    RETURNED = "returned"


COMPLETED_ASSESSMENT_STATUSES = frozenset({AssessmentStatus.SUBMITTED, AssessmentStatus.APPROVED})


class AssessmentFormType(str, Enum):
    PROTOCOL_REVIEW = "Protocol Review Assessment"
    INFORMED_CONSENT = "Informed Consent Assessment"
    IACUC_PROTOCOL_REVIEW = "IACUC Protocol Review Assessment"
    EXEMPTION_CHECKLIST = "Checklist for Exemption Form Review"


def verdict_label(verdict: Verdict) -> str:
    """Human-readable label for a verdict, for decision cards and reports."""
    return VERDICT_LABELS.get(Verdict(verdict), "Unknown")
