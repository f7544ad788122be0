"""
Mappers between the storage (wire) form and the domain form.

Wire form: camelCase JSON documents with ISO-8601 UTC timestamps, as
they sit in the document store.
Domain form: frozen dataclasses with enums and timezone-aware datetimes.

Each entity kind has exactly one ``*_to_domain`` / ``*_from_domain``
pair. Both are pure and total over documents that passed validation,
so a storage schema change means editing one pair here.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from ..lifecycle.models import Assessment, Decision, Protocol, Reviewer
from ..lifecycle.statuses import (
    ActorRole,
    AssessmentFormType,
    AssessmentStatus,
    DecisionCollection,
    ProtocolStatus,
    ReviewerRole,
    Verdict,
)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Canonicalize a timestamp to an aware UTC datetime.

    Accepts datetimes (naive ones are taken as UTC), ISO-8601 strings
    (a trailing ``Z`` included) and epoch seconds.

    Raises:
        ValueError: If the value cannot be read as a timestamp
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a timestamp: {value!r}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime in the canonical wire form (UTC, microseconds, ``Z``)."""
    if value is None:
        return None
    dt = parse_timestamp(value)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


# --- Protocol ---

def protocol_to_domain(
    doc: Dict[str, Any],
    decisions: Iterable[Decision] = (),
    version: int = 0,
) -> Protocol:
    return Protocol(
        id=doc["id"],
        status=ProtocolStatus(doc["status"]),
        submitted_by=doc["submittedBy"],
        title=doc.get("title", ""),
        document_id=doc.get("documentId"),
        assigned_reviewers=tuple(doc.get("assignedReviewers", [])),
        decisions=tuple(sorted(decisions, key=lambda d: (d.created_at, d.id))),
        created_at=parse_timestamp(doc["createdAt"]),
        last_modified_at=parse_timestamp(doc["lastModifiedAt"]),
        deadline_at=parse_timestamp(doc.get("deadlineAt")),
        version=version,
    )


def protocol_from_domain(protocol: Protocol) -> Dict[str, Any]:
    # decisions live in their own collections and are not embedded
    return {
        "id": protocol.id,
        "status": _enum_value(protocol.status),
        "submittedBy": protocol.submitted_by,
        "title": protocol.title,
        "documentId": protocol.document_id,
        "assignedReviewers": list(protocol.assigned_reviewers),
        "createdAt": format_timestamp(protocol.created_at),
        "lastModifiedAt": format_timestamp(protocol.last_modified_at),
        "deadlineAt": format_timestamp(protocol.deadline_at),
    }


# --- Decision ---

def decision_to_domain(doc: Dict[str, Any]) -> Decision:
    return Decision(
        id=doc["id"],
        protocol_id=doc["protocolId"],
        author_role=ActorRole(doc["authorRole"]),
        author_id=doc["authorId"],
        collection=DecisionCollection(doc["collection"]),
        verdict=Verdict(doc["verdict"]),
        comment=doc.get("comment"),
        created_at=parse_timestamp(doc["createdAt"]),
        is_active=bool(doc.get("isActive", True)),
        superseded_at=parse_timestamp(doc.get("supersededAt")),
        superseded_by=doc.get("supersededBy"),
    )


def decision_from_domain(decision: Decision) -> Dict[str, Any]:
    return {
        "id": decision.id,
        "protocolId": decision.protocol_id,
        "authorRole": _enum_value(decision.author_role),
        "authorId": decision.author_id,
        "collection": _enum_value(decision.collection),
        "verdict": _enum_value(decision.verdict),
        "comment": decision.comment,
        "createdAt": format_timestamp(decision.created_at),
        "isActive": decision.is_active,
        "supersededAt": format_timestamp(decision.superseded_at),
        "supersededBy": decision.superseded_by,
    }


# --- Reviewer ---

def reviewer_to_domain(doc: Dict[str, Any]) -> Reviewer:
    return Reviewer(
        id=doc["id"],
        name=doc["name"],
        role=ReviewerRole(doc["role"]),
        is_active=bool(doc.get("isActive", True)),
        email=doc.get("email"),
        created_at=parse_timestamp(doc.get("createdAt")),
        last_modified_at=parse_timestamp(doc.get("lastModifiedAt")),
    )


def reviewer_from_domain(reviewer: Reviewer) -> Dict[str, Any]:
    return {
        "id": reviewer.id,
        "name": reviewer.name,
        "role": _enum_value(reviewer.role),
        "isActive": reviewer.is_active,
        "email": reviewer.email,
        "createdAt": format_timestamp(reviewer.created_at),
        "lastModifiedAt": format_timestamp(reviewer.last_modified_at),
    }


# --- Assessment ---

def assessment_to_domain(doc: Dict[str, Any]) -> Assessment:
    return Assessment(
        id=doc["id"],
        protocol_id=doc["protocolId"],
        reviewer_id=doc["reviewerId"],
        form_type=AssessmentFormType(doc["formType"]),
        status=AssessmentStatus(doc["status"]),
        responses=dict(doc.get("responses") or {}),
        submitted_at=parse_timestamp(doc.get("submittedAt")),
        created_at=parse_timestamp(doc.get("createdAt")),
        last_modified_at=parse_timestamp(doc.get("lastModifiedAt")),
    )


def assessment_from_domain(assessment: Assessment) -> Dict[str, Any]:
    return {
        "id": assessment.id,
        "protocolId": assessment.protocol_id,
        "reviewerId": assessment.reviewer_id,
        "formType": _enum_value(assessment.form_type),
        "status": _enum_value(assessment.status),
        "responses": dict(assessment.responses),
        "submittedAt": format_timestamp(assessment.submitted_at),
        "createdAt": format_timestamp(assessment.created_at),
        "lastModifiedAt": format_timestamp(assessment.last_modified_at),
    }


# Domain attribute -> wire field, for ordering and filtering by domain name.
FIELD_ALIASES: Dict[str, str] = {
    "submitted_by": "submittedBy",
    "document_id": "documentId",
    "assigned_reviewers": "assignedReviewers",
    "created_at": "createdAt",
    "last_modified_at": "lastModifiedAt",
    "deadline_at": "deadlineAt",
    "protocol_id": "protocolId",
    "author_role": "authorRole",
    "author_id": "authorId",
    "is_active": "isActive",
    "superseded_at": "supersededAt",
    "superseded_by": "supersededBy",
    "reviewer_id": "reviewerId",
    "form_type": "formType",
    "submitted_at": "submittedAt",
}


def wire_field(name: str) -> str:
    return FIELD_ALIASES.get(name, name)


