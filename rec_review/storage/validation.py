"""
Schema validation and canonicalization of wire documents.

Each entity kind declares its required fields, enum-constrained fields
and timestamp fields. ``canonicalize`` checks a whole document and
collects every failing field before anything is persisted; timestamps
are rewritten to the canonical wire form on the way through.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Tuple, Type
from enum import Enum

from ..errors import FieldError
from ..lifecycle.statuses import (
    ActorRole,
    AssessmentFormType,
    AssessmentStatus,
    DecisionCollection,
    ProtocolStatus,
    ReviewerRole,
    Verdict,
)
from .mappers import format_timestamp


@dataclass(frozen=True)
class EntitySchema:
    required: FrozenSet[str]
    enums: Dict[str, Type[Enum]] = field(default_factory=dict)
    timestamps: FrozenSet[str] = frozenset()
    booleans: FrozenSet[str] = frozenset()
    string_lists: FrozenSet[str] = frozenset()
    mappings: FrozenSet[str] = frozenset()


PROTOCOL_SCHEMA = EntitySchema(
    required=frozenset({"id", "status", "submittedBy", "createdAt", "lastModifiedAt"}),
    enums={"status": ProtocolStatus},
    timestamps=frozenset({"createdAt", "lastModifiedAt", "deadlineAt"}),
    string_lists=frozenset({"assignedReviewers"}),
)

DECISION_SCHEMA = EntitySchema(
    required=frozenset({
        "id", "protocolId", "authorRole", "authorId",
        "collection", "verdict", "createdAt",
    }),
    enums={
        "authorRole": ActorRole,
        "collection": DecisionCollection,
        "verdict": Verdict,
    },
    timestamps=frozenset({"createdAt", "supersededAt", "lastModifiedAt"}),
    booleans=frozenset({"isActive"}),
)

REVIEWER_SCHEMA = EntitySchema(
    required=frozenset({"id", "name", "role", "isActive"}),
    enums={"role": ReviewerRole},
    timestamps=frozenset({"createdAt", "lastModifiedAt"}),
    booleans=frozenset({"isActive"}),
)

ASSESSMENT_SCHEMA = EntitySchema(
    required=frozenset({"id", "protocolId", "reviewerId", "formType", "status"}),
    enums={"formType": AssessmentFormType, "status": AssessmentStatus},
    timestamps=frozenset({"submittedAt", "createdAt", "lastModifiedAt"}),
    mappings=frozenset({"responses"}),
)


def canonicalize(
    kind: str,
    schema: EntitySchema,
    doc: Dict[str, Any],
) -> Tuple[Dict[str, Any], List[FieldError]]:
    """
    Validate a wire document and return its canonical form.

    Args:
        kind: Entity kind name, for error reporting
        schema: Schema of the kind
        doc: Complete wire document (patch already merged)

    Returns:
        Tuple of (canonical document, list of field errors)
    """
    errors: List[FieldError] = []
    canonical = dict(doc)

    for name in sorted(schema.required):
        value = canonical.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append(FieldError(name, "required"))

    for name, enum_type in schema.enums.items():
        value = canonical.get(name)
        if value is None:
            continue
        try:
            canonical[name] = enum_type(value).value
        except ValueError:
            allowed = ", ".join(member.value for member in enum_type)
            errors.append(FieldError(name, f"{value!r} is not one of: {allowed}"))

    for name in sorted(schema.timestamps):
        value = canonical.get(name)
        if value is None:
            continue
        try:
            canonical[name] = format_timestamp(value)
        except (ValueError, TypeError, OverflowError, OSError):
            errors.append(FieldError(name, f"{value!r} is not a timestamp"))

    for name in sorted(schema.booleans):
        value = canonical.get(name)
        if value is not None and not isinstance(value, bool):
            errors.append(FieldError(name, "must be a boolean"))

    for name in sorted(schema.string_lists):
        value = canonical.get(name)
        if value is None:
            continue
        if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) and v for v in value):
            errors.append(FieldError(name, "must be a list of ids"))
        elif len(set(value)) != len(value):
            errors.append(FieldError(name, "must not contain duplicates"))
        else:
            canonical[name] = list(value)

    for name in sorted(schema.mappings):
        value = canonical.get(name)
        if value is not None and not isinstance(value, dict):
            errors.append(FieldError(name, "must be a mapping"))

    return canonical, errors
