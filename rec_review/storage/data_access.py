"""
Unified data access layer.

The single choke point through which every entity is read, validated,
transformed and written. No caller touches the document store directly.

Operations:
1. read: fetch one entity by kind and id (protocols are hydrated with
   their decisions)
2. write: merge a patch, validate, check status transitions, persist
3. query: filter, order and limit entities of one kind
4. batch: stage several writes and commit them atomically

Design decisions:
- Every read passes through a ``*_to_domain`` mapper and every write
  through a ``*_from_domain`` mapper or a validated wire patch
- Validation collects every failing field before anything is persisted
- Several writes to the same document inside one batch collapse into a
  single stored version, so subscribers see one change per batch
- ``lastModifiedAt`` is monotonic per document and doubles as the
  optimistic staleness token
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import (
    Any, AsyncIterator, Callable, Dict, List, Optional, Tuple,
)

from ..errors import (
    FieldError,
    InvalidTransition,
    NotFoundError,
    StaleWriteError,
    ValidationError,
)
from ..lifecycle.models import Decision
from ..lifecycle.state_machine import ProtocolStateMachine
from ..lifecycle.statuses import DecisionCollection, ReviewerRole
from . import mappers
from .document_store import DocumentStore, DocumentWatch, WriteOp
from .validation import (
    ASSESSMENT_SCHEMA,
    DECISION_SCHEMA,
    PROTOCOL_SCHEMA,
    REVIEWER_SCHEMA,
    EntitySchema,
    canonicalize,
)


logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    """Entity kinds, valued by the collection that stores them."""
    PROTOCOL = "submissions"
    REVIEWER = "reviewers"
    ASSESSMENT = "assessment_forms"
    ACCEPTED_DECISION = "accepted"
    APPROVED_DECISION = "approved"


DECISION_KINDS = (EntityKind.ACCEPTED_DECISION, EntityKind.APPROVED_DECISION)


def decision_kind(collection: DecisionCollection) -> EntityKind:
    return EntityKind(DecisionCollection(collection).value)


@dataclass(frozen=True)
class KindSpec:
    schema: EntitySchema
    to_domain: Callable[[Dict[str, Any]], Any]
    from_domain: Callable[[Any], Dict[str, Any]]
    # wire fields that may never change once set
    immutable: Tuple[str, ...] = ()


KIND_SPECS: Dict[EntityKind, KindSpec] = {
    EntityKind.PROTOCOL: KindSpec(
        PROTOCOL_SCHEMA,
        mappers.protocol_to_domain,
        mappers.protocol_from_domain,
        immutable=("submittedBy", "createdAt"),
    ),
    EntityKind.REVIEWER: KindSpec(
        REVIEWER_SCHEMA,
        mappers.reviewer_to_domain,
        mappers.reviewer_from_domain,
        immutable=("createdAt",),
    ),
    EntityKind.ASSESSMENT: KindSpec(
        ASSESSMENT_SCHEMA,
        mappers.assessment_to_domain,
        mappers.assessment_from_domain,
        immutable=("protocolId", "reviewerId", "formType", "createdAt"),
    ),
    EntityKind.ACCEPTED_DECISION: KindSpec(
        DECISION_SCHEMA,
        mappers.decision_to_domain,
        mappers.decision_from_domain,
        immutable=(
            "protocolId", "authorRole", "authorId", "collection",
            "verdict", "comment", "createdAt",
        ),
    ),
    EntityKind.APPROVED_DECISION: KindSpec(
        DECISION_SCHEMA,
        mappers.decision_to_domain,
        mappers.decision_from_domain,
        immutable=(
            "protocolId", "authorRole", "authorId", "collection",
            "verdict", "comment", "createdAt",
        ),
    ),
}

# Stamped by the data access layer, never accepted from callers.
_MANAGED_FIELDS = ("id", "lastModifiedAt", "version")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WriteBatch:
    """
    Writes staged for one atomic commit.

    Reads through the batch see staged documents, so a batch may move a
    protocol through several statuses; only the final document of each
    (kind, id) is committed.
    """

    def __init__(self, dal: "DataAccessLayer"):
        self.dal = dal
        self._staged: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        self._existing: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        self.committed = False

    async def current(self, kind: EntityKind, entity_id: str) -> Optional[Dict[str, Any]]:
        """Wire document as this batch sees it (staged, else stored)."""
        key = (EntityKind(kind).value, entity_id)
        if key in self._staged:
            return self._staged[key]
        return await self._stored(key)

    async def _stored(self, key: Tuple[str, str]) -> Optional[Dict[str, Any]]:
        if key not in self._existing:
            stored = await self.dal.store.get(*key)
            self._existing[key] = dict(stored.data) if stored else None
        return self._existing[key]

    async def write(
        self,
        kind: EntityKind,
        entity_id: str,
        patch: Dict[str, Any],
        actor_role: Optional[Any] = None,
        expected_modified_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Stage a patch for ``(kind, entity_id)``.

        Args:
            kind: Entity kind
            entity_id: Entity id (created if absent)
            patch: Fields to merge; domain attribute names or wire names
            actor_role: Role requesting a protocol status change
            expected_modified_at: Optimistic staleness token

        Returns:
            The staged canonical wire document

        Raises:
            ValidationError: Listing every failing field
            InvalidTransition: Status move not allowed for the role
            StaleWriteError: ``expected_modified_at`` does not match
        """
        kind = EntityKind(kind)
        kind_spec = KIND_SPECS[kind]
        key = (kind.value, entity_id)
        current = await self.current(kind, entity_id)

        if expected_modified_at is not None:
            current_token = current.get("lastModifiedAt") if current else None
            if current_token != mappers.format_timestamp(expected_modified_at):
                raise StaleWriteError(
                    f"{kind.name.lower()} {entity_id} changed since {expected_modified_at}"
                )

        wire_patch = {mappers.wire_field(name): value for name, value in patch.items()}
        errors: List[FieldError] = [
            FieldError(name, "managed by the data access layer")
            for name in _MANAGED_FIELDS
            if name in wire_patch and not (name == "id" and wire_patch[name] == entity_id)
        ]

        merged = dict(current or {})
        merged.update(wire_patch)
        merged["id"] = entity_id

        if current is not None:
            for name in kind_spec.immutable:
                if name in wire_patch and current.get(name) is not None:
                    old = current.get(name)
                    new = wire_patch[name]
                    if _canonical_scalar(old) != _canonical_scalar(new):
                        errors.append(FieldError(name, "immutable once set"))

        previous_modified = current.get("lastModifiedAt") if current else None
        now = self.dal.next_timestamp(previous_modified)
        merged["lastModifiedAt"] = now
        if current is None:
            merged.setdefault("createdAt", now)

        canonical, field_errors = canonicalize(kind.name.lower(), kind_spec.schema, merged)
        errors.extend(field_errors)

        if kind is EntityKind.REVIEWER and not errors:
            errors.extend(await self._chairperson_conflicts(canonical))

        if errors:
            raise ValidationError(kind.name.lower(), errors)

        if kind is EntityKind.PROTOCOL:
            previous_status = current.get("status") if current else None
            new_status = canonical["status"]
            if current is None or previous_status != new_status:
                if actor_role is None:
                    raise InvalidTransition(previous_status, new_status, "unknown", "Actor role is required")
                self.dal.state_machine.require_transition(previous_status, new_status, actor_role)

        self._staged[key] = canonical
        return canonical

    async def _chairperson_conflicts(self, reviewer_doc: Dict[str, Any]) -> List[FieldError]:
        if reviewer_doc["role"] != ReviewerRole.CHAIRPERSON.value or not reviewer_doc["isActive"]:
            return []
        stored = await self.dal.store.query(
            EntityKind.REVIEWER.value,
            where={"role": ReviewerRole.CHAIRPERSON.value, "isActive": True},
        )
        others = {doc.doc_id for doc in stored}
        for (collection, doc_id), doc in self._staged.items():
            if collection != EntityKind.REVIEWER.value:
                continue
            if doc and doc["role"] == ReviewerRole.CHAIRPERSON.value and doc["isActive"]:
                others.add(doc_id)
            else:
                others.discard(doc_id)
        others.discard(reviewer_doc["id"])
        if others:
            return [FieldError("role", f"active chairperson already configured: {sorted(others)[0]}")]
        return []

    async def commit(self) -> None:
        if self.committed:
            return
        ops = [
            WriteOp(collection, doc_id, doc)
            for (collection, doc_id), doc in self._staged.items()
            if doc is not None
        ]
        await self.dal.store.commit(ops)
        self.committed = True
        logger.debug(f"Committed {len(ops)} documents")


class DataAccessLayer:
    """
    Validated read/write access to protocols, reviewers, assessments
    and decisions.

    The store handle is injected; this class never reaches for a
    process-wide store on its own.
    """

    def __init__(
        self,
        store: DocumentStore,
        state_machine: Optional[ProtocolStateMachine] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the data access layer.

        Args:
            store: Document store backing every entity kind
            state_machine: Transition rules (defaults to the fixed table)
            clock: Source of "now" (defaults to UTC wall clock)
        """
        self.store = store
        self.state_machine = state_machine or ProtocolStateMachine()
        self.clock = clock or utc_now

    def next_timestamp(self, previous: Optional[Any] = None) -> datetime:
        """Current time, strictly after ``previous`` when given."""
        now = mappers.parse_timestamp(self.clock())
        previous_dt = mappers.parse_timestamp(previous) if previous is not None else None
        if previous_dt is not None and now <= previous_dt:
            now = previous_dt + timedelta(microseconds=1)
        return now

    async def read(self, kind: EntityKind, entity_id: str) -> Any:
        """
        Read one entity.

        Raises:
            NotFoundError: If the entity does not exist
        """
        kind = EntityKind(kind)
        stored = await self.store.get(kind.value, entity_id)
        if stored is None:
            raise NotFoundError(kind.name.lower(), entity_id)
        if kind is EntityKind.PROTOCOL:
            decisions = await self.protocol_decisions(entity_id)
            return mappers.protocol_to_domain(stored.data, decisions, stored.version)
        return KIND_SPECS[kind].to_domain(stored.data)

    async def get(self, kind: EntityKind, entity_id: str) -> Optional[Any]:
        """Like ``read`` but returns None for a missing entity."""
        try:
            return await self.read(kind, entity_id)
        except NotFoundError:
            return None

    async def protocol_decisions(self, protocol_id: str) -> List[Decision]:
        decisions: List[Decision] = []
        for kind in DECISION_KINDS:
            for stored in await self.store.query(kind.value, where={"protocolId": protocol_id}):
                decisions.append(mappers.decision_to_domain(stored.data))
        return sorted(decisions, key=lambda d: (d.created_at, d.id))

    async def write(
        self,
        kind: EntityKind,
        entity_id: str,
        patch: Dict[str, Any],
        actor_role: Optional[Any] = None,
        expected_modified_at: Optional[datetime] = None,
    ) -> Any:
        """Validate and persist a single patch; returns the stored entity."""
        async with self.batch() as batch:
            await batch.write(kind, entity_id, patch, actor_role, expected_modified_at)
        return await self.read(kind, entity_id)

    async def write_entity(self, kind: EntityKind, entity: Any, actor_role: Optional[Any] = None) -> Any:
        """Persist a whole domain entity through its ``from_domain`` mapper."""
        kind = EntityKind(kind)
        doc = KIND_SPECS[kind].from_domain(entity)
        doc.pop("lastModifiedAt", None)
        return await self.write(kind, doc["id"], doc, actor_role=actor_role)

    async def delete(self, kind: EntityKind, entity_id: str) -> None:
        """
        Delete an entity. Deleting a protocol also deletes the decisions
        and assessments it owns, in the same commit.

        Raises:
            NotFoundError: If the entity does not exist
        """
        kind = EntityKind(kind)
        if await self.store.get(kind.value, entity_id) is None:
            raise NotFoundError(kind.name.lower(), entity_id)

        ops = [WriteOp(kind.value, entity_id, delete=True)]
        if kind is EntityKind.PROTOCOL:
            for owned in DECISION_KINDS + (EntityKind.ASSESSMENT,):
                for stored in await self.store.query(owned.value, where={"protocolId": entity_id}):
                    ops.insert(0, WriteOp(owned.value, stored.doc_id, delete=True))
        await self.store.commit(ops)
        logger.info(f"Deleted {kind.name.lower()} {entity_id} ({len(ops) - 1} owned records)")

    async def query(
        self,
        kind: EntityKind,
        predicate: Optional[Callable[[Any], bool]] = None,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Any]:
        """
        Read-only query over one entity kind.

        Args:
            kind: Entity kind
            predicate: Filter applied to domain entities
            where: Equality filters pushed down to the store (domain or
                wire field names)
            order_by: Domain attribute to order by; creation time
                ascending when omitted
            descending: Reverse the ordering
            limit: Maximum number of entities returned

        Returns:
            Domain entities
        """
        kind = EntityKind(kind)
        wire_where = {mappers.wire_field(k): v for k, v in (where or {}).items()}
        push_limit = limit if predicate is None and order_by is None and not descending else None
        stored = await self.store.query(kind.value, where=wire_where, limit=push_limit)

        entities: List[Any] = []
        for doc in stored:
            if kind is EntityKind.PROTOCOL:
                decisions = await self.protocol_decisions(doc.doc_id)
                entities.append(mappers.protocol_to_domain(doc.data, decisions, doc.version))
            else:
                entities.append(KIND_SPECS[kind].to_domain(doc.data))

        if predicate is not None:
            entities = [e for e in entities if predicate(e)]
        if order_by is not None:
            entities.sort(key=lambda e: _sort_key(getattr(e, order_by)), reverse=descending)
        elif descending:
            entities.reverse()
        if limit is not None:
            entities = entities[:limit]
        return entities

    @asynccontextmanager
    async def batch(self) -> AsyncIterator[WriteBatch]:
        """
        Stage writes and commit them atomically on exit.

        If the block raises, nothing is persisted.
        """
        batch = WriteBatch(self)
        yield batch
        await batch.commit()

    async def watch_protocol(self, protocol_id: str) -> DocumentWatch:
        return await self.store.watch(EntityKind.PROTOCOL.value, protocol_id)


def _canonical_scalar(value: Any) -> Any:
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, datetime):
        return mappers.format_timestamp(value)
    return value


def _sort_key(value: Any) -> Tuple[int, Any]:
    # None sorts first
    if value is None:
        return (0, "")
    return (1, _canonical_scalar(value))
