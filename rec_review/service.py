"""
Protocol review service.

Orchestrates every mutating operation of the review lifecycle on top of
the data access layer:

1. Proponent flow: create, submit, resubmit
2. Reviewer pool: register, deactivate, assign to a protocol
3. Decisions: record a verdict, supersede the author's prior one,
   aggregate the reviewer pool, apply the chairperson's verdict
4. Assessments: save forms, summarize completion
5. Sweeps: expire overdue protocols, archive old terminal ones

Design decisions:
- A decision and the status change it causes are one atomic batch
- Superseded decisions are closed (inactive, stamped), never rewritten
- Re-entering Under Review from Resubmitted closes every active
  ``accepted`` decision with reason "resubmission"
- The chairperson's verdict is authoritative and does not wait for the
  reviewer pool to become eligible
- Authorization uses the (actor id, actor role) pair passed in; the
  service never infers a role from context
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from uuid import uuid4

from .config import ReviewConfig
from .errors import (
    DecisionNotAllowed,
    FieldError,
    NotFoundError,
    ReviewEngineError,
    StaleWriteError,
    InvalidTransition,
    UnauthorizedAuthor,
    ValidationError,
)
from .lifecycle.aggregation import (
    RESUBMISSION,
    AggregationResult,
    AggregateOutcome,
    aggregate_reviewer_decisions,
    decisions_to_supersede,
)
from .lifecycle.models import Assessment, Decision, Protocol, Reviewer
from .lifecycle.statuses import (
    CHAIRPERSON_VERDICT_STATUS,
    COMPLETED_ASSESSMENT_STATUSES,
    DECISION_STATUSES,
    REVIEWER_VERDICTS,
    TERMINAL_STATUSES,
    ActorRole,
    AssessmentFormType,
    AssessmentStatus,
    DecisionCollection,
    ProtocolStatus,
    ReviewerRole,
    Verdict,
)
from .observability.metrics import LifecycleMetrics
from .storage import mappers
from .storage.data_access import DataAccessLayer, EntityKind, WriteBatch, decision_kind


logger = logging.getLogger(__name__)

Move = Tuple[Optional[str], str]


@dataclass(frozen=True)
class AssessmentSummary:
    """Completion of assessment forms across a protocol's assigned reviewers."""
    protocol_id: str
    total_assigned: int
    total_completed: int
    all_completed: bool
    pending_reviewers: Tuple[str, ...] = ()


class ProtocolReviewService:
    """
    Lifecycle operations for protocols, reviewers, decisions and assessments.

    Usage:
        service = ProtocolReviewService(dal, config)
        protocol = await service.create_protocol("U1", "Survey on sleep")
        protocol = await service.submit_protocol(protocol.id, "U1")
    """

    def __init__(
        self,
        dal: DataAccessLayer,
        config: Optional[ReviewConfig] = None,
        metrics: Optional[LifecycleMetrics] = None,
    ):
        """
        Initialize the service.

        Args:
            dal: Data access layer (the only path to storage)
            config: Engine configuration (defaults apply when omitted)
            metrics: Metrics sink (a fresh one when omitted)
        """
        self.dal = dal
        self.config = config or ReviewConfig()
        self.metrics = metrics or LifecycleMetrics()

    @contextmanager
    def _tracking(self):
        try:
            yield
        except ReviewEngineError as exc:
            self.metrics.record_error(exc.code)
            raise

    # --- Reads ---

    async def get_protocol(self, protocol_id: str) -> Protocol:
        return await self.dal.read(EntityKind.PROTOCOL, protocol_id)

    async def list_protocols(self, status: Optional[ProtocolStatus] = None) -> List[Protocol]:
        where = {"status": ProtocolStatus(status).value} if status is not None else None
        return await self.dal.query(EntityKind.PROTOCOL, where=where)

    async def active_reviewer_ids(self) -> List[str]:
        reviewers = await self.dal.query(EntityKind.REVIEWER, where={"isActive": True})
        return [r.id for r in reviewers]

    async def aggregate(self, protocol: Protocol) -> AggregationResult:
        """Aggregate the reviewer pool's active decisions for a protocol."""
        return aggregate_reviewer_decisions(
            protocol.decisions,
            protocol.assigned_reviewers,
            await self.active_reviewer_ids(),
        )

    # --- Proponent flow ---

    async def create_protocol(
        self,
        proponent_id: str,
        title: str,
        document_id: Optional[str] = None,
        protocol_id: Optional[str] = None,
        deadline_at: Optional[datetime] = None,
    ) -> Protocol:
        """
        Create a protocol in Pending Upload.

        Raises:
            ValidationError: If ``protocol_id`` is taken or fields are invalid
        """
        protocol_id = protocol_id or f"P-{uuid4().hex[:12]}"
        with self._tracking():
            if await self.dal.get(EntityKind.PROTOCOL, protocol_id) is not None:
                raise ValidationError("protocol", [FieldError("id", f"{protocol_id} already exists")])

            protocol = await self.dal.write(
                EntityKind.PROTOCOL,
                protocol_id,
                {
                    "status": ProtocolStatus.PENDING_UPLOAD.value,
                    "submittedBy": proponent_id,
                    "title": title,
                    "documentId": document_id,
                    "assignedReviewers": [],
                    "deadlineAt": deadline_at,
                },
                actor_role=ActorRole.PROPONENT,
            )

        self.metrics.protocols_created += 1
        self.metrics.record_transition(None, protocol.status)
        logger.info(f"Created protocol {protocol_id} for {proponent_id}")
        return protocol

    async def submit_protocol(
        self,
        protocol_id: str,
        proponent_id: str,
        document_id: Optional[str] = None,
    ) -> Protocol:
        """Move a protocol from Pending Upload to Submitted."""
        return await self._proponent_move(
            protocol_id, proponent_id, ProtocolStatus.SUBMITTED, document_id,
        )

    async def resubmit_protocol(
        self,
        protocol_id: str,
        proponent_id: str,
        document_id: Optional[str] = None,
    ) -> Protocol:
        """Move a protocol from Needs Revision to Resubmitted."""
        return await self._proponent_move(
            protocol_id, proponent_id, ProtocolStatus.RESUBMITTED, document_id,
        )

    async def _proponent_move(
        self,
        protocol_id: str,
        proponent_id: str,
        target: ProtocolStatus,
        document_id: Optional[str],
    ) -> Protocol:
        with self._tracking():
            protocol = await self.get_protocol(protocol_id)
            if protocol.submitted_by != proponent_id:
                raise UnauthorizedAuthor(
                    f"{proponent_id} is not the proponent of protocol {protocol_id}"
                )

            moves: List[Move] = []
            async with self.dal.batch() as batch:
                extra = {"documentId": document_id} if document_id else None
                await self._stage_status(batch, protocol_id, target, ActorRole.PROPONENT, moves, extra)

        return await self._finish(protocol_id, moves)

    # --- Transitions ---

    async def request_transition(
        self,
        protocol_id: str,
        target: ProtocolStatus,
        actor_role: ActorRole,
        expected_modified_at: Optional[datetime] = None,
    ) -> Protocol:
        """
        Move a protocol to ``target`` on behalf of ``actor_role``.

        Args:
            protocol_id: Protocol to move
            target: Requested status
            actor_role: Role making the move
            expected_modified_at: Optional staleness token

        Raises:
            NotFoundError: Protocol does not exist
            InvalidTransition: Move not in the transition table for the role
            StaleWriteError: Protocol changed since ``expected_modified_at``
        """
        with self._tracking():
            moves: List[Move] = []
            async with self.dal.batch() as batch:
                if await batch.current(EntityKind.PROTOCOL, protocol_id) is None:
                    raise NotFoundError("protocol", protocol_id)
                await self._stage_status(
                    batch, protocol_id, target, actor_role, moves,
                    expected_modified_at=expected_modified_at,
                )
        return await self._finish(protocol_id, moves)

    async def begin_review(
        self,
        protocol_id: str,
        actor_role: ActorRole = ActorRole.CHAIRPERSON,
    ) -> Protocol:
        """Move a Submitted or Resubmitted protocol into Under Review."""
        return await self.request_transition(protocol_id, ProtocolStatus.UNDER_REVIEW, actor_role)

    async def _stage_status(
        self,
        batch: WriteBatch,
        protocol_id: str,
        target: ProtocolStatus,
        actor_role: ActorRole,
        moves: List[Move],
        extra: Optional[Dict[str, Any]] = None,
        expected_modified_at: Optional[datetime] = None,
    ) -> List[Decision]:
        """
        Stage a status change and the supersession it implies.

        Returns:
            Decisions closed by the move (empty unless the protocol
            re-enters Under Review from Resubmitted)
        """
        target = ProtocolStatus(target)
        current = await batch.current(EntityKind.PROTOCOL, protocol_id)
        previous = current["status"] if current else None

        patch: Dict[str, Any] = {"status": target.value}
        patch.update(extra or {})
        await batch.write(
            EntityKind.PROTOCOL, protocol_id, patch,
            actor_role=actor_role,
            expected_modified_at=expected_modified_at,
        )
        moves.append((previous, target.value))

        if previous == ProtocolStatus.RESUBMITTED.value and target is ProtocolStatus.UNDER_REVIEW:
            return await self._stage_resubmission_supersession(batch, protocol_id)
        return []

    async def _stage_resubmission_supersession(self, batch: WriteBatch, protocol_id: str) -> List[Decision]:
        at = self.dal.next_timestamp()
        closed: List[Decision] = []
        for decision in await self.dal.protocol_decisions(protocol_id):
            if decision.is_active and decision.collection is DecisionCollection.ACCEPTED:
                closed.append(decision.superseded(at, RESUBMISSION))
                await batch.write(
                    EntityKind.ACCEPTED_DECISION,
                    decision.id,
                    {"isActive": False, "supersededAt": at, "supersededBy": RESUBMISSION},
                )
        if closed:
            logger.info(f"Superseded {len(closed)} reviewer decisions on {protocol_id} after resubmission")
        self.metrics.decisions_superseded += len(closed)
        return closed

    async def _finish(self, protocol_id: str, moves: Iterable[Move]) -> Protocol:
        for previous, target in moves:
            self.metrics.record_transition(previous, target)
            logger.info(f"Protocol {protocol_id}: {previous} -> {target}")
        return await self.get_protocol(protocol_id)

    # --- Reviewer pool ---

    async def register_reviewer(
        self,
        reviewer_id: str,
        name: str,
        role: ReviewerRole = ReviewerRole.REVIEWER,
        email: Optional[str] = None,
    ) -> Reviewer:
        """
        Register (or update) a reviewer.

        Raises:
            ValidationError: Invalid fields, or a second active chairperson
        """
        with self._tracking():
            reviewer = await self.dal.write(
                EntityKind.REVIEWER,
                reviewer_id,
                {"name": name, "role": ReviewerRole(role).value, "isActive": True, "email": email},
            )
        logger.info(f"Registered {reviewer.role.value} {reviewer_id}")
        return reviewer

    async def deactivate_reviewer(self, reviewer_id: str) -> Reviewer:
        with self._tracking():
            await self.dal.read(EntityKind.REVIEWER, reviewer_id)
            reviewer = await self.dal.write(EntityKind.REVIEWER, reviewer_id, {"isActive": False})
        logger.info(f"Deactivated reviewer {reviewer_id}")
        return reviewer

    async def get_current_chair_name(self) -> str:
        """
        Name of the active chairperson, or the configured default label.

        Never raises: a lookup failure falls back to the default label.
        """
        default = self.config.chairperson_default_label
        try:
            chairs = await self.dal.query(
                EntityKind.REVIEWER,
                where={"role": ReviewerRole.CHAIRPERSON.value, "isActive": True},
                limit=1,
            )
        except Exception as exc:
            logger.warning(f"Could not load current chairperson, using default label: {exc}")
            return default

        if chairs and chairs[0].name.strip():
            return chairs[0].name
        return default

    async def assign_reviewers(
        self,
        protocol_id: str,
        reviewer_ids: Iterable[str],
        actor_role: ActorRole = ActorRole.CHAIRPERSON,
    ) -> Protocol:
        """
        Replace the protocol's assigned reviewers.

        Assigning to a Submitted protocol also moves it to Under Review in
        the same batch.

        Raises:
            UnauthorizedAuthor: Actor is not the chairperson
            ValidationError: Unknown or inactive reviewers, or a protocol
                that cannot take assignments
            NotFoundError: Protocol does not exist
        """
        reviewer_ids = list(reviewer_ids)
        with self._tracking():
            if ActorRole(actor_role) is not ActorRole.CHAIRPERSON:
                raise UnauthorizedAuthor(f"{ActorRole(actor_role).value} cannot assign reviewers")

            protocol = await self.get_protocol(protocol_id)
            errors: List[FieldError] = []
            if protocol.status is ProtocolStatus.PENDING_UPLOAD or protocol.status in TERMINAL_STATUSES:
                errors.append(FieldError("status", f"cannot assign reviewers while {protocol.status.value}"))

            active = set(await self.active_reviewer_ids())
            unknown = [rid for rid in reviewer_ids if rid not in active]
            if unknown:
                errors.append(FieldError("assignedReviewers", f"unknown or inactive reviewers: {unknown}"))
            if errors:
                raise ValidationError("protocol", errors)

            moves: List[Move] = []
            async with self.dal.batch() as batch:
                await batch.write(EntityKind.PROTOCOL, protocol_id, {"assignedReviewers": reviewer_ids})
                if protocol.status is ProtocolStatus.SUBMITTED:
                    await self._stage_status(batch, protocol_id, ProtocolStatus.UNDER_REVIEW, actor_role, moves)

        logger.info(f"Assigned {len(reviewer_ids)} reviewers to {protocol_id}")
        return await self._finish(protocol_id, moves)

    # --- Decisions ---

    async def record_decision(
        self,
        protocol_id: str,
        author_id: str,
        author_role: ActorRole,
        collection: DecisionCollection,
        verdict: Verdict,
        comment: Optional[str] = None,
    ) -> Protocol:
        """
        Record a verdict and apply its consequences atomically.

        Steps, all in one batch:
        1. Resubmitted protocols re-enter Under Review (system actor)
        2. The author's prior active decision in the collection is closed
        3. The new decision is appended
        4. ``accepted``: the pool is aggregated; any reject/revise moves the
           protocol to Needs Revision. ``approved``: the chairperson's
           verdict sets the status.

        Raises:
            NotFoundError: Protocol does not exist
            DecisionNotAllowed: Protocol is not Under Review or Resubmitted
            UnauthorizedAuthor: Author may not decide in the collection
            ValidationError: Verdict not allowed for the collection
        """
        with self._tracking():
            collection = DecisionCollection(collection)
            author_role = ActorRole(author_role)
            verdict = Verdict(verdict)

            protocol = await self.get_protocol(protocol_id)
            if protocol.status not in DECISION_STATUSES:
                raise DecisionNotAllowed(
                    f"Protocol {protocol_id} is {protocol.status.value}; decisions are not accepted"
                )
            await self._authorize_author(protocol, author_id, author_role, collection)
            if collection is DecisionCollection.ACCEPTED and verdict not in REVIEWER_VERDICTS:
                raise ValidationError("decision", [FieldError("verdict", f"{verdict.value} is reserved for the chairperson")])

            moves: List[Move] = []
            decisions = list(protocol.decisions)
            async with self.dal.batch() as batch:
                if protocol.status is ProtocolStatus.RESUBMITTED:
                    closed = await self._stage_status(
                        batch, protocol_id, ProtocolStatus.UNDER_REVIEW, ActorRole.SYSTEM, moves,
                    )
                    decisions = _replace_decisions(decisions, closed)

                latest = max((d.created_at for d in decisions), default=None)
                created_at = self.dal.next_timestamp(latest)
                decision = Decision(
                    id=f"D-{uuid4().hex[:12]}",
                    protocol_id=protocol_id,
                    author_role=author_role,
                    author_id=author_id,
                    collection=collection,
                    verdict=verdict,
                    created_at=created_at,
                    comment=comment,
                )

                kind = decision_kind(collection)
                superseded = [
                    prior.superseded(created_at, decision.id)
                    for prior in decisions_to_supersede(decisions, decision)
                ]
                for prior in superseded:
                    await batch.write(kind, prior.id, {
                        "isActive": False,
                        "supersededAt": prior.superseded_at,
                        "supersededBy": prior.superseded_by,
                    })
                await batch.write(kind, decision.id, mappers.decision_from_domain(decision))
                decisions = _replace_decisions(decisions, superseded) + [decision]

                target = await self._decision_target(protocol, collection, verdict, decisions)
                if target is None:
                    # touch the protocol so observers receive the new decision
                    await batch.write(EntityKind.PROTOCOL, protocol_id, {})
                else:
                    role = ActorRole.CHAIRPERSON if collection is DecisionCollection.APPROVED else ActorRole.SYSTEM
                    await self._stage_status(batch, protocol_id, target, role, moves)

        self.metrics.record_decision(collection.value, superseded=len(superseded))
        logger.info(
            f"Recorded {verdict.value} by {author_id} ({author_role.value}) "
            f"in {collection.value} for {protocol_id}"
        )
        return await self._finish(protocol_id, moves)

    async def _authorize_author(
        self,
        protocol: Protocol,
        author_id: str,
        author_role: ActorRole,
        collection: DecisionCollection,
    ) -> None:
        if collection is DecisionCollection.APPROVED:
            if author_role is not ActorRole.CHAIRPERSON:
                raise UnauthorizedAuthor(
                    f"Only the chairperson may decide in {collection.value}; got {author_role.value}"
                )
            chairs = await self._active_chair_ids()
            if chairs and author_id not in chairs:
                raise UnauthorizedAuthor(f"{author_id} is not the active chairperson")
            return

        if author_role is not ActorRole.REVIEWER:
            raise UnauthorizedAuthor(
                f"Only assigned reviewers may decide in {collection.value}; got {author_role.value}"
            )
        if author_id not in protocol.assigned_reviewers:
            raise UnauthorizedAuthor(f"{author_id} is not assigned to protocol {protocol.id}")

    async def _active_chair_ids(self) -> Set[str]:
        chairs = await self.dal.query(
            EntityKind.REVIEWER,
            where={"role": ReviewerRole.CHAIRPERSON.value, "isActive": True},
        )
        return {c.id for c in chairs}
        if author_id not in await self.active_reviewer_ids():
            raise UnauthorizedAuthor(f"{author_id} is not an active reviewer")

    async def _decision_target(
        self,
        protocol: Protocol,
        collection: DecisionCollection,
        verdict: Verdict,
        decisions: List[Decision],
    ) -> Optional[ProtocolStatus]:
        if collection is DecisionCollection.APPROVED:
            return CHAIRPERSON_VERDICT_STATUS[verdict]

        result = aggregate_reviewer_decisions(
            decisions, protocol.assigned_reviewers, await self.active_reviewer_ids(),
        )
        logger.debug(f"Aggregation for {protocol.id}: {result.outcome.value} ({result.explanation})")
        if result.outcome is AggregateOutcome.NEEDS_REVISION:
            return ProtocolStatus.NEEDS_REVISION
        return None

    # --- Assessments ---

    async def save_assessment(
        self,
        protocol_id: str,
        reviewer_id: str,
        form_type: AssessmentFormType,
        responses: Dict[str, Any],
        status: AssessmentStatus = AssessmentStatus.DRAFT,
    ) -> Assessment:
        """
        Create or update the reviewer's assessment form for a protocol.

        One form per (protocol, reviewer, form type); saving again
        updates it.

        Raises:
            NotFoundError: Protocol does not exist
            UnauthorizedAuthor: Reviewer is not assigned to the protocol
            ValidationError: Unknown form type or status
        """
        with self._tracking():
            protocol = await self.get_protocol(protocol_id)
            if reviewer_id not in protocol.assigned_reviewers:
                raise UnauthorizedAuthor(f"{reviewer_id} is not assigned to protocol {protocol_id}")

            try:
                form_key = AssessmentFormType(form_type).name.lower()
            except ValueError:
                raise ValidationError("assessment", [FieldError("formType", f"{form_type!r} is not a known form")]) from None

            patch: Dict[str, Any] = {
                "protocolId": protocol_id,
                "reviewerId": reviewer_id,
                "formType": AssessmentFormType(form_type).value,
                "status": status.value if isinstance(status, AssessmentStatus) else status,
                "responses": responses,
            }
            if patch["status"] in {s.value for s in COMPLETED_ASSESSMENT_STATUSES}:
                patch["submittedAt"] = self.dal.next_timestamp()

            assessment = await self.dal.write(
                EntityKind.ASSESSMENT, f"{protocol_id}-{reviewer_id}-{form_key}", patch,
            )
        logger.info(f"Saved {assessment.form_type.value} ({assessment.status.value}) by {reviewer_id}")
        return assessment

    async def summarize_assessments(self, protocol_id: str) -> AssessmentSummary:
        protocol = await self.get_protocol(protocol_id)
        assessments = await self.dal.query(EntityKind.ASSESSMENT, where={"protocolId": protocol_id})

        assigned = list(protocol.assigned_reviewers)
        completed = {
            a.reviewer_id for a in assessments
            if a.status in COMPLETED_ASSESSMENT_STATUSES and a.reviewer_id in assigned
        }
        return AssessmentSummary(
            protocol_id=protocol_id,
            total_assigned=len(assigned),
            total_completed=len(completed),
            all_completed=bool(assigned) and len(completed) == len(assigned),
            pending_reviewers=tuple(r for r in assigned if r not in completed),
        )

    # --- Sweeps ---

    async def expire_overdue(self, now: Optional[datetime] = None) -> List[str]:
        """
        Expire non-terminal protocols past their deadline or inactive for
        longer than the configured window.

        Returns:
            Ids of expired protocols
        """
        now = mappers.parse_timestamp(now or self.dal.clock())
        inactivity = self.config.inactivity_expiry_days
        cutoff = now - timedelta(days=int(inactivity)) if inactivity is not None else None

        candidates = await self.dal.query(
            EntityKind.PROTOCOL,
            predicate=lambda p: p.status not in TERMINAL_STATUSES and (
                (p.deadline_at is not None and p.deadline_at <= now)
                or (cutoff is not None and p.last_modified_at < cutoff)
            ),
        )

        expired = await self._sweep(candidates, ProtocolStatus.EXPIRED, ActorRole.SYSTEM)
        self.metrics.expired += len(expired)
        logger.info(f"Expiry sweep: {len(expired)} of {len(candidates)} candidates expired")
        return expired

    async def archive_terminal(
        self,
        actor_id: str,
        older_than_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Archive terminal protocols untouched for ``older_than_days``
        (configured ``archive_after_days`` when omitted), as the chairperson.

        Returns:
            Ids of archived protocols

        Raises:
            UnauthorizedAuthor: ``actor_id`` is not the active chairperson
        """
        with self._tracking():
            if actor_id not in await self._active_chair_ids():
                raise UnauthorizedAuthor(f"{actor_id} is not the active chairperson")

        days = self.config.archive_after_days if older_than_days is None else older_than_days
        now = mappers.parse_timestamp(now or self.dal.clock())
        cutoff = now - timedelta(days=days)

        candidates = await self.dal.query(
            EntityKind.PROTOCOL,
            predicate=lambda p: (
                p.status in TERMINAL_STATUSES
                and p.status is not ProtocolStatus.ARCHIVED
                and p.last_modified_at <= cutoff
            ),
        )

        archived = await self._sweep(candidates, ProtocolStatus.ARCHIVED, ActorRole.CHAIRPERSON)
        self.metrics.archived += len(archived)
        logger.info(f"Archive sweep by {actor_id}: {len(archived)} protocols archived")
        return archived

    async def _sweep(
        self,
        candidates: List[Protocol],
        target: ProtocolStatus,
        actor_role: ActorRole,
    ) -> List[str]:
        moved: List[str] = []
        for protocol in candidates:
            try:
                await self.request_transition(
                    protocol.id, target, actor_role,
                    expected_modified_at=protocol.last_modified_at,
                )
            except (StaleWriteError, InvalidTransition) as exc:
                logger.warning(f"Skipped {protocol.id} during {target.value} sweep: {exc.message}")
                continue
            moved.append(protocol.id)
        return moved

    async def delete_protocol(self, protocol_id: str) -> None:
        """Delete a protocol with its decisions and assessments."""
        with self._tracking():
            await self.dal.delete(EntityKind.PROTOCOL, protocol_id)


def _replace_decisions(decisions: List[Decision], replacements: Iterable[Decision]) -> List[Decision]:
    by_id = {d.id: d for d in replacements}
    return [by_id.get(d.id, d) for d in decisions]
