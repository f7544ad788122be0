"""
Role-scoped decision façade.

The only path by which proponent, reviewer and chairperson views read
or submit decisions. The viewer's role is always an explicit argument,
so the same contract serves, and is tested for, all three roles.

Visibility:
- chairperson: every active decision in the requested collection
- reviewer: every active decision in ``accepted`` and ``approved``
- proponent: active ``approved`` decisions; for ``accepted`` only the
  aggregate outcome, never individual reviewer verdicts
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .errors import NotFoundError, TransportError
from .lifecycle.aggregation import AggregateOutcome, AggregationResult
from .lifecycle.models import Decision, Protocol
from .lifecycle.statuses import (
    DECISION_STATUSES,
    ActorRole,
    DecisionCollection,
    ProtocolStatus,
    Verdict,
    verdict_label,
)
from .service import ProtocolReviewService


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecisionCard:
    """What one viewer may see and do for one protocol and collection."""
    protocol_id: str
    collection: DecisionCollection
    viewer_role: ActorRole
    status: Optional[ProtocolStatus] = None
    decisions: Tuple[Decision, ...] = ()
    own_decision: Optional[Decision] = None
    outcome: Optional[AggregateOutcome] = None
    outcome_explanation: str = ""
    can_submit: bool = False
    chairperson_name: str = ""
    not_found: bool = False
    error_code: Optional[str] = None

    @property
    def own_verdict_label(self) -> Optional[str]:
        return verdict_label(self.own_decision.verdict) if self.own_decision else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol_id": self.protocol_id,
            "collection": self.collection.value,
            "viewer_role": self.viewer_role.value,
            "status": self.status.value if self.status else None,
            "decisions": [
                {
                    "id": d.id,
                    "author_id": d.author_id,
                    "verdict": d.verdict.value,
                    "label": verdict_label(d.verdict),
                    "comment": d.comment,
                }
                for d in self.decisions
            ],
            "own_decision": self.own_decision.id if self.own_decision else None,
            "outcome": self.outcome.value if self.outcome else None,
            "can_submit": self.can_submit,
            "chairperson_name": self.chairperson_name,
            "not_found": self.not_found,
            "error_code": self.error_code,
        }


class DecisionFacade:
    """
    Read and submit decisions on behalf of a viewer role.

    Usage:
        facade = DecisionFacade(service)
        card = await facade.render_decision("P1", "accepted", "reviewer", "R1")
        card = await facade.submit_decision("P1", "accepted", "reviewer", "R1", "approve")
    """

    def __init__(self, service: ProtocolReviewService):
        self.service = service

    async def render_decision(
        self,
        protocol_id: str,
        collection: DecisionCollection,
        viewer_role: ActorRole,
        viewer_id: Optional[str] = None,
    ) -> DecisionCard:
        """
        Build the decision card for a viewer.

        A missing protocol yields a card with ``not_found=True``; a
        transport failure yields a card with its ``error_code``. Neither
        is raised.
        """
        collection = DecisionCollection(collection)
        viewer_role = ActorRole(viewer_role)
        chair_name = await self.service.get_current_chair_name()

        try:
            protocol = await self.service.get_protocol(protocol_id)
        except NotFoundError:
            return DecisionCard(
                protocol_id, collection, viewer_role,
                chairperson_name=chair_name, not_found=True, error_code=NotFoundError.code,
            )
        except TransportError as exc:
            logger.warning(f"Could not load protocol {protocol_id}: {exc.message}")
            return DecisionCard(
                protocol_id, collection, viewer_role,
                chairperson_name=chair_name, error_code=exc.code,
            )

        aggregation = await self.service.aggregate(protocol)
        return self._card(protocol, collection, viewer_role, viewer_id, aggregation, chair_name)

    async def submit_decision(
        self,
        protocol_id: str,
        collection: DecisionCollection,
        viewer_role: ActorRole,
        viewer_id: str,
        verdict: Verdict,
        comment: Optional[str] = None,
    ) -> DecisionCard:
        """
        Submit a verdict as the viewer and return the refreshed card.

        Raises:
            UnauthorizedAuthor: Viewer may not decide in the collection
            DecisionNotAllowed: Protocol does not accept decisions
            ValidationError: Verdict not allowed for the collection
            NotFoundError: Protocol does not exist
        """
        await self.service.record_decision(
            protocol_id, viewer_id, viewer_role, collection, verdict, comment,
        )
        return await self.render_decision(protocol_id, collection, viewer_role, viewer_id)

    def _card(
        self,
        protocol: Protocol,
        collection: DecisionCollection,
        viewer_role: ActorRole,
        viewer_id: Optional[str],
        aggregation: AggregationResult,
        chair_name: str,
    ) -> DecisionCard:
        active = protocol.active_decisions(collection)
        hides_verdicts = viewer_role is ActorRole.PROPONENT and collection is DecisionCollection.ACCEPTED
        visible = () if hides_verdicts else active

        own = None
        if viewer_id is not None:
            own = next((d for d in reversed(active) if d.author_id == viewer_id), None)

        return DecisionCard(
            protocol_id=protocol.id,
            collection=collection,
            viewer_role=viewer_role,
            status=protocol.status,
            decisions=visible,
            own_decision=own,
            outcome=aggregation.outcome,
            outcome_explanation=aggregation.explanation,
            can_submit=self._can_submit(protocol, collection, viewer_role, viewer_id),
            chairperson_name=chair_name,
        )

    @staticmethod
    def _can_submit(
        protocol: Protocol,
        collection: DecisionCollection,
        viewer_role: ActorRole,
        viewer_id: Optional[str],
    ) -> bool:
        if protocol.status not in DECISION_STATUSES:
            return False
        if collection is DecisionCollection.APPROVED:
            return viewer_role is ActorRole.CHAIRPERSON
        return viewer_role is ActorRole.REVIEWER and viewer_id in protocol.assigned_reviewers
