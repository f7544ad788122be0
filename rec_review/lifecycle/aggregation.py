"""
Decision supersession and reviewer-pool aggregation.

The aggregation rule derives the protocol disposition from the active
decisions in the ``accepted`` collection:

- any active ``reject`` or ``revise`` from an assigned active reviewer
  -> needs_revision
- unanimous ``approve`` from every assigned active reviewer -> eligible
  for the chairperson's final decision
- otherwise -> pending

The result depends only on the set of active verdicts, never on the
order in which they were submitted.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from .models import Decision
from .statuses import DecisionCollection, Verdict


logger = logging.getLogger(__name__)

RESUBMISSION = "resubmission"


class AggregateOutcome(str, Enum):
    PENDING = "pending"
    ELIGIBLE = "eligible"
    NEEDS_REVISION = "needs_revision"


@dataclass(frozen=True)
class AggregationResult:
    """Outcome of aggregating the reviewer pool, with its evidence."""
    outcome: AggregateOutcome
    verdicts: Dict[str, Verdict] = field(default_factory=dict)
    missing: Tuple[str, ...] = ()
    dissenting: Tuple[str, ...] = ()
    explanation: str = ""

    @property
    def is_eligible(self) -> bool:
        return self.outcome is AggregateOutcome.ELIGIBLE


def decisions_to_supersede(existing: Iterable[Decision], new: Decision) -> List[Decision]:
    """
    Active decisions the new decision replaces.

    At most one decision per (protocol, author, collection) is active;
    the newer one supersedes, never mutates, the prior one.
    """
    return [
        d for d in existing
        if d.is_active
        and d.protocol_id == new.protocol_id
        and d.author_id == new.author_id
        and d.collection == new.collection
        and d.id != new.id
    ]


def latest_active_by_author(
    decisions: Iterable[Decision],
    collection: DecisionCollection,
) -> Dict[str, Decision]:
    """Map author id to that author's latest active decision in a collection."""
    latest: Dict[str, Decision] = {}
    for decision in decisions:
        if not decision.is_active or decision.collection != collection:
            continue
        current = latest.get(decision.author_id)
        if current is None or (decision.created_at, decision.id) > (current.created_at, current.id):
            latest[decision.author_id] = decision
    return latest


def aggregate_reviewer_decisions(
    decisions: Sequence[Decision],
    assigned_reviewers: Iterable[str],
    active_reviewer_ids: Optional[Iterable[str]] = None,
) -> AggregationResult:
    """
    Aggregate the reviewer pool's active ``accepted`` decisions.

    Args:
        decisions: All decisions of the protocol (superseded ones are ignored)
        assigned_reviewers: Reviewer ids currently assigned to the protocol
        active_reviewer_ids: Ids of reviewers whose accounts are active.
            If None, every assigned reviewer counts as active.

    Returns:
        AggregationResult with outcome, counted verdicts, missing reviewers
        and dissenting reviewers
    """
    pool = set(assigned_reviewers)
    if active_reviewer_ids is not None:
        pool &= set(active_reviewer_ids)

    latest = latest_active_by_author(decisions, DecisionCollection.ACCEPTED)
    verdicts = {
        author: latest[author].verdict
        for author in sorted(pool)
        if author in latest
    }
    missing = tuple(sorted(pool - set(verdicts)))
    dissenting = tuple(sorted(
        author for author, verdict in verdicts.items()
        if verdict in (Verdict.REJECT, Verdict.REVISE)
    ))

    if not pool:
        outcome = AggregateOutcome.PENDING
        explanation = "No active reviewers assigned."
    elif dissenting:
        outcome = AggregateOutcome.NEEDS_REVISION
        explanation = f"Revision requested by {', '.join(dissenting)}."
    elif missing:
        outcome = AggregateOutcome.PENDING
        explanation = f"Awaiting {len(missing)} of {len(pool)} reviewer decisions."
    else:
        outcome = AggregateOutcome.ELIGIBLE
        explanation = f"All {len(pool)} reviewers approved; ready for chairperson decision."

    return AggregationResult(
        outcome=outcome,
        verdicts=verdicts,
        missing=missing,
        dissenting=dissenting,
        explanation=explanation,
    )
