"""
Protocol review lifecycle.

Closed status vocabulary, the role-aware transition table, the domain
entities, and the rule that aggregates reviewer decisions.
"""
from .statuses import (
    ActorRole,
    AssessmentFormType,
    AssessmentStatus,
    DecisionCollection,
    ProtocolStatus,
    ReviewerRole,
    Verdict,
    TERMINAL_STATUSES,
    verdict_label,
)
from .state_machine import ProtocolStateMachine, TRANSITION_TABLE, can_transition
from .models import Assessment, Decision, Protocol, Reviewer
from .aggregation import (
    AggregateOutcome,
    AggregationResult,
    aggregate_reviewer_decisions,
    decisions_to_supersede,
)


__all__ = [
    'ActorRole',
    'AssessmentFormType',
    'AssessmentStatus',
    'DecisionCollection',
    'ProtocolStatus',
    'ReviewerRole',
    'Verdict',
    'TERMINAL_STATUSES',
    'verdict_label',
    'ProtocolStateMachine',
    'TRANSITION_TABLE',
    'can_transition',
    'Assessment',
    'Decision',
    'Protocol',
    'Reviewer',
    'AggregateOutcome',
    'AggregationResult',
    'aggregate_reviewer_decisions',
    'decisions_to_supersede',
]
