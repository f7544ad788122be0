"""
State machine for validating protocol status transitions.

Ensures that status changes follow the fixed transition table and that
each move is made by a role permitted to make it (e.g., only the
chairperson may approve, only the proponent may resubmit).
"""
from typing import Dict, FrozenSet, List, Optional, Any, Tuple
import logging

from ..errors import InvalidTransition
from .statuses import ActorRole, ProtocolStatus, TERMINAL_STATUSES


logger = logging.getLogger(__name__)

S = ProtocolStatus
R = ActorRole

NON_TERMINAL_STATUSES: FrozenSet[ProtocolStatus] = frozenset(set(ProtocolStatus) - TERMINAL_STATUSES)

# (current, next) -> roles allowed to make the move. ``None`` is creation.
TransitionKey = Tuple[Optional[ProtocolStatus], ProtocolStatus]


def _build_transition_table() -> Dict[TransitionKey, FrozenSet[ActorRole]]:
    table: Dict[TransitionKey, FrozenSet[ActorRole]] = {
        (None, S.PENDING_UPLOAD): frozenset({R.PROPONENT}),
        (S.PENDING_UPLOAD, S.SUBMITTED): frozenset({R.PROPONENT}),
        (S.SUBMITTED, S.UNDER_REVIEW): frozenset({R.CHAIRPERSON}),
        (S.UNDER_REVIEW, S.NEEDS_REVISION): frozenset({R.CHAIRPERSON, R.SYSTEM}),
        (S.UNDER_REVIEW, S.APPROVED): frozenset({R.CHAIRPERSON}),
        (S.UNDER_REVIEW, S.REJECTED): frozenset({R.CHAIRPERSON}),
        (S.UNDER_REVIEW, S.EXEMPTED): frozenset({R.CHAIRPERSON}),
        (S.NEEDS_REVISION, S.RESUBMITTED): frozenset({R.PROPONENT}),
        (S.RESUBMITTED, S.UNDER_REVIEW): frozenset({R.CHAIRPERSON, R.SYSTEM}),
    }
    for status in NON_TERMINAL_STATUSES:
        table[(status, S.EXPIRED)] = frozenset({R.SYSTEM})
    for status in TERMINAL_STATUSES - {S.ARCHIVED}:
        table[(status, S.ARCHIVED)] = frozenset({R.CHAIRPERSON})
    return table


TRANSITION_TABLE: Dict[TransitionKey, FrozenSet[ActorRole]] = _build_transition_table()


def _coerce_status(value: Any) -> Optional[ProtocolStatus]:
    if value is None or isinstance(value, ProtocolStatus):
        return value
    try:
        return ProtocolStatus(value)
    except ValueError:
        return None


class ProtocolStateMachine:
    """
    Validates status transitions for the protocol review lifecycle.

    Status model:
    - Terminal: Approved, Rejected, Exempted, Expired, Archived
    - Archived is absorbing: nothing leaves it
    - Non-terminal statuses may always be expired by the system

    Transition rules are the closed ``TRANSITION_TABLE``; any pair not
    present is illegal regardless of role.
    """

    def __init__(self, table: Optional[Dict[TransitionKey, FrozenSet[ActorRole]]] = None):
        self.table = table or TRANSITION_TABLE

    def validate_transition(
        self,
        current: Optional[Any],
        target: Any,
        actor_role: Any,
    ) -> tuple[bool, Optional[str]]:
        """
        Validate if a status transition is allowed for an actor.

        Args:
            current: Current status (None for a protocol being created)
            target: Proposed new status
            actor_role: Role of the actor requesting the move

        Returns:
            Tuple of (is_valid, reason)
            - is_valid: True if transition is allowed
            - reason: Explanation if transition is rejected, None otherwise
        """
        target_status = _coerce_status(target)
        if target_status is None:
            return False, f"Invalid target status: {target}"

        current_status = _coerce_status(current)
        if current is not None and current_status is None:
            return False, f"Invalid current status: {current}"

        try:
            role = ActorRole(actor_role)
        except ValueError:
            return False, f"Invalid actor role: {actor_role}"

        if current_status is ProtocolStatus.ARCHIVED:
            return False, "Archived is absorbing"

        if current_status == target_status:
            return False, f"Already {target_status.value}"

        allowed_roles = self.table.get((current_status, target_status))
        if allowed_roles is None:
            label = current_status.value if current_status else "(new)"
            return False, f"No transition from {label} to {target_status.value}"

        if role not in allowed_roles:
            return False, f"Role {role.value} may not move into {target_status.value}"

        return True, None

    def can_transition(self, current: Optional[Any], target: Any, actor_role: Any) -> bool:
        is_valid, _ = self.validate_transition(current, target, actor_role)
        return is_valid

    def require_transition(self, current: Optional[Any], target: Any, actor_role: Any) -> None:
        """Raise InvalidTransition unless the move is legal for the actor."""
        is_valid, reason = self.validate_transition(current, target, actor_role)
        if not is_valid:
            logger.info(f"Rejected transition {current} -> {target} by {actor_role}: {reason}")
            raise InvalidTransition(
                _label(current),
                _label(target),
                _label(actor_role),
                reason,
            )

    def is_terminal(self, status: Any) -> bool:
        return _coerce_status(status) in TERMINAL_STATUSES

    def get_allowed_transitions(
        self,
        current: Optional[Any],
        actor_role: Optional[Any] = None,
    ) -> List[ProtocolStatus]:
        """
        Get target statuses reachable from ``current``.

        Args:
            current: Starting status
            actor_role: If given, only moves this role may make

        Returns:
            Allowed target statuses in vocabulary order
        """
        current_status = _coerce_status(current)
        if current is not None and current_status is None:
            return []

        role = ActorRole(actor_role) if actor_role is not None else None
        return [
            target for target in ProtocolStatus
            if (current_status, target) in self.table
            and (role is None or role in self.table[(current_status, target)])
        ]

    def describe_transition(
        self,
        current: Optional[Any],
        target: Any,
        actor_role: Any,
    ) -> Dict[str, Any]:
        """
        Describe a status transition with metadata.

        Returns:
            Dictionary with transition details and validity
        """
        is_valid, reason = self.validate_transition(current, target, actor_role)
        current_status = _coerce_status(current)
        target_status = _coerce_status(target)

        return {
            'from_status': _label(current),
            'to_status': _label(target),
            'actor_role': _label(actor_role),
            'is_valid': is_valid,
            'rejection_reason': reason,
            'from_terminal': current_status in TERMINAL_STATUSES if current_status else False,
            'to_terminal': target_status in TERMINAL_STATUSES if target_status else False,
        }


def _label(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value.value if hasattr(value, "value") else str(value)


_default_machine = ProtocolStateMachine()


def can_transition(current: Optional[Any], target: Any, actor_role: Any) -> bool:
    """Module-level shortcut over the default transition table."""
    return _default_machine.can_transition(current, target, actor_role)
