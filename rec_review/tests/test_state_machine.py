"""
Tests for the protocol state machine.

Validates the transition table, role restrictions and absorbing states.
"""
import pytest

from rec_review.errors import InvalidTransition
from rec_review.lifecycle import (
    ActorRole,
    ProtocolStateMachine,
    ProtocolStatus,
    TERMINAL_STATUSES,
    TRANSITION_TABLE,
    can_transition,
)

S = ProtocolStatus
R = ActorRole


class TestProtocolStateMachine:
    """Test transition validation."""

    def test_happy_path_moves_allowed(self):
        """The typical progression is legal for the roles that make it."""
        sm = ProtocolStateMachine()

        path = [
            (None, S.PENDING_UPLOAD, R.PROPONENT),
            (S.PENDING_UPLOAD, S.SUBMITTED, R.PROPONENT),
            (S.SUBMITTED, S.UNDER_REVIEW, R.CHAIRPERSON),
            (S.UNDER_REVIEW, S.NEEDS_REVISION, R.SYSTEM),
            (S.NEEDS_REVISION, S.RESUBMITTED, R.PROPONENT),
            (S.RESUBMITTED, S.UNDER_REVIEW, R.CHAIRPERSON),
            (S.UNDER_REVIEW, S.APPROVED, R.CHAIRPERSON),
            (S.APPROVED, S.ARCHIVED, R.CHAIRPERSON),
        ]
        for current, target, role in path:
            is_valid, reason = sm.validate_transition(current, target, role)
            assert is_valid, f"{current} -> {target} by {role} should be valid: {reason}"
            assert reason is None

    def test_only_chairperson_decides_final_status(self):
        """Approved, Rejected, Exempted and Archived are chairperson-only."""
        sm = ProtocolStateMachine()

        for target in [S.APPROVED, S.REJECTED, S.EXEMPTED]:
            for role in [R.PROPONENT, R.REVIEWER, R.SYSTEM]:
                assert not sm.can_transition(S.UNDER_REVIEW, target, role)
            assert sm.can_transition(S.UNDER_REVIEW, target, R.CHAIRPERSON)

        for role in [R.PROPONENT, R.REVIEWER, R.SYSTEM]:
            assert not sm.can_transition(S.REJECTED, S.ARCHIVED, role)

    def test_only_proponent_resubmits(self):
        sm = ProtocolStateMachine()

        assert sm.can_transition(S.NEEDS_REVISION, S.RESUBMITTED, R.PROPONENT)
        for role in [R.REVIEWER, R.CHAIRPERSON, R.SYSTEM]:
            is_valid, reason = sm.validate_transition(S.NEEDS_REVISION, S.RESUBMITTED, role)
            assert not is_valid
            assert "may not" in reason

    def test_system_expires_any_non_terminal_status(self):
        sm = ProtocolStateMachine()

        for status in set(S) - TERMINAL_STATUSES:
            assert sm.can_transition(status, S.EXPIRED, R.SYSTEM), status
            assert not sm.can_transition(status, S.EXPIRED, R.CHAIRPERSON), status

    def test_terminal_statuses_cannot_expire(self):
        sm = ProtocolStateMachine()

        for status in TERMINAL_STATUSES:
            assert not sm.can_transition(status, S.EXPIRED, R.SYSTEM)

    def test_archived_is_absorbing(self):
        """No role can move a protocol out of Archived."""
        sm = ProtocolStateMachine()

        for target in S:
            for role in R:
                is_valid, reason = sm.validate_transition(S.ARCHIVED, target, role)
                assert not is_valid
        assert sm.get_allowed_transitions(S.ARCHIVED) == []

    def test_same_status_rejected(self):
        sm = ProtocolStateMachine()

        is_valid, reason = sm.validate_transition(S.UNDER_REVIEW, S.UNDER_REVIEW, R.CHAIRPERSON)
        assert not is_valid
        assert "Already" in reason

    def test_pairs_outside_table_always_rejected(self):
        """Every (current, next) pair not in the table fails for every role."""
        sm = ProtocolStateMachine()

        for current in [None] + list(S):
            for target in S:
                if (current, target) in TRANSITION_TABLE:
                    continue
                for role in R:
                    assert not sm.can_transition(current, target, role), f"{current} -> {target}"

    def test_creation_only_into_pending_upload(self):
        sm = ProtocolStateMachine()

        assert sm.can_transition(None, S.PENDING_UPLOAD, R.PROPONENT)
        assert not sm.can_transition(None, S.SUBMITTED, R.PROPONENT)
        assert not sm.can_transition(None, S.APPROVED, R.CHAIRPERSON)

    def test_unknown_values_rejected(self):
        sm = ProtocolStateMachine()

        is_valid, reason = sm.validate_transition(S.UNDER_REVIEW, "Published", R.CHAIRPERSON)
        assert not is_valid
        assert "Invalid target status" in reason

        is_valid, reason = sm.validate_transition("Limbo", S.APPROVED, R.CHAIRPERSON)
        assert not is_valid
        assert "Invalid current status" in reason

        is_valid, reason = sm.validate_transition(S.UNDER_REVIEW, S.APPROVED, "dean")
        assert not is_valid
        assert "Invalid actor role" in reason

    def test_accepts_wire_strings(self):
        sm = ProtocolStateMachine()

        assert sm.can_transition("Under Review", "Approved", "chairperson")

    def test_require_transition_raises_with_context(self):
        sm = ProtocolStateMachine()

        with pytest.raises(InvalidTransition) as exc_info:
            sm.require_transition(S.PENDING_UPLOAD, S.APPROVED, R.PROPONENT)

        error = exc_info.value
        assert error.code == "INVALID_TRANSITION"
        assert error.current == "Pending Upload"
        assert error.target == "Approved"
        assert error.actor_role == "proponent"
        assert error.to_dict()["code"] == "INVALID_TRANSITION"

    def test_allowed_transitions_for_role(self):
        sm = ProtocolStateMachine()

        chair_moves = sm.get_allowed_transitions(S.UNDER_REVIEW, R.CHAIRPERSON)
        assert chair_moves == [S.NEEDS_REVISION, S.APPROVED, S.REJECTED, S.EXEMPTED]

        system_moves = sm.get_allowed_transitions(S.UNDER_REVIEW, R.SYSTEM)
        assert system_moves == [S.NEEDS_REVISION, S.EXPIRED]

    def test_is_terminal(self):
        sm = ProtocolStateMachine()

        assert sm.is_terminal(S.EXEMPTED)
        assert sm.is_terminal("Archived")
        assert not sm.is_terminal(S.RESUBMITTED)


class TestTransitionDescription:
    """Test transition metadata."""

    def test_describe_valid_transition(self):
        sm = ProtocolStateMachine()

        desc = sm.describe_transition(S.UNDER_REVIEW, S.APPROVED, R.CHAIRPERSON)
        assert desc['from_status'] == 'Under Review'
        assert desc['to_status'] == 'Approved'
        assert desc['is_valid'] is True
        assert desc['rejection_reason'] is None
        assert desc['from_terminal'] is False
        assert desc['to_terminal'] is True

    def test_describe_invalid_transition(self):
        sm = ProtocolStateMachine()

        desc = sm.describe_transition(S.APPROVED, S.UNDER_REVIEW, R.CHAIRPERSON)
        assert desc['is_valid'] is False
        assert desc['from_terminal'] is True
        assert desc['rejection_reason'] is not None


def test_module_level_can_transition():
    assert can_transition(S.SUBMITTED, S.UNDER_REVIEW, R.CHAIRPERSON)
    assert not can_transition(S.SUBMITTED, S.UNDER_REVIEW, R.PROPONENT)
