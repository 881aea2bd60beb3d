"""Tests for the EscrowStateMachine domain guard.

These tests verify that:
    1. Exactly the nine table edges are allowed.
    2. Everything else, including every move out of a terminal state, is denied.
    3. validate_transition raises an InvalidStateError naming both states.
"""

from __future__ import annotations

import itertools

import pytest
from statemachine.exceptions import TransitionNotAllowed

from vaultix_escrow.domain.enums import EscrowStatus
from vaultix_escrow.domain.exceptions import InvalidStateError, InvalidStateTransitionError
from vaultix_escrow.domain.state_machine import (
    EscrowStateMachine,
    allowed_targets,
    can_transition,
    is_terminal,
    validate_transition,
)

S = EscrowStatus
LEGAL_EDGES = {
    (S.PENDING, S.ACTIVE),
    (S.PENDING, S.CANCELLED),
    (S.ACTIVE, S.COMPLETED),
    (S.ACTIVE, S.CANCELLED),
    (S.ACTIVE, S.DISPUTED),
    (S.DISPUTED, S.COMPLETED),
    (S.DISPUTED, S.CANCELLED),
}


class TestHappyPath:
    """PENDING -> ACTIVE -> COMPLETED through the named events."""

    def test_full_lifecycle(self) -> None:
        sm = EscrowStateMachine("PENDING")
        assert sm.status == "PENDING"

        sm.fund()
        assert sm.status == "ACTIVE"

        sm.release()
        assert sm.status == "COMPLETED"


class TestDisputePath:
    def test_escalate_from_active(self) -> None:
        sm = EscrowStateMachine("ACTIVE")
        sm.escalate()
        assert sm.status == "DISPUTED"

    def test_disputed_release(self) -> None:
        sm = EscrowStateMachine("DISPUTED")
        sm.release()
        assert sm.status == "COMPLETED"

    def test_disputed_cancel(self) -> None:
        sm = EscrowStateMachine("DISPUTED")
        sm.cancel()
        assert sm.status == "CANCELLED"


class TestIllegalTransitions:
    """Illegal events raise TransitionNotAllowed on the machine itself."""

    def test_pending_cannot_release(self) -> None:
        sm = EscrowStateMachine("PENDING")
        with pytest.raises(TransitionNotAllowed):
            sm.release()

    def test_pending_cannot_escalate(self) -> None:
        sm = EscrowStateMachine("PENDING")
        with pytest.raises(TransitionNotAllowed):
            sm.escalate()

    def test_invalid_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            EscrowStateMachine("INVALID_STATUS")


class TestTransitionTable:
    def test_only_table_edges_allowed(self) -> None:
        allowed = {
            (a, b) for a, b in itertools.product(S, S) if can_transition(a, b)
        }
        assert allowed == LEGAL_EDGES

    @pytest.mark.parametrize("current", list(S))
    def test_allowed_targets_matches_can_transition(self, current: EscrowStatus) -> None:
        expected = {b for a, b in LEGAL_EDGES if a == current}
        assert allowed_targets(current) == expected

    @pytest.mark.parametrize("terminal", [S.COMPLETED, S.CANCELLED])
    def test_terminal_denies_everything(self, terminal: EscrowStatus) -> None:
        assert is_terminal(terminal)
        assert allowed_targets(terminal) == frozenset()
        for target in S:
            assert not can_transition(terminal, target)

    def test_non_terminal_statuses(self) -> None:
        for status in (S.PENDING, S.ACTIVE, S.DISPUTED):
            assert not is_terminal(status)

    def test_self_transitions_denied(self) -> None:
        for status in S:
            assert not can_transition(status, status)

    def test_unknown_values_are_denied(self) -> None:
        assert not can_transition("PENDING", "ARCHIVED")
        assert not can_transition("NOPE", "ACTIVE")

    def test_accepts_plain_strings(self) -> None:
        assert can_transition("ACTIVE", "DISPUTED")


class TestValidateTransitionFunction:
    def test_valid_transition(self) -> None:
        assert validate_transition("PENDING", "ACTIVE") is S.ACTIVE

    def test_invalid_transition_names_both_states(self) -> None:
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            validate_transition(S.PENDING, S.COMPLETED)
        assert "PENDING" in str(exc_info.value)
        assert "COMPLETED" in str(exc_info.value)
        assert exc_info.value.current_state == "PENDING"
        assert exc_info.value.attempted_state == "COMPLETED"

    def test_transition_error_is_invalid_state(self) -> None:
        with pytest.raises(InvalidStateError):
            validate_transition(S.CANCELLED, S.ACTIVE)
