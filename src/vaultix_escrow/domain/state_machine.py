"""Escrow State Machine Guard.

Uses python-statemachine to enforce legal status transitions at the domain
level. This is the single source of truth for escrow status changes: no
component writes ``Escrow.status`` without first calling
``validate_transition``.

Transition table:
    PENDING   -> ACTIVE      (fund)
    PENDING   -> CANCELLED   (cancel)
    ACTIVE    -> COMPLETED   (release)
    ACTIVE    -> CANCELLED   (cancel)
    ACTIVE    -> DISPUTED    (escalate)
    DISPUTED  -> COMPLETED   (release)
    DISPUTED  -> CANCELLED   (cancel)
    COMPLETED, CANCELLED     terminal
"""

from __future__ import annotations

from functools import lru_cache

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from vaultix_escrow.domain.enums import EscrowStatus
from vaultix_escrow.domain.exceptions import InvalidStateTransitionError


class EscrowStateMachine(StateMachine):
    """State machine that guards escrow lifecycle transitions.

    Usage:
        sm = EscrowStateMachine(current_status="PENDING")
        sm.fund()            # transitions to ACTIVE
        sm.status            # "ACTIVE"
    """

    # --- States ---
    PENDING = State("PENDING", initial=True)
    ACTIVE = State("ACTIVE")
    DISPUTED = State("DISPUTED")
    COMPLETED = State("COMPLETED", final=True)
    CANCELLED = State("CANCELLED", final=True)

    # --- Events / Transitions ---
    fund = PENDING.to(ACTIVE)
    cancel = PENDING.to(CANCELLED) | ACTIVE.to(CANCELLED) | DISPUTED.to(CANCELLED)
    release = ACTIVE.to(COMPLETED) | DISPUTED.to(COMPLETED)
    escalate = ACTIVE.to(DISPUTED)

    def __init__(self, current_status: str = "PENDING") -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current EscrowStatus value (e.g., "ACTIVE").
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=str(current_status))

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches EscrowStatus enum)."""
        return str(self.current_state.value)


# Each target status is reached by exactly one named event.
_EVENT_FOR_TARGET: dict[EscrowStatus, str] = {
    EscrowStatus.ACTIVE: "fund",
    EscrowStatus.CANCELLED: "cancel",
    EscrowStatus.COMPLETED: "release",
    EscrowStatus.DISPUTED: "escalate",
}

TERMINAL_STATUSES = frozenset({EscrowStatus.COMPLETED, EscrowStatus.CANCELLED})


@lru_cache(maxsize=None)
def allowed_targets(status: EscrowStatus) -> frozenset[EscrowStatus]:
    """Return every status reachable from ``status`` in one transition."""
    targets = set()
    for target, event_name in _EVENT_FOR_TARGET.items():
        sm = EscrowStateMachine(current_status=EscrowStatus(status).value)
        try:
            getattr(sm, event_name)()
        except TransitionNotAllowed:
            continue
        if sm.status == target.value:
            targets.add(target)
    return frozenset(targets)


def can_transition(current: EscrowStatus | str, target: EscrowStatus | str) -> bool:
    """Return True when the transition table allows ``current -> target``."""
    try:
        current_status = EscrowStatus(current)
        target_status = EscrowStatus(target)
    except ValueError:
        return False
    return target_status in allowed_targets(current_status)


def validate_transition(
    current: EscrowStatus | str,
    target: EscrowStatus | str,
) -> EscrowStatus:
    """Validate a status change and return the new status.

    Raises:
        InvalidStateTransitionError: If the transition table denies it.
    """
    if not can_transition(current, target):
        raise InvalidStateTransitionError(str(current), str(target))
    return EscrowStatus(target)


def is_terminal(status: EscrowStatus | str) -> bool:
    """COMPLETED and CANCELLED accept no further transitions."""
    return status in TERMINAL_STATUSES
