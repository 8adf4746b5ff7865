from enum import Enum
from typing import Optional


class SessionState(str, Enum):
    NONE = "none"
    OPEN = "open"
    SUBMITTED = "submitted"
    CANCELLED = "cancelled"


TERMINAL_STATES = {SessionState.SUBMITTED, SessionState.CANCELLED}

VALID_TRANSITIONS = {
    SessionState.NONE: [SessionState.OPEN],
    SessionState.OPEN: [SessionState.SUBMITTED, SessionState.CANCELLED],
    SessionState.SUBMITTED: [],
    SessionState.CANCELLED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: SessionState, to_state: SessionState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def state_of(status: Optional[str]) -> SessionState:
    """Map a stored session status (or no session) to a state."""
    if not status:
        return SessionState.NONE
    return SessionState(status)


def can_transition(from_state: SessionState, to_state: SessionState) -> bool:
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: SessionState, to_state: SessionState) -> SessionState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def open_session(current_state: SessionState) -> SessionState:
    return transition(current_state, SessionState.OPEN)


def submit(current_state: SessionState) -> SessionState:
    return transition(current_state, SessionState.SUBMITTED)


def cancel(current_state: SessionState) -> SessionState:
    return transition(current_state, SessionState.CANCELLED)


def is_terminal(state: SessionState) -> bool:
    return state in TERMINAL_STATES
