"""Relay session state machine."""

from castrelay.schemas import RelaySessionState


class RelaySessionStateMachine:
    """State machine for relay session transitions.

    State flow with triggers:
    - NO_SESSION -> JOINED (first socket sent join)
    - JOINED -> STREAMING (host start-stream spawned a transcoder) | EMPTY (last socket left)
    - STREAMING -> JOINED (stop-stream, host left, or transcoder exited) | EMPTY (last socket left)
    - EMPTY is terminal; a later join creates a new session
    """

    TRANSITIONS: dict[RelaySessionState, set[RelaySessionState]] = {
        RelaySessionState.NO_SESSION: {RelaySessionState.JOINED},
        RelaySessionState.JOINED: {
            RelaySessionState.STREAMING,
            RelaySessionState.EMPTY,
        },
        RelaySessionState.STREAMING: {
            RelaySessionState.JOINED,
            RelaySessionState.EMPTY,
        },
        RelaySessionState.EMPTY: set(),
    }

    TERMINAL_STATES: set[RelaySessionState] = {RelaySessionState.EMPTY}

    @classmethod
    def can_transition(cls, current: RelaySessionState, new: RelaySessionState) -> bool:
        """Check if state transition is valid.

        Args:
            current: Current session state
            new: Target state to transition to

        Returns:
            True if transition is valid, False otherwise
        """
        return new in cls.TRANSITIONS.get(current, set())

    @classmethod
    def is_terminal(cls, state: RelaySessionState) -> bool:
        return state in cls.TERMINAL_STATES

    @classmethod
    def get_valid_transitions(cls, state: RelaySessionState) -> set[RelaySessionState]:
        return cls.TRANSITIONS.get(state, set())

    @classmethod
    def get_valid_sources(cls, target: RelaySessionState) -> set[RelaySessionState]:
        return {state for state, targets in cls.TRANSITIONS.items() if target in targets}

    @classmethod
    def validate(cls, current: RelaySessionState, new: RelaySessionState) -> None:
        """Raise ValueError when `current -> new` is not allowed."""
        if not cls.can_transition(current, new):
            raise ValueError(
                f"Invalid relay session transition {current} -> {new}; "
                f"allowed: {sorted(str(s) for s in cls.get_valid_transitions(current))}"
            )
