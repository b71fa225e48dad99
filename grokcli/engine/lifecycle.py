"""Turn and connection state machines.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransitionError rather than silently proceeding.

Orchestrator turn:

    IDLE ──> REQUESTING ──> STREAMING ──┬──> TOOL_ROUND ──> REQUESTING
                                        ├──> DONE
                                        ├──> ABORTED
                                        └──> ERROR

    DONE / ABORTED / ERROR ──> IDLE  (next user message)

Protocol server connection:

    DISCONNECTED ──> CONNECTING ──> HANDSHAKING ──> READY ──> DISCONNECTING ──> DISCONNECTED

    Any non-terminal state ──> FAILED
"""
from __future__ import annotations

from .errors import InvalidTransitionError
from .models import AgentPhase, ConnectionState

_ENDINGS = {AgentPhase.DONE, AgentPhase.ABORTED, AgentPhase.ERROR}

AGENT_TRANSITIONS: dict[AgentPhase, set[AgentPhase]] = {
    AgentPhase.IDLE: {AgentPhase.REQUESTING, AgentPhase.ABORTED},
    AgentPhase.REQUESTING: {AgentPhase.STREAMING} | _ENDINGS,
    AgentPhase.STREAMING: {AgentPhase.TOOL_ROUND} | _ENDINGS,
    AgentPhase.TOOL_ROUND: {AgentPhase.REQUESTING} | _ENDINGS,
    AgentPhase.DONE: {AgentPhase.IDLE},
    AgentPhase.ABORTED: {AgentPhase.IDLE},
    AgentPhase.ERROR: {AgentPhase.IDLE},
}

CONNECTION_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {
        ConnectionState.CONNECTING,
    },
    ConnectionState.CONNECTING: {
        ConnectionState.HANDSHAKING,
        ConnectionState.DISCONNECTING,
        ConnectionState.FAILED,
    },
    ConnectionState.HANDSHAKING: {
        ConnectionState.READY,
        ConnectionState.DISCONNECTING,
        ConnectionState.FAILED,
    },
    ConnectionState.READY: {
        ConnectionState.DISCONNECTING,
        ConnectionState.FAILED,
    },
    ConnectionState.DISCONNECTING: {
        ConnectionState.DISCONNECTED,
        ConnectionState.FAILED,
    },
    ConnectionState.FAILED: set(),
}


def validate_agent_transition(current: AgentPhase, target: AgentPhase) -> None:
    """Validate a turn transition. Raises InvalidTransitionError if invalid."""
    allowed = AGENT_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransitionError(
            "agent", current.value, target.value,
            sorted(s.value for s in allowed),
        )


def validate_connection_transition(
    current: ConnectionState, target: ConnectionState,
) -> None:
    """Validate a connection transition. Raises InvalidTransitionError if invalid."""
    allowed = CONNECTION_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransitionError(
            "connection", current.value, target.value,
            sorted(s.value for s in allowed),
        )
