"""Turn lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> COMPOSING ──> SPAWNED ──> STREAMING ──> COMPLETING ──> IDLE
                 │            │                          ^
                 │            └──── abort ───────────────┤
                 └──────── spawn failure ────────────────┘

    STREAMING ──> COMPLETING on stream end, process exit, or abort.
"""
from __future__ import annotations

from enum import Enum


class TurnPhase(Enum):
    IDLE = "idle"
    COMPOSING = "composing"
    SPAWNED = "spawned"
    STREAMING = "streaming"
    COMPLETING = "completing"


# Phases in which a turn holds the agent instance.
ACTIVE_PHASES = frozenset({
    TurnPhase.COMPOSING,
    TurnPhase.SPAWNED,
    TurnPhase.STREAMING,
})

# Phases in which abort() has a process to kill.
ABORTABLE_PHASES = frozenset({TurnPhase.SPAWNED, TurnPhase.STREAMING})

VALID_TRANSITIONS: dict[TurnPhase, set[TurnPhase]] = {
    TurnPhase.IDLE: {
        TurnPhase.COMPOSING,
    },
    TurnPhase.COMPOSING: {
        TurnPhase.SPAWNED,
        TurnPhase.COMPLETING,  # spawn failed
    },
    TurnPhase.SPAWNED: {
        TurnPhase.STREAMING,
        TurnPhase.COMPLETING,  # aborted before output
    },
    TurnPhase.STREAMING: {
        TurnPhase.COMPLETING,
    },
    TurnPhase.COMPLETING: {
        TurnPhase.IDLE,
    },
}


def validate_transition(current: TurnPhase, target: TurnPhase) -> None:
    """Validate a phase transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid turn transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
