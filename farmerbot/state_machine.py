"""Power state transition rules.

Node power lifecycle:
    off -> wakingUp -> on        (power-on command, confirmed by the node)
    on -> shuttingDown -> off    (power-off command, confirmed by the ledger)
    shuttingDown -> wakingUp     (operator power-on overrides a pending shutdown)

The engine only ever enters the transient states. Leaving them is the job of
the external reconciliation that pushes confirmed on/off state into the
registry.
"""
from __future__ import annotations

from farmerbot.errors import InvalidTransitionError
from farmerbot.state import PowerState


class PowerStateMachine:
    """Centralized power transition logic."""

    ENGINE_TRANSITIONS: dict[PowerState, set[PowerState]] = {
        PowerState.ON: {PowerState.SHUTTING_DOWN},
        PowerState.OFF: {PowerState.WAKING_UP},
        PowerState.SHUTTING_DOWN: {PowerState.WAKING_UP},
        PowerState.WAKING_UP: set(),
    }

    # Only stable states can be confirmed from outside; a node may be
    # powered by hand, so any state can be confirmed on or off.
    CONFIRMED_STATES: set[PowerState] = {PowerState.ON, PowerState.OFF}

    # States in which a node counts as staying up for the farm
    KEEPS_FARM_ON: set[PowerState] = {PowerState.ON, PowerState.WAKING_UP}

    @classmethod
    def can_transition(cls, current: PowerState, target: PowerState) -> bool:
        """Check if the engine may move a node from current to target."""
        return target in cls.ENGINE_TRANSITIONS.get(current, set())

    @classmethod
    def can_confirm(cls, current: PowerState, target: PowerState) -> bool:
        """Check if an externally confirmed state may replace current."""
        if current == target:
            return True
        return target in cls.CONFIRMED_STATES

    @classmethod
    def ensure_transition(cls, node_id: int, current: PowerState, target: PowerState) -> None:
        if not cls.can_transition(current, target):
            raise InvalidTransitionError(
                f"node {node_id} cannot move from {current.value} to {target.value}",
                node_id,
            )
