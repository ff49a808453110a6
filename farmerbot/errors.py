"""Exceptions raised by the farm power manager.

Vetoes and lookups are resolved locally; ledger failures surface as
PowerCommandError after a best-effort read-back of the committed power target.
"""
from __future__ import annotations

from enum import Enum


class FarmerBotError(Exception):
    """Base exception for farm power management errors."""
    def __init__(self, message: str, node_id: int | None = None):
        super().__init__(message)
        self.message = message
        self.node_id = node_id


class NodeNotFoundError(FarmerBotError):
    """Node is not part of the managed farm."""
    def __init__(self, node_id: int):
        super().__init__(f"node {node_id} is not found in the farm", node_id)


class InvalidTransitionError(FarmerBotError):
    """Engine tried to move a node along an edge the state machine forbids."""
    pass


class PowerOffVetoError(FarmerBotError):
    """A shutdown precondition failed; the ledger was not contacted."""
    reason = "veto"


class NeverShutDownError(PowerOffVetoError):
    """Node is pinned on by the operator."""
    reason = "never_shutdown"


class PublicConfigError(PowerOffVetoError):
    """Node exposes a public endpoint that must stay reachable."""
    reason = "public_config"


class RentContractError(PowerOffVetoError):
    """Node is dedicated to a tenant through a rent contract."""
    reason = "rent_contract"


class ActiveContractsError(PowerOffVetoError):
    """Node has active workload contracts."""
    reason = "active_contracts"


class RecentPowerChangeError(PowerOffVetoError):
    """Node changed power state inside the cooldown window."""
    reason = "recent_power_change"


class UsedResourcesError(PowerOffVetoError):
    """Node reports non-zero used resources."""
    reason = "used_resources"


class LastNodeProtectionError(PowerOffVetoError):
    """Powering the node off would leave the farm without an on node."""
    reason = "last_node"


class Reconciliation(str, Enum):
    """What the ledger read-back told us after a failed power command."""

    CONFIRMED = "confirmed"  # Target was committed despite the error
    UNCONFIRMED = "unconfirmed"  # Target still reports the previous value
    UNKNOWN = "unknown"  # Read-back failed or was not attempted


class PowerCommandError(FarmerBotError):
    """Setting the node power target on the ledger failed."""
    def __init__(
        self,
        message: str,
        node_id: int | None = None,
        reconciliation: Reconciliation = Reconciliation.UNKNOWN,
    ):
        super().__init__(message, node_id)
        self.reconciliation = reconciliation


class InsufficientCapacityError(FarmerBotError):
    """Demand is over threshold and there is no off node left to wake up."""
    pass
