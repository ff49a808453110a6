"""In-memory node registry for one farm.

The registry holds the locally refreshed snapshot of node facts. Records are
copied in and out so callers can only change stored state through update().
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from farmerbot.capacity import Capacity, Resources
from farmerbot.errors import NodeNotFoundError

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class PowerState(str, Enum):
    """Locally tracked power state of a node."""

    ON = "on"
    OFF = "off"
    WAKING_UP = "wakingUp"  # Power-on commanded, waiting for the node to report
    SHUTTING_DOWN = "shuttingDown"  # Power-off commanded, waiting for confirmation


@dataclass
class Node:
    """A managed node and the facts the power engine decides on."""
    id: int
    twin_id: int = 0
    power_state: PowerState = PowerState.ON
    last_time_power_state_changed: datetime = EPOCH
    last_time_periodic_wake_up: datetime = EPOCH
    resources: Resources = field(default_factory=Resources)
    never_shutdown: bool = False
    has_public_config: bool = False
    has_active_rent_contract: bool = False
    has_active_contracts: bool = False

    def has_capacity(self) -> bool:
        return not self.resources.total.is_empty()

    def demand(self) -> Capacity:
        """Used capacity as seen by the scaling heuristic.

        A rented node is reserved in full for its tenant.
        """
        if self.has_active_rent_contract:
            return self.resources.total.copy()
        return self.resources.used.copy()

    def copy(self) -> Node:
        return replace(self, resources=self.resources.copy())


class NodeRegistry:
    """Lock-guarded map of node id to node record for a single farm."""

    def __init__(self, farm_id: int, nodes: Iterable[Node] = ()):
        self.farm_id = farm_id
        self._lock = threading.Lock()
        self._nodes: dict[int, Node] = {node.id: node.copy() for node in nodes}

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        with self._lock:
            return node_id in self._nodes

    def get(self, node_id: int) -> Node:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise NodeNotFoundError(node_id)
            return node.copy()

    def update(self, node: Node) -> None:
        """Replace the stored record for node.id.

        The registry never grows through update; unknown ids are rejected.
        """
        with self._lock:
            if node.id not in self._nodes:
                raise NodeNotFoundError(node.id)
            self._nodes[node.id] = node.copy()

    def list_nodes(self) -> list[Node]:
        with self._lock:
            return [self._nodes[node_id].copy() for node_id in sorted(self._nodes)]

    def filter_by_state(self, states: Iterable[PowerState]) -> list[Node]:
        wanted = set(states)
        return [node for node in self.list_nodes() if node.power_state in wanted]

    def replace_all(self, farm_id: int, nodes: Iterable[Node]) -> None:
        """Swap in a freshly loaded snapshot."""
        fresh = {node.id: node.copy() for node in nodes}
        with self._lock:
            self.farm_id = farm_id
            self._nodes = fresh
