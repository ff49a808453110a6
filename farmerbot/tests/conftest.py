from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from farmerbot.capacity import DIMENSIONS, Capacity, Resources
from farmerbot.config import settings
from farmerbot.ledger import Identity, PowerTarget
from farmerbot.policy import FarmPolicy, dedupe_priority
from farmerbot.power import PowerManager
from farmerbot.state import Node, NodeRegistry

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
COOLDOWN = timedelta(minutes=30)


@pytest.fixture(autouse=True)
def _set_testing_env(monkeypatch):
    """Keep the background monitor and the periodic wake-up out of unit tests."""
    monkeypatch.setattr(settings, "testing", True)
    monkeypatch.setattr(settings, "periodic_wake_up_enabled", False)
    yield


@pytest.fixture
def identity() -> Identity:
    return Identity(twin_id=1, network="dev")


@pytest.fixture
def ledger() -> AsyncMock:
    """Ledger double: every command succeeds and the target reads back as up."""
    ledger = AsyncMock()
    ledger.set_node_power_target.return_value = "0xabc"
    ledger.get_power_target.return_value = PowerTarget(down=False)
    return ledger


@pytest.fixture
def make_node():
    """Factory for idle nodes with one unit of every resource."""
    def _make(node_id: int, **overrides) -> Node:
        fields = {
            "id": node_id,
            "twin_id": 100 + node_id,
            "resources": Resources(total=Capacity(cru=1, mru=1, sru=1, hru=1), used=Capacity()),
        }
        fields.update(overrides)
        return Node(**fields)
    return _make


@pytest.fixture
def make_manager(ledger, identity):
    """Factory for a PowerManager over the given nodes, clock frozen at NOW."""
    def _make(
        nodes: list[Node],
        threshold: int = 30,
        priority: list[int] | None = None,
        **kwargs,
    ) -> PowerManager:
        registry = NodeRegistry(1, nodes)
        policy = FarmPolicy(
            farm_id=1,
            wake_up_thresholds={dim: threshold for dim in DIMENSIONS},
            cooldown=COOLDOWN,
            priority_nodes=dedupe_priority(priority or [], {node.id for node in nodes}),
        )
        kwargs.setdefault("clock", lambda: NOW)
        return PowerManager(registry, policy, kwargs.pop("ledger", ledger), identity, **kwargs)
    return _make


@pytest.fixture
def two_node_manager(make_manager, make_node) -> PowerManager:
    return make_manager([make_node(1), make_node(2)])


@pytest.fixture
def seven_node_manager(make_manager, make_node) -> PowerManager:
    return make_manager(
        [make_node(node_id) for node_id in range(1, 8)],
        threshold=80,
        priority=[7, 2, 2, 10],
    )


def set_state(manager: PowerManager, node_id: int, **changes) -> Node:
    """Apply field changes to a stored node through the registry."""
    node = manager.registry.get(node_id)
    for key, value in changes.items():
        setattr(node, key, value)
    manager.registry.update(node)
    return node
