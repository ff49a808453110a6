"""Prometheus metrics for Farmerbot.

Exposes power command latency and failures, veto counts, tick outcomes and
the number of nodes per power state. The /metrics endpoint serves these in
Prometheus exposition format.
"""
from __future__ import annotations

import logging
from typing import Iterable

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)

from farmerbot.state import Node, PowerState

logger = logging.getLogger(__name__)


# --- Power command metrics ---

power_command_duration = Histogram(
    "farmerbot_power_command_seconds",
    "Duration of ledger power target commands",
    ["operation", "status"],
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
)

power_command_errors = Counter(
    "farmerbot_power_command_errors_total",
    "Total failed power target commands",
    ["operation", "reconciliation"],
)

power_vetoes = Counter(
    "farmerbot_power_vetoes_total",
    "Power-off requests refused locally",
    ["reason"],
)

# --- Tick metrics ---

tick_duration = Histogram(
    "farmerbot_tick_seconds",
    "Duration of power management ticks",
    ["status"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

ticks_total = Counter(
    "farmerbot_ticks_total",
    "Power management ticks by outcome",
    ["result"],  # success, insufficient_capacity, error
)

monitor_failures = Counter(
    "farmerbot_monitor_failures_total",
    "Failed ticks in the background monitor, each one extending its backoff",
    ["farm_id"],
)

# --- Node metrics ---

nodes_by_state = Gauge(
    "farmerbot_nodes",
    "Number of managed nodes per power state",
    ["farm_id", "state"],
)


def update_node_metrics(farm_id: int, nodes: Iterable[Node]) -> None:
    """Refresh the per-state node gauge from a registry listing."""
    counts = {state: 0 for state in PowerState}
    for node in nodes:
        counts[node.power_state] += 1
    for state, count in counts.items():
        nodes_by_state.labels(farm_id=str(farm_id), state=state.value).set(count)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
