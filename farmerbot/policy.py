"""Farm-level power policy derived from the snapshot and settings."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta

from farmerbot.capacity import DIMENSIONS
from farmerbot.config import settings
from farmerbot.schemas import FarmSnapshot

logger = logging.getLogger(__name__)


def _parse_time_of_day(value: str) -> time:
    hours, _, minutes = value.partition(":")
    return time(hour=int(hours), minute=int(minutes or 0))


def dedupe_priority(priority_nodes: list[int], included: set[int]) -> list[int]:
    """Keep the first position of each included priority node."""
    ordered: list[int] = []
    for node_id in priority_nodes:
        if node_id not in included:
            logger.debug(f"Ignoring priority node {node_id}: not in the included set")
            continue
        if node_id not in ordered:
            ordered.append(node_id)
    return ordered


@dataclass
class FarmPolicy:
    """Thresholds, cooldown and priorities that drive power decisions."""
    farm_id: int
    wake_up_thresholds: dict[str, int] = field(
        default_factory=lambda: {dim: settings.default_wake_up_threshold for dim in DIMENSIONS}
    )
    cooldown: timedelta = field(default_factory=lambda: timedelta(seconds=settings.default_cooldown))
    priority_nodes: list[int] = field(default_factory=list)
    periodic_wake_up_start: time = field(
        default_factory=lambda: _parse_time_of_day(settings.periodic_wake_up_start)
    )
    periodic_wake_up_limit: int = field(default_factory=lambda: settings.periodic_wake_up_limit)

    @classmethod
    def from_snapshot(cls, snapshot: FarmSnapshot) -> FarmPolicy:
        included = {node.id for node in snapshot.managed_nodes()}
        configured = snapshot.wake_up_threshold_percentages
        thresholds = {
            dim: getattr(configured, dim) or settings.default_wake_up_threshold
            for dim in DIMENSIONS
        }
        cooldown = (
            snapshot.cooldown_seconds
            if snapshot.cooldown_seconds is not None
            else settings.default_cooldown
        )
        return cls(
            farm_id=snapshot.farm_id,
            wake_up_thresholds=thresholds,
            cooldown=timedelta(seconds=cooldown),
            priority_nodes=dedupe_priority(snapshot.priority_nodes, included),
        )

    def priority_of(self, node_id: int) -> int | None:
        try:
            return self.priority_nodes.index(node_id)
        except ValueError:
            return None

    def periodic_wake_up_window_start(self, now: datetime) -> datetime:
        """Start of today's periodic wake-up window, in now's timezone."""
        return now.replace(
            hour=self.periodic_wake_up_start.hour,
            minute=self.periodic_wake_up_start.minute,
            second=0,
            microsecond=0,
        )
