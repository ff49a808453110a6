"""Timers for ledger power commands and management ticks.

Each timer observes its Prometheus histogram with a success/error status and
logs the duration together with the node or farm it ran for. A broken metric
never fails the command being timed.
"""
from __future__ import annotations

import logging
import time

from farmerbot.metrics import power_command_duration, tick_duration

logger = logging.getLogger(__name__)


class _Timer:
    log_level = logging.DEBUG

    def __init__(self):
        self.duration_ms: int = 0
        self.success: bool = True
        self._start: float = 0.0

    def _observe(self, status: str, elapsed: float) -> None:
        raise NotImplementedError

    def _describe(self) -> tuple[str, dict]:
        raise NotImplementedError

    async def __aenter__(self):
        self._start = time.monotonic()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.monotonic() - self._start
        self.duration_ms = int(elapsed * 1000)
        self.success = exc_type is None

        try:
            self._observe("success" if self.success else "error", elapsed)
        except Exception as e:
            logger.warning("Failed to record metric: %s", e)

        message, extra = self._describe()
        extra.update(duration_ms=self.duration_ms, success=self.success)
        if exc_type is not None:
            extra["error"] = str(exc_val)
        logger.log(self.log_level, message, extra=extra)
        return False


class PowerCommandTimer(_Timer):
    """Times one set-power-target call for a node."""

    def __init__(self, node_id: int, up: bool):
        super().__init__()
        self.node_id = node_id
        self.up = up

    @property
    def operation(self) -> str:
        return "power_on" if self.up else "power_off"

    def _observe(self, status: str, elapsed: float) -> None:
        power_command_duration.labels(operation=self.operation, status=status).observe(elapsed)

    def _describe(self) -> tuple[str, dict]:
        return (
            f"{self.operation} command for node {self.node_id} completed",
            {"event": "power_command", "node_id": self.node_id, "up": self.up},
        )


class TickTimer(_Timer):
    """Times one management tick of a farm."""
    log_level = logging.INFO

    def __init__(self, farm_id: int):
        super().__init__()
        self.farm_id = farm_id

    def _observe(self, status: str, elapsed: float) -> None:
        tick_duration.labels(status=status).observe(elapsed)

    def _describe(self) -> tuple[str, dict]:
        return (
            f"Tick for farm {self.farm_id} completed",
            {"event": "farmerbot_tick", "farm_id": self.farm_id},
        )
