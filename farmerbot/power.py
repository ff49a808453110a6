"""Power management for the nodes of one farm.

This module decides which nodes are powered on or off and issues the
corresponding power target commands to the ledger:

- power_on / power_off: single node commands with their safety guards
- manage_nodes_power: the periodic tick that scales the on pool down while
  usage stays under the wake-up thresholds, and wakes one node up when every
  resource dimension is at or over its threshold
- periodic_wake_up: daily wake-up of off nodes so they report to the grid

State changes made here are optimistic: a node enters wakingUp or
shuttingDown once the command is accepted, and the external reconciliation
moves it on from there.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from farmerbot.capacity import Capacity, usage_percentages
from farmerbot.config import settings
from farmerbot.errors import (
    ActiveContractsError,
    FarmerBotError,
    InsufficientCapacityError,
    LastNodeProtectionError,
    NeverShutDownError,
    PowerCommandError,
    PowerOffVetoError,
    PublicConfigError,
    Reconciliation,
    RecentPowerChangeError,
    RentContractError,
    UsedResourcesError,
)
from farmerbot.ledger import Identity, LedgerClient
from farmerbot.metrics import power_command_errors, power_vetoes
from farmerbot.policy import FarmPolicy
from farmerbot.state import Node, NodeRegistry, PowerState
from farmerbot.state_machine import PowerStateMachine
from farmerbot.timing import PowerCommandTimer

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickResult:
    """Nodes commanded during one management tick."""
    powered_on: list[int] = field(default_factory=list)
    powered_off: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    def extend(self, other: TickResult) -> None:
        self.powered_on.extend(other.powered_on)
        self.powered_off.extend(other.powered_off)
        self.failed.extend(other.failed)


def aggregate_resources(nodes: list[Node]) -> tuple[Capacity, Capacity]:
    """Sum demand and total capacity over nodes."""
    used = Capacity()
    total = Capacity()
    for node in nodes:
        used.add(node.demand())
        total.add(node.resources.total)
    return used, total


class PowerManager:
    """Power state machine and scaling decisions for a farm."""

    def __init__(
        self,
        registry: NodeRegistry,
        policy: FarmPolicy,
        ledger: LedgerClient,
        identity: Identity,
        max_concurrent_commands: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.registry = registry
        self.policy = policy
        self.ledger = ledger
        self.identity = identity
        self.max_concurrent_commands = max_concurrent_commands or settings.max_concurrent_commands
        self._clock = clock or _utcnow
        # Nodes with a power-off command in flight; they no longer keep the farm on
        self._pending_shutdowns: set[int] = set()

    def now(self) -> datetime:
        return self._clock()

    # ---- State updates ----

    def _commit_transition(self, node_id: int, target: PowerState) -> Node:
        """Move the stored record to target and stamp the change time.

        Re-reads the record so changes made while a command was in flight
        are kept. The stamp never moves backward.
        """
        node = self.registry.get(node_id)
        if node.power_state != target:
            PowerStateMachine.ensure_transition(node_id, node.power_state, target)
        node.power_state = target
        node.last_time_power_state_changed = max(self.now(), node.last_time_power_state_changed)
        self.registry.update(node)
        logger.info(f"Node {node_id} is now {target.value}")
        return node

    # ---- Power on ----

    async def power_on(self, node_id: int) -> None:
        """Command a node on.

        No-op for nodes that are on or already waking up. A rejected command
        leaves the node untouched.
        """
        node = self.registry.get(node_id)
        if node.power_state in (PowerState.ON, PowerState.WAKING_UP):
            logger.debug(f"Node {node_id} is already {node.power_state.value}")
            return
        PowerStateMachine.ensure_transition(node_id, node.power_state, PowerState.WAKING_UP)

        logger.info(f"Powering on node {node_id}")
        try:
            async with PowerCommandTimer(node_id, up=True):
                await self.ledger.set_node_power_target(self.identity, node_id, True)
        except Exception as e:
            power_command_errors.labels(
                operation="power_on", reconciliation=Reconciliation.UNKNOWN.value
            ).inc()
            logger.error(f"Failed to power on node {node_id}: {e}")
            raise PowerCommandError(f"failed to power on node {node_id}: {e}", node_id) from e

        self._commit_transition(node_id, PowerState.WAKING_UP)

    # ---- Power off ----

    def shutdown_veto(self, node: Node, now: datetime | None = None) -> PowerOffVetoError | None:
        """Return the first rule that forbids powering node off, if any.

        The last-node rule depends on the rest of the farm and is checked
        separately by power_off.
        """
        now = now or self.now()
        if node.never_shutdown:
            return NeverShutDownError(f"node {node.id} is set to never shut down", node.id)
        if node.has_public_config:
            return PublicConfigError(f"node {node.id} has a public config", node.id)
        if node.has_active_rent_contract:
            return RentContractError(f"node {node.id} has an active rent contract", node.id)
        if node.has_active_contracts:
            return ActiveContractsError(f"node {node.id} has active contracts", node.id)
        if now - node.last_time_power_state_changed < self.policy.cooldown:
            return RecentPowerChangeError(
                f"node {node.id} changed power state at "
                f"{node.last_time_power_state_changed.isoformat()}, within the cooldown window",
                node.id,
            )
        if not node.resources.used.is_empty():
            return UsedResourcesError(f"node {node.id} has used resources", node.id)
        return None

    def _keeps_farm_on(self, node_id: int) -> bool:
        """True if another node stays on or is waking up besides node_id."""
        for other in self.registry.list_nodes():
            if other.id == node_id or other.id in self._pending_shutdowns:
                continue
            if other.power_state in PowerStateMachine.KEEPS_FARM_ON:
                return True
        return False

    async def _read_back_power_target(self, node_id: int) -> Reconciliation:
        try:
            target = await self.ledger.get_power_target(node_id)
        except Exception as e:
            logger.warning(f"Failed to read back power target of node {node_id}: {e}")
            return Reconciliation.UNKNOWN
        return Reconciliation.CONFIRMED if target.down else Reconciliation.UNCONFIRMED

    async def power_off(self, node_id: int) -> None:
        """Command a node off after every shutdown guard passes.

        If the ledger rejects the command the committed target is read back:
        a target already set to down means the write landed anyway, so the
        node moves to shuttingDown, but the call still fails.

        A call for a node whose power-off is already in flight is a no-op,
        like a call for a node that is already shutting down.
        """
        node = self.registry.get(node_id)
        if node.power_state in (PowerState.OFF, PowerState.SHUTTING_DOWN):
            logger.debug(f"Node {node_id} is already {node.power_state.value}")
            return
        if node_id in self._pending_shutdowns:
            # At most one power-off command per node is in flight
            logger.debug(f"Node {node_id} already has a power-off command in flight")
            return
        PowerStateMachine.ensure_transition(node_id, node.power_state, PowerState.SHUTTING_DOWN)

        veto = self.shutdown_veto(node)
        if veto is None and not self._keeps_farm_on(node_id):
            veto = LastNodeProtectionError(
                f"cannot power off node {node_id}, at least one node should stay on in farm "
                f"{self.registry.farm_id}",
                node_id,
            )
        if veto is not None:
            power_vetoes.labels(reason=veto.reason).inc()
            logger.info(f"Not powering off node {node_id}: {veto.message}")
            raise veto

        logger.info(f"Powering off node {node_id}")
        self._pending_shutdowns.add(node_id)
        try:
            try:
                async with PowerCommandTimer(node_id, up=False):
                    await self.ledger.set_node_power_target(self.identity, node_id, False)
            except Exception as e:
                reconciliation = await self._read_back_power_target(node_id)
                power_command_errors.labels(
                    operation="power_off", reconciliation=reconciliation.value
                ).inc()
                if reconciliation == Reconciliation.CONFIRMED:
                    logger.warning(
                        f"Power off of node {node_id} reported an error but the target is down: {e}"
                    )
                    self._commit_transition(node_id, PowerState.SHUTTING_DOWN)
                else:
                    logger.error(f"Failed to power off node {node_id}: {e}")
                raise PowerCommandError(
                    f"failed to power off node {node_id}: {e}", node_id, reconciliation
                ) from e

            self._commit_transition(node_id, PowerState.SHUTTING_DOWN)
        finally:
            self._pending_shutdowns.discard(node_id)

    # ---- Management tick ----

    def _over_thresholds(self, usage: dict[str, float]) -> bool:
        """Every dimension with capacity is at or over its threshold.

        A single saturated dimension does not wake a node up while another
        dimension still has headroom. Together with _under_thresholds this
        leaves a dead band (some dimensions over, some under) in which the
        tick neither scales up nor down.
        """
        if not usage:
            return False
        return all(pct >= self.policy.wake_up_thresholds[dim] for dim, pct in usage.items())

    def _under_thresholds(self, usage: dict[str, float]) -> bool:
        """Every dimension with capacity is strictly under its threshold."""
        return all(pct < self.policy.wake_up_thresholds[dim] for dim, pct in usage.items())

    def _shutdown_order(self, nodes: list[Node]) -> list[Node]:
        """Non-priority nodes by ascending id, then priority nodes from the
        lowest priority up, so the first priority node is the one kept on."""
        regular = sorted(
            (node for node in nodes if self.policy.priority_of(node.id) is None),
            key=lambda node: node.id,
        )
        prioritized = sorted(
            (node for node in nodes if self.policy.priority_of(node.id) is not None),
            key=lambda node: self.policy.priority_of(node.id),
            reverse=True,
        )
        return regular + prioritized

    def _wake_up_order_key(self, node: Node, now: datetime) -> tuple:
        in_cooldown = now - node.last_time_power_state_changed < self.policy.cooldown
        rank = self.policy.priority_of(node.id)
        return (in_cooldown, rank is None, rank if rank is not None else 0, node.id)

    async def _power_off_in_tick(self, node_id: int, semaphore: asyncio.Semaphore) -> bool:
        """Power off for the tick; True if the node ended up shutting down."""
        async with semaphore:
            try:
                await self.power_off(node_id)
                return True
            except PowerCommandError as e:
                return e.reconciliation == Reconciliation.CONFIRMED
            except PowerOffVetoError as e:
                logger.info(f"Skipping node {node_id} this tick: {e.message}")
                return False
            except FarmerBotError as e:
                # e.g. the node was confirmed off while its command was in flight
                logger.warning(f"Power off of node {node_id} did not complete: {e.message}")
                return False

    async def _scale_down(
        self, on_nodes: list[Node], used: Capacity, total: Capacity, now: datetime
    ) -> TickResult:
        result = TickResult()
        remaining = [
            node for node in self._shutdown_order(on_nodes) if self.shutdown_veto(node, now) is None
        ]
        nodes_left_on = len(on_nodes)
        semaphore = asyncio.Semaphore(self.max_concurrent_commands)

        while remaining and nodes_left_on > 1:
            # Plan a batch assuming every command succeeds; failures are
            # rolled back below and their replacements planned next round.
            batch: list[Node] = []
            projected_used, projected_total = used.copy(), total.copy()
            left = nodes_left_on
            for node in remaining:
                if left == 1:
                    break
                next_used, next_total = projected_used.copy(), projected_total.copy()
                next_used.subtract(node.demand())
                next_total.subtract(node.resources.total)
                if next_total.is_empty():
                    break
                usage = usage_percentages(next_used, next_total)
                if not self._under_thresholds(usage):
                    continue
                logger.info(
                    f"Resource usage too low, turning off unused node {node.id} "
                    f"(projected usage {usage})"
                )
                batch.append(node)
                projected_used, projected_total = next_used, next_total
                left -= 1

            if not batch:
                break
            batch_ids = {node.id for node in batch}
            remaining = [node for node in remaining if node.id not in batch_ids]

            # Join the whole batch before surfacing any unexpected error
            outcomes = await asyncio.gather(
                *(self._power_off_in_tick(node.id, semaphore) for node in batch),
                return_exceptions=True,
            )
            errors = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
            for node, shut_down in zip(batch, outcomes):
                if shut_down is True:
                    used.subtract(node.demand())
                    total.subtract(node.resources.total)
                    nodes_left_on -= 1
                    result.powered_off.append(node.id)
                else:
                    result.failed.append(node.id)
            if errors:
                raise errors[0]

        if not result.powered_off and not result.failed:
            logger.debug(f"Nothing to shut down in farm {self.registry.farm_id}")
        return result

    async def _scale_up(self, nodes: list[Node], waking_up: bool, now: datetime) -> TickResult:
        result = TickResult()
        if waking_up:
            logger.info("Resource usage is high but a node is already waking up")
            return result
        off_nodes = [node for node in nodes if node.power_state == PowerState.OFF]
        if not off_nodes:
            raise InsufficientCapacityError(
                f"no available node to wake up in farm {self.registry.farm_id}, resource usage is high"
            )
        node = min(off_nodes, key=lambda candidate: self._wake_up_order_key(candidate, now))
        logger.info(f"Resource usage too high, waking up node {node.id}")
        await self.power_on(node.id)
        result.powered_on.append(node.id)
        return result

    async def manage_nodes_power(self) -> TickResult:
        """Scale the powered-on pool to the current demand.

        Nodes waking up and nodes without any capacity take no part in the
        decision. Raises InsufficientCapacityError when usage is over the
        thresholds and nothing is left to wake up.
        """
        now = self.now()
        snapshot = self.registry.list_nodes()
        waking_up = any(
            node.power_state == PowerState.WAKING_UP and node.has_capacity() for node in snapshot
        )
        nodes = [
            node for node in snapshot
            if node.power_state != PowerState.WAKING_UP and node.has_capacity()
        ]
        on_nodes = [node for node in nodes if node.power_state == PowerState.ON]

        used, total = aggregate_resources(on_nodes)
        if total.is_empty():
            logger.debug(f"No powered-on capacity in farm {self.registry.farm_id}, nothing to manage")
            return TickResult()

        usage = usage_percentages(used, total)
        logger.debug(f"Farm {self.registry.farm_id} resource usage: {usage}")
        if self._over_thresholds(usage):
            return await self._scale_up(nodes, waking_up, now)
        return await self._scale_down(on_nodes, used, total, now)

    # ---- Periodic wake-up ----

    async def periodic_wake_up(self) -> TickResult:
        """Wake off nodes once a day after the configured start time."""
        result = TickResult()
        now = self.now()
        window_start = self.policy.periodic_wake_up_window_start(now)
        if now < window_start:
            return result

        for node in self.registry.filter_by_state([PowerState.OFF]):
            if len(result.powered_on) >= self.policy.periodic_wake_up_limit:
                break
            if not node.has_capacity() or node.last_time_periodic_wake_up >= window_start:
                continue
            logger.info(f"Periodic wake-up of node {node.id}")
            try:
                await self.power_on(node.id)
            except PowerCommandError as e:
                logger.error(f"Periodic wake-up of node {node.id} failed: {e.message}")
                result.failed.append(node.id)
                continue
            fresh = self.registry.get(node.id)
            fresh.last_time_periodic_wake_up = now
            self.registry.update(fresh)
            result.powered_on.append(node.id)
        return result
