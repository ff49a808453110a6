"""Farmerbot orchestrator.

Owns the node registry, the farm policy and the power manager for one farm,
together with the identity used to sign ledger commands. The tick is the
unit of recurring work; farmerbot_monitor runs it every tick_interval.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from farmerbot.capacity import Capacity, Resources
from farmerbot.config import settings
from farmerbot.errors import FarmerBotError, InsufficientCapacityError, InvalidTransitionError
from farmerbot.ledger import HttpLedgerClient, Identity, LedgerClient
from farmerbot.messaging import HttpMessagingClient, MessagingClient
from farmerbot.metrics import monitor_failures, ticks_total, update_node_metrics
from farmerbot.policy import FarmPolicy
from farmerbot.power import PowerManager, TickResult
from farmerbot.schemas import CapacityModel, FarmSnapshot, NodeSnapshot
from farmerbot.state import EPOCH, Node, NodeRegistry, PowerState
from farmerbot.state_machine import PowerStateMachine
from farmerbot.timing import TickTimer

logger = logging.getLogger(__name__)


def _capacity(model: CapacityModel) -> Capacity:
    return Capacity(cru=model.cru, mru=model.mru, sru=model.sru, hru=model.hru)


def node_from_snapshot(snapshot: NodeSnapshot) -> Node:
    return Node(
        id=snapshot.id,
        twin_id=snapshot.twin_id,
        power_state=snapshot.power_state,
        last_time_power_state_changed=snapshot.last_time_power_state_changed or EPOCH,
        last_time_periodic_wake_up=snapshot.last_time_periodic_wake_up or EPOCH,
        resources=Resources(
            total=_capacity(snapshot.resources.total),
            used=_capacity(snapshot.resources.used),
        ),
        never_shutdown=snapshot.never_shutdown,
        has_public_config=snapshot.has_public_config,
        has_active_rent_contract=snapshot.has_active_rent_contract,
        has_active_contracts=snapshot.has_active_contracts,
    )


def load_snapshot_file(path: str) -> FarmSnapshot:
    return FarmSnapshot.model_validate_json(Path(path).read_text())


class FarmerBot:
    """Power manager plus identity and network context for one farm."""

    def __init__(
        self,
        snapshot: FarmSnapshot,
        ledger: LedgerClient,
        messaging: MessagingClient | None = None,
        identity: Identity | None = None,
        network: str | None = None,
        power_manager_kwargs: dict | None = None,
    ):
        self.network = network or settings.network
        self.identity = identity or Identity(
            twin_id=settings.twin_id,
            key_type=settings.key_type,
            network=self.network,
        )
        self.ledger = ledger
        self.messaging = messaging
        self.registry = NodeRegistry(snapshot.farm_id)
        self.policy = FarmPolicy.from_snapshot(snapshot)
        self.power = PowerManager(
            self.registry,
            self.policy,
            ledger,
            self.identity,
            **(power_manager_kwargs or {}),
        )
        self._tick_lock = asyncio.Lock()
        self.load_snapshot(snapshot)

    @classmethod
    def from_settings(cls) -> FarmerBot:
        if not settings.snapshot_path:
            raise FarmerBotError("FARMERBOT_SNAPSHOT_PATH is not set")
        snapshot = load_snapshot_file(settings.snapshot_path)
        return cls(snapshot, HttpLedgerClient(), HttpMessagingClient())

    @property
    def farm_id(self) -> int:
        return self.registry.farm_id

    def load_snapshot(self, snapshot: FarmSnapshot) -> None:
        """Replace the registry and policy with a fresh snapshot."""
        policy = FarmPolicy.from_snapshot(snapshot)
        nodes = [node_from_snapshot(node) for node in snapshot.managed_nodes()]
        self.registry.replace_all(snapshot.farm_id, nodes)
        self.policy = policy
        self.power.policy = policy
        logger.info(
            f"Loaded snapshot of farm {snapshot.farm_id}: {len(nodes)} managed nodes, "
            f"priority nodes {policy.priority_nodes}"
        )

    async def refresh(self, snapshot: FarmSnapshot) -> None:
        """Load a snapshot without interleaving with a running tick."""
        async with self._tick_lock:
            self.load_snapshot(snapshot)

    async def tick(self) -> TickResult:
        """Run one round of periodic wake-up and power management."""
        async with self._tick_lock:
            result = TickResult()
            try:
                async with TickTimer(self.farm_id):
                    if settings.periodic_wake_up_enabled:
                        result.extend(await self.power.periodic_wake_up())
                    result.extend(await self.power.manage_nodes_power())
            except InsufficientCapacityError:
                ticks_total.labels(result="insufficient_capacity").inc()
                raise
            except Exception:
                ticks_total.labels(result="error").inc()
                raise
            finally:
                update_node_metrics(self.farm_id, self.registry.list_nodes())
            ticks_total.labels(result="success").inc()
            logger.info(
                f"Tick for farm {self.farm_id} done: on={result.powered_on} "
                f"off={result.powered_off} failed={result.failed}"
            )
            return result

    async def power_on(self, node_id: int) -> Node:
        await self.power.power_on(node_id)
        return self.registry.get(node_id)

    async def power_off(self, node_id: int) -> Node:
        await self.power.power_off(node_id)
        return self.registry.get(node_id)

    def confirm_power_state(self, node_id: int, state: PowerState) -> Node:
        """Record a power state confirmed by the node or the ledger."""
        node = self.registry.get(node_id)
        if not PowerStateMachine.can_confirm(node.power_state, state):
            raise InvalidTransitionError(
                f"node {node_id} cannot be confirmed {state.value} while {node.power_state.value}",
                node_id,
            )
        if node.power_state != state:
            node.power_state = state
            node.last_time_power_state_changed = max(
                self.power.now(), node.last_time_power_state_changed
            )
            self.registry.update(node)
            logger.info(f"Node {node_id} confirmed {state.value}")
        return node

    async def ping_node(self, node_id: int) -> bool:
        node = self.registry.get(node_id)
        if self.messaging is None:
            raise FarmerBotError("no messaging client configured", node_id)
        return await self.messaging.ping(node.twin_id)

    async def close(self) -> None:
        for client in (self.ledger, self.messaging):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


async def farmerbot_monitor(
    bot: FarmerBot,
    interval: float | None = None,
    max_backoff: float | None = None,
):
    """Background task running a tick every tick_interval seconds.

    A failed tick never stops the loop. Each consecutive failure doubles the
    wait before the next attempt, up to max_backoff; a completed tick resets
    it. A farm that cannot satisfy demand is not a failure of the monitor and
    keeps the regular interval.
    """
    interval = interval or settings.tick_interval
    max_backoff = max_backoff or settings.monitor_max_backoff
    logger.info(f"Farmerbot monitor started for farm {bot.farm_id} (interval: {interval}s)")

    failures = 0
    while True:
        delay = min(interval * 2 ** failures, max(interval, max_backoff))
        try:
            await asyncio.sleep(delay)
            await bot.tick()
            failures = 0
        except asyncio.CancelledError:
            logger.info(f"Farmerbot monitor for farm {bot.farm_id} stopped")
            raise
        except InsufficientCapacityError as e:
            failures = 0
            logger.warning(f"Farm {bot.farm_id} cannot satisfy demand: {e.message}")
        except Exception as e:
            failures += 1
            monitor_failures.labels(farm_id=str(bot.farm_id)).inc()
            logger.error(
                f"Tick for farm {bot.farm_id} failed ({failures} in a row), backing off: {e}",
                exc_info=True,
            )
