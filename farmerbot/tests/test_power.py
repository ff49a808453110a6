"""Tests for single node power-on and power-off commands.

Tests verify:
1. Commands on nodes already in (or moving to) the requested state are no-ops
2. Every shutdown guard refuses the command without touching the ledger
3. Failed power-off commands are reconciled by reading back the power target
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from conftest import COOLDOWN, NOW, set_state
from farmerbot.capacity import Capacity
from farmerbot.errors import (
    ActiveContractsError,
    InvalidTransitionError,
    LastNodeProtectionError,
    NeverShutDownError,
    NodeNotFoundError,
    PowerCommandError,
    PowerOffVetoError,
    PublicConfigError,
    Reconciliation,
    RecentPowerChangeError,
    RentContractError,
    UsedResourcesError,
)
from farmerbot.ledger import LedgerError, PowerTarget
from farmerbot.state import EPOCH, PowerState


# --- Power on ---

class TestPowerOn:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [PowerState.ON, PowerState.WAKING_UP])
    async def test_already_on_or_waking_up(self, two_node_manager, ledger, state):
        set_state(two_node_manager, 1, power_state=state)

        await two_node_manager.power_on(1)

        ledger.set_node_power_target.assert_not_awaited()
        assert two_node_manager.registry.get(1).power_state == state

    @pytest.mark.asyncio
    async def test_power_on(self, two_node_manager, ledger, identity):
        set_state(two_node_manager, 1, power_state=PowerState.OFF)

        await two_node_manager.power_on(1)

        ledger.set_node_power_target.assert_awaited_once_with(identity, 1, True)
        node = two_node_manager.registry.get(1)
        assert node.power_state == PowerState.WAKING_UP
        assert node.last_time_power_state_changed == NOW

    @pytest.mark.asyncio
    async def test_power_on_overrides_pending_shutdown(self, two_node_manager, ledger, identity):
        set_state(two_node_manager, 1, power_state=PowerState.SHUTTING_DOWN)

        await two_node_manager.power_on(1)

        ledger.set_node_power_target.assert_awaited_once_with(identity, 1, True)
        assert two_node_manager.registry.get(1).power_state == PowerState.WAKING_UP

    @pytest.mark.asyncio
    async def test_node_not_found(self, two_node_manager, ledger):
        with pytest.raises(NodeNotFoundError):
            await two_node_manager.power_on(3)
        ledger.set_node_power_target.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_set_power_target_failed(self, two_node_manager, ledger):
        set_state(two_node_manager, 1, power_state=PowerState.OFF)
        ledger.set_node_power_target.side_effect = LedgerError("error")

        with pytest.raises(PowerCommandError) as exc_info:
            await two_node_manager.power_on(1)

        assert exc_info.value.node_id == 1
        assert isinstance(exc_info.value.__cause__, LedgerError)
        # No read-back for power on
        ledger.get_power_target.assert_not_awaited()
        node = two_node_manager.registry.get(1)
        assert node.power_state == PowerState.OFF
        assert node.last_time_power_state_changed == EPOCH

    @pytest.mark.asyncio
    async def test_stamp_never_moves_backward(self, two_node_manager):
        future = datetime(2027, 1, 1, tzinfo=timezone.utc)
        set_state(
            two_node_manager, 1,
            power_state=PowerState.OFF,
            last_time_power_state_changed=future,
        )

        await two_node_manager.power_on(1)

        assert two_node_manager.registry.get(1).last_time_power_state_changed == future


# --- Power off ---

class TestPowerOff:
    @pytest.mark.asyncio
    async def test_power_off(self, two_node_manager, ledger, identity):
        await two_node_manager.power_off(1)

        ledger.set_node_power_target.assert_awaited_once_with(identity, 1, False)
        node = two_node_manager.registry.get(1)
        assert node.power_state == PowerState.SHUTTING_DOWN
        assert node.last_time_power_state_changed == NOW

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [PowerState.OFF, PowerState.SHUTTING_DOWN])
    async def test_already_off_or_shutting_down(self, two_node_manager, ledger, state):
        set_state(two_node_manager, 1, power_state=state)

        await two_node_manager.power_off(1)

        ledger.set_node_power_target.assert_not_awaited()
        assert two_node_manager.registry.get(1).power_state == state

    @pytest.mark.asyncio
    async def test_node_not_found(self, two_node_manager, ledger):
        with pytest.raises(NodeNotFoundError):
            await two_node_manager.power_off(3)
        ledger.set_node_power_target.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_waking_up_node_cannot_be_shut_down(self, two_node_manager, ledger):
        set_state(two_node_manager, 1, power_state=PowerState.WAKING_UP)

        with pytest.raises(InvalidTransitionError):
            await two_node_manager.power_off(1)
        ledger.set_node_power_target.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_last_node_protection(self, two_node_manager, ledger):
        set_state(two_node_manager, 1, power_state=PowerState.OFF)

        with pytest.raises(LastNodeProtectionError):
            await two_node_manager.power_off(2)

        ledger.set_node_power_target.assert_not_awaited()
        assert two_node_manager.registry.get(2).power_state == PowerState.ON

    @pytest.mark.asyncio
    async def test_waking_up_node_keeps_farm_on(self, two_node_manager, ledger):
        set_state(two_node_manager, 1, power_state=PowerState.WAKING_UP)

        await two_node_manager.power_off(2)

        assert two_node_manager.registry.get(2).power_state == PowerState.SHUTTING_DOWN

    @pytest.mark.asyncio
    @pytest.mark.parametrize("changes,error", [
        ({"never_shutdown": True}, NeverShutDownError),
        ({"has_public_config": True}, PublicConfigError),
        ({"has_active_rent_contract": True}, RentContractError),
        ({"has_active_contracts": True}, ActiveContractsError),
        ({"last_time_power_state_changed": NOW}, RecentPowerChangeError),
        ({"last_time_power_state_changed": NOW - COOLDOWN / 2}, RecentPowerChangeError),
        ({"resources_used": Capacity(cru=1, mru=1, sru=1, hru=1)}, UsedResourcesError),
        ({"resources_used": Capacity(hru=1)}, UsedResourcesError),
    ])
    async def test_vetoes(self, two_node_manager, ledger, changes, error):
        node = two_node_manager.registry.get(1)
        for key, value in changes.items():
            if key == "resources_used":
                node.resources.used = value
            else:
                setattr(node, key, value)
        two_node_manager.registry.update(node)

        with pytest.raises(error) as exc_info:
            await two_node_manager.power_off(1)

        assert isinstance(exc_info.value, PowerOffVetoError)
        assert exc_info.value.node_id == 1
        ledger.set_node_power_target.assert_not_awaited()
        assert two_node_manager.registry.get(1).power_state == PowerState.ON

    @pytest.mark.asyncio
    async def test_cooldown_elapsed(self, two_node_manager):
        set_state(two_node_manager, 1, last_time_power_state_changed=NOW - COOLDOWN)

        await two_node_manager.power_off(1)

        assert two_node_manager.registry.get(1).power_state == PowerState.SHUTTING_DOWN

    @pytest.mark.asyncio
    async def test_vetoes_checked_in_order(self, two_node_manager):
        set_state(
            two_node_manager, 1,
            has_public_config=True,
            has_active_contracts=True,
            never_shutdown=True,
        )
        with pytest.raises(NeverShutDownError):
            await two_node_manager.power_off(1)

    @pytest.mark.asyncio
    async def test_node_vetoes_come_before_last_node_rule(self, two_node_manager):
        set_state(two_node_manager, 1, power_state=PowerState.OFF)
        set_state(two_node_manager, 2, has_public_config=True)

        with pytest.raises(PublicConfigError):
            await two_node_manager.power_off(2)

    @pytest.mark.asyncio
    async def test_set_failed_target_still_up(self, two_node_manager, ledger):
        ledger.set_node_power_target.side_effect = LedgerError("error")
        ledger.get_power_target.return_value = PowerTarget(down=False)

        with pytest.raises(PowerCommandError) as exc_info:
            await two_node_manager.power_off(1)

        assert exc_info.value.reconciliation == Reconciliation.UNCONFIRMED
        ledger.get_power_target.assert_awaited_once_with(1)
        assert two_node_manager.registry.get(1).power_state == PowerState.ON

    @pytest.mark.asyncio
    async def test_set_and_get_failed(self, two_node_manager, ledger):
        ledger.set_node_power_target.side_effect = LedgerError("error")
        ledger.get_power_target.side_effect = LedgerError("error")

        with pytest.raises(PowerCommandError) as exc_info:
            await two_node_manager.power_off(1)

        assert exc_info.value.reconciliation == Reconciliation.UNKNOWN
        assert two_node_manager.registry.get(1).power_state == PowerState.ON

    @pytest.mark.asyncio
    async def test_set_failed_but_target_is_down(self, two_node_manager, ledger):
        ledger.set_node_power_target.side_effect = LedgerError("error")
        ledger.get_power_target.return_value = PowerTarget(down=True)

        with pytest.raises(PowerCommandError) as exc_info:
            await two_node_manager.power_off(1)

        assert exc_info.value.reconciliation == Reconciliation.CONFIRMED
        node = two_node_manager.registry.get(1)
        assert node.power_state == PowerState.SHUTTING_DOWN
        assert node.last_time_power_state_changed == NOW

    @pytest.mark.asyncio
    async def test_failed_command_releases_last_node_reservation(self, two_node_manager, ledger):
        ledger.set_node_power_target.side_effect = LedgerError("error")
        with pytest.raises(PowerCommandError):
            await two_node_manager.power_off(1)

        ledger.set_node_power_target.side_effect = None
        # Node 1 is still on, so node 2 may go
        await two_node_manager.power_off(2)
        assert two_node_manager.registry.get(2).power_state == PowerState.SHUTTING_DOWN

    @pytest.mark.asyncio
    async def test_overlapping_power_off_sends_one_command(self, two_node_manager, ledger, identity):
        release = asyncio.Event()

        async def held_then_rejected(identity, node_id, up):
            await release.wait()
            raise LedgerError("error")

        ledger.set_node_power_target.side_effect = held_then_rejected
        first = asyncio.create_task(two_node_manager.power_off(1))
        await asyncio.sleep(0)

        # Second call while the first command is still in flight
        await two_node_manager.power_off(1)
        ledger.set_node_power_target.assert_awaited_once_with(identity, 1, False)

        # Node 1 is reserved, so node 2 is still the last node keeping the farm on
        with pytest.raises(LastNodeProtectionError):
            await two_node_manager.power_off(2)

        release.set()
        with pytest.raises(PowerCommandError):
            await first
        assert two_node_manager.registry.get(1).power_state == PowerState.ON
        assert two_node_manager.registry.get(2).power_state == PowerState.ON
        assert ledger.set_node_power_target.await_count == 1
