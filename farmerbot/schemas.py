"""Farm snapshot and operator API schemas.

The snapshot is produced by the discovery layer that reads the chain and the
grid indexer. These models validate it before it replaces the registry.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from farmerbot.state import PowerState


# --- Snapshot input ---

class CapacityModel(BaseModel):
    """Resource quantity in the four grid dimensions."""
    cru: int = Field(default=0, ge=0)
    mru: int = Field(default=0, ge=0)
    sru: int = Field(default=0, ge=0)
    hru: int = Field(default=0, ge=0)


class NodeResourcesModel(BaseModel):
    total: CapacityModel = Field(default_factory=CapacityModel)
    used: CapacityModel = Field(default_factory=CapacityModel)


class ThresholdPercentages(BaseModel):
    """Per-dimension wake-up thresholds, 0 means "use the default"."""
    cru: int = Field(default=0, ge=0, le=100)
    mru: int = Field(default=0, ge=0, le=100)
    sru: int = Field(default=0, ge=0, le=100)
    hru: int = Field(default=0, ge=0, le=100)


class NodeSnapshot(BaseModel):
    """Facts about one node as reported by discovery."""
    id: int = Field(ge=0)
    twin_id: int = 0
    power_state: PowerState = PowerState.ON
    last_time_power_state_changed: Optional[datetime] = None
    last_time_periodic_wake_up: Optional[datetime] = None
    resources: NodeResourcesModel = Field(default_factory=NodeResourcesModel)
    never_shutdown: bool = False
    has_public_config: bool = False
    has_active_rent_contract: bool = False
    has_active_contracts: bool = False

    @field_validator("last_time_power_state_changed", "last_time_periodic_wake_up")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class FarmSnapshot(BaseModel):
    """Full farm snapshot; replaces the registry wholesale."""
    farm_id: int = Field(ge=0)
    included_nodes: list[int] = Field(default_factory=list)
    priority_nodes: list[int] = Field(default_factory=list)  # Order and duplicates as configured
    nodes: list[NodeSnapshot] = Field(default_factory=list)
    wake_up_threshold_percentages: ThresholdPercentages = Field(default_factory=ThresholdPercentages)
    cooldown_seconds: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _nodes_are_unique(self) -> "FarmSnapshot":
        seen: set[int] = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"node {node.id} appears more than once in the snapshot")
            seen.add(node.id)
        return self

    def managed_nodes(self) -> list[NodeSnapshot]:
        """Nodes that belong to the included set.

        An empty included list means every reported node is managed.
        """
        if not self.included_nodes:
            return list(self.nodes)
        included = set(self.included_nodes)
        return [node for node in self.nodes if node.id in included]


# --- Operator API ---

class NodeOut(BaseModel):
    id: int
    twin_id: int
    power_state: PowerState
    last_time_power_state_changed: datetime
    last_time_periodic_wake_up: datetime
    resources: NodeResourcesModel
    never_shutdown: bool
    has_public_config: bool
    has_active_rent_contract: bool
    has_active_contracts: bool
    priority: Optional[int] = None


class PowerActionResponse(BaseModel):
    node_id: int
    power_state: PowerState


class ConfirmPowerStateRequest(BaseModel):
    power_state: PowerState


class TickResponse(BaseModel):
    success: bool = True
    powered_on: list[int] = Field(default_factory=list)
    powered_off: list[int] = Field(default_factory=list)
    failed: list[int] = Field(default_factory=list)


class ReachabilityResponse(BaseModel):
    node_id: int
    reachable: bool


class SnapshotResponse(BaseModel):
    farm_id: int
    nodes: int


class ErrorResponse(BaseModel):
    error: str
    detail: str
    node_id: Optional[int] = None
