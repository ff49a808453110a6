"""Farmerbot service.

Runs the farm power manager for one farm and exposes:
- Periodic power management ticks (background monitor with backoff)
- Operator commands to power nodes on and off
- Snapshot refresh from the discovery layer
- Confirmed power state from the reconciliation layer
- Health and Prometheus metrics
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from farmerbot.bot import FarmerBot, farmerbot_monitor
from farmerbot.config import settings
from farmerbot.errors import (
    FarmerBotError,
    InsufficientCapacityError,
    InvalidTransitionError,
    NodeNotFoundError,
    PowerCommandError,
    PowerOffVetoError,
)
from farmerbot.logging_config import setup_logging
from farmerbot.metrics import get_metrics
from farmerbot.policy import FarmPolicy
from farmerbot.schemas import (
    CapacityModel,
    ConfirmPowerStateRequest,
    ErrorResponse,
    FarmSnapshot,
    NodeOut,
    NodeResourcesModel,
    PowerActionResponse,
    ReachabilityResponse,
    SnapshotResponse,
    TickResponse,
)
from farmerbot.state import Node

logger = logging.getLogger(__name__)

_bot: FarmerBot | None = None
_monitor_task: asyncio.Task | None = None


def set_bot(bot: FarmerBot | None) -> None:
    global _bot
    _bot = bot


def get_bot() -> FarmerBot:
    if _bot is None:
        raise HTTPException(status_code=503, detail="Farmerbot is not initialized")
    return _bot


def _node_out(node: Node, policy: FarmPolicy) -> NodeOut:
    return NodeOut(
        id=node.id,
        twin_id=node.twin_id,
        power_state=node.power_state,
        last_time_power_state_changed=node.last_time_power_state_changed,
        last_time_periodic_wake_up=node.last_time_periodic_wake_up,
        resources=NodeResourcesModel(
            total=CapacityModel(**node.resources.total.as_dict()),
            used=CapacityModel(**node.resources.used.as_dict()),
        ),
        never_shutdown=node.never_shutdown,
        has_public_config=node.has_public_config,
        has_active_rent_contract=node.has_active_rent_contract,
        has_active_contracts=node.has_active_contracts,
        priority=policy.priority_of(node.id),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the farm and start the monitor; stop it on shutdown."""
    global _monitor_task

    if _bot is None:
        set_bot(FarmerBot.from_settings())
    bot = get_bot()
    setup_logging(farm_id=bot.farm_id)
    logger.info(f"Farmerbot starting for farm {bot.farm_id} on network {bot.network}")

    if not settings.testing:
        _monitor_task = asyncio.create_task(
            farmerbot_monitor(bot),
            name="farmerbot_monitor",
        )

    yield

    if _monitor_task:
        _monitor_task.cancel()
        try:
            await _monitor_task
        except asyncio.CancelledError:
            pass
        _monitor_task = None

    await bot.close()
    logger.info(f"Farmerbot for farm {bot.farm_id} shutting down")


app = FastAPI(title="Farmerbot", lifespan=lifespan)


def _error_response(status_code: int, exc: FarmerBotError) -> JSONResponse:
    body = ErrorResponse(error=type(exc).__name__, detail=exc.message, node_id=exc.node_id)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(FarmerBotError)
async def farmerbot_error_handler(request: Request, exc: FarmerBotError) -> JSONResponse:
    if isinstance(exc, NodeNotFoundError):
        return _error_response(404, exc)
    if isinstance(exc, (PowerOffVetoError, InvalidTransitionError)):
        return _error_response(409, exc)
    if isinstance(exc, PowerCommandError):
        return _error_response(502, exc)
    if isinstance(exc, InsufficientCapacityError):
        return _error_response(503, exc)
    return _error_response(500, exc)


@app.get("/healthz")
def healthz():
    """Basic health check."""
    monitor_running = _monitor_task is not None and not _monitor_task.done()
    return {
        "status": "ok" if _bot is not None else "initializing",
        "service": "farmerbot",
        "farm_id": _bot.farm_id if _bot is not None else None,
        "monitor_running": monitor_running,
    }


@app.get("/metrics")
def metrics():
    """Prometheus metrics endpoint."""
    content, content_type = get_metrics()
    return Response(content=content, media_type=content_type)


@app.get("/nodes", response_model=list[NodeOut])
def list_nodes(bot: FarmerBot = Depends(get_bot)) -> list[NodeOut]:
    return [_node_out(node, bot.policy) for node in bot.registry.list_nodes()]


@app.get("/nodes/{node_id}", response_model=NodeOut)
def get_node(node_id: int, bot: FarmerBot = Depends(get_bot)) -> NodeOut:
    return _node_out(bot.registry.get(node_id), bot.policy)


@app.post("/nodes/{node_id}/power-on", response_model=PowerActionResponse)
async def power_on(node_id: int, bot: FarmerBot = Depends(get_bot)) -> PowerActionResponse:
    node = await bot.power_on(node_id)
    return PowerActionResponse(node_id=node.id, power_state=node.power_state)


@app.post("/nodes/{node_id}/power-off", response_model=PowerActionResponse)
async def power_off(node_id: int, bot: FarmerBot = Depends(get_bot)) -> PowerActionResponse:
    node = await bot.power_off(node_id)
    return PowerActionResponse(node_id=node.id, power_state=node.power_state)


@app.put("/nodes/{node_id}/power-state", response_model=NodeOut)
async def confirm_power_state(
    node_id: int,
    request: ConfirmPowerStateRequest,
    bot: FarmerBot = Depends(get_bot),
) -> NodeOut:
    return _node_out(bot.confirm_power_state(node_id, request.power_state), bot.policy)


@app.get("/nodes/{node_id}/reachable", response_model=ReachabilityResponse)
async def node_reachable(node_id: int, bot: FarmerBot = Depends(get_bot)) -> ReachabilityResponse:
    reachable = await bot.ping_node(node_id)
    return ReachabilityResponse(node_id=node_id, reachable=reachable)


@app.post("/tick", response_model=TickResponse)
async def tick(bot: FarmerBot = Depends(get_bot)) -> TickResponse:
    result = await bot.tick()
    return TickResponse(
        powered_on=result.powered_on,
        powered_off=result.powered_off,
        failed=result.failed,
    )


@app.put("/snapshot", response_model=SnapshotResponse)
async def refresh_snapshot(snapshot: FarmSnapshot, bot: FarmerBot = Depends(get_bot)) -> SnapshotResponse:
    await bot.refresh(snapshot)
    return SnapshotResponse(farm_id=bot.farm_id, nodes=len(bot.registry))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "farmerbot.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
    )
