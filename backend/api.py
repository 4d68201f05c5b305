"""
API endpoints for plugin management, the published schedule, health and audit.

"""

from api_dataclasses import (
    APIAuditRecord,
    APICycleReport,
    APIHealth,
    APIPluginRegistration,
    APISchedule,
    APIStrategyHandle,
)
from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger

from core.dispatch.audit import AuditCategory
from core.dispatch.exceptions import PluginRegistrationError
from core.dispatch.plugin_gateway import PluginGateway

router = APIRouter()


def get_controller():
    """Resolve the running DispatchController. Overridden in tests."""
    from app import dispatch_controller

    return dispatch_controller


@router.get("/api/plugins")
async def list_plugins(controller=Depends(get_controller)):
    """List every registered decision source, built-in and external."""
    handles = controller.engine.registry.list_handles()
    return [APIStrategyHandle.from_internal(h).__dict__ for h in handles]


@router.post("/api/plugins/register", status_code=201)
async def register_plugin(registration: dict, controller=Depends(get_controller)):
    """Register or re-register an external HTTP plugin."""
    try:
        api_registration = APIPluginRegistration(**registration)
    except TypeError as e:
        raise HTTPException(status_code=400, detail=f"Invalid registration: {e}") from e

    try:
        handle = controller.engine.gateway.register(**api_registration.to_internal())
    except PluginRegistrationError as e:
        logger.warning(f"Plugin registration rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e

    return {
        "pluginId": PluginGateway.plugin_id(handle.name),
        "plugin": APIStrategyHandle.from_internal(handle).__dict__,
    }


@router.delete("/api/plugins/{name}")
async def unregister_plugin(name: str, controller=Depends(get_controller)):
    try:
        controller.engine.gateway.unregister(name)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"Unknown plugin: {name}") from e
    return {"message": f"Plugin {name} unregistered"}


@router.post("/api/plugins/{name}/enable")
async def enable_plugin(name: str, controller=Depends(get_controller)):
    try:
        controller.engine.gateway.enable(name)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"Unknown plugin: {name}") from e
    return {"message": f"Plugin {name} enabled"}


@router.post("/api/plugins/{name}/probe")
async def probe_plugin(name: str, controller=Depends(get_controller)):
    """Call a plugin once against the last cycle and re-enable it on success."""
    try:
        succeeded = controller.engine.probe_plugin(name)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"Unknown plugin: {name}") from e
    return {"name": name, "succeeded": succeeded}


@router.put("/api/plugins/{name}/priority")
async def set_plugin_priority(name: str, body: dict, controller=Depends(get_controller)):
    if "priority" not in body:
        raise HTTPException(status_code=400, detail="Missing 'priority'")
    try:
        controller.engine.gateway.set_priority(name, body["priority"])
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"Unknown plugin: {name}") from e
    except PluginRegistrationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return {"name": name, "priority": body["priority"]}


@router.get("/api/schedule")
async def get_schedule(controller=Depends(get_controller)):
    """Get the last valid published schedule."""
    schedule = controller.engine.current_schedule
    if schedule is None:
        raise HTTPException(status_code=404, detail="No schedule published yet")
    return APISchedule.from_internal(schedule).__dict__


@router.get("/api/health")
async def get_health(controller=Depends(get_controller)):
    return APIHealth.from_internal(controller.engine).__dict__


@router.get("/api/audit")
async def get_audit(
    category: str | None = Query(None),
    limit: int = Query(100, ge=1, le=2000),
    controller=Depends(get_controller),
):
    """Get audit records, newest first."""
    selected = None
    if category is not None:
        try:
            selected = AuditCategory(category.upper())
        except ValueError as e:
            raise HTTPException(
                status_code=400, detail=f"Unknown audit category: {category}"
            ) from e

    records = controller.engine.audit.records(category=selected, limit=limit)
    return [APIAuditRecord.from_internal(r).__dict__ for r in records]


@router.post("/api/cycle")
async def run_cycle(controller=Depends(get_controller)):
    """Run a planning cycle now."""
    try:
        report = controller.run_cycle()
    except Exception as e:
        logger.error(f"Error running cycle: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e
    return APICycleReport.from_internal(report).__dict__
