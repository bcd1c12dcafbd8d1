"""
Devbox Commander — REST API Routes
══════════════════════════════════
FastAPI router for container lifecycle, tasks and the event stream.
Mounted at /api by app.py; collaborators live on app.state.
"""

import logging
from fastapi import APIRouter, Request, HTTPException, WebSocket
from fastapi.responses import JSONResponse

from .errors import DevboxError
from .models import CreateContainerRequest, LimitsUpdate
from .ws_stream import ws_handler

logger = logging.getLogger(__name__)
router = APIRouter()


def _error(e: Exception, action: str) -> JSONResponse:
    if isinstance(e, DevboxError):
        if e.status_code >= 500:
            logger.error(f"[API] {action}: {e}")
        return JSONResponse({"error": str(e)}, status_code=e.status_code)
    logger.error(f"[API] {action}: {e}")
    return JSONResponse({"error": str(e)}, status_code=500)


def _orchestrator(request: Request):
    return request.app.state.orchestrator


# ═══════════════════════════════════════════════════════════
# CONTAINER ENDPOINTS
# ═══════════════════════════════════════════════════════════

@router.get("/containers")
async def api_list_containers(request: Request, metrics: bool = False):
    try:
        items = await _orchestrator(request).get_all(include_metrics=metrics)
        return {"containers": [i.model_dump(mode="json") for i in items], "count": len(items)}
    except Exception as e:
        return _error(e, "List containers")


@router.post("/containers", status_code=202)
async def api_create_container(request: Request, body: CreateContainerRequest):
    try:
        task = await _orchestrator(request).submit_create(body)
        return JSONResponse({"taskId": task.id, "status": task.status.value}, status_code=202)
    except Exception as e:
        return _error(e, "Create container")


@router.post("/containers/reconcile")
async def api_reconcile(request: Request):
    try:
        report = await request.app.state.reconciler.reconcile()
        return {"reconciled": True, **report}
    except Exception as e:
        return _error(e, "Reconcile")


@router.get("/containers/{container_id}")
async def api_get_container(request: Request, container_id: str):
    try:
        item = await _orchestrator(request).get_by_id(container_id)
        if item is None:
            return JSONResponse({"error": f"Container not found: {container_id}"}, status_code=404)
        return item.model_dump(mode="json")
    except Exception as e:
        return _error(e, "Get container")


@router.post("/containers/{container_id}/start", status_code=202)
async def api_start_container(request: Request, container_id: str):
    try:
        task = await _orchestrator(request).submit_start(container_id)
        return JSONResponse({"taskId": task.id}, status_code=202)
    except Exception as e:
        return _error(e, "Start container")


@router.post("/containers/{container_id}/stop", status_code=202)
async def api_stop_container(request: Request, container_id: str):
    try:
        task = await _orchestrator(request).submit_stop(container_id)
        return JSONResponse({"taskId": task.id}, status_code=202)
    except Exception as e:
        return _error(e, "Stop container")


@router.post("/containers/{container_id}/restart", status_code=202)
async def api_restart_container(request: Request, container_id: str):
    try:
        task = await _orchestrator(request).submit_restart(container_id)
        return JSONResponse({"taskId": task.id}, status_code=202)
    except Exception as e:
        return _error(e, "Restart container")


@router.delete("/containers/{container_id}", status_code=202)
async def api_delete_container(request: Request, container_id: str):
    try:
        task = await _orchestrator(request).submit_delete(container_id)
        return JSONResponse({"taskId": task.id}, status_code=202)
    except Exception as e:
        return _error(e, "Delete container")


@router.patch("/containers/{container_id}/limits")
async def api_update_limits(request: Request, container_id: str, body: LimitsUpdate):
    try:
        item = await _orchestrator(request).update_limits(container_id, body)
        return item.model_dump(mode="json")
    except Exception as e:
        return _error(e, "Update limits")


@router.get("/containers/{container_id}/metrics")
async def api_container_metrics(request: Request, container_id: str, history: int = 0):
    try:
        orchestrator = _orchestrator(request)
        if history > 0:
            samples = orchestrator.metrics_history(container_id, history)
            return {"history": [s.model_dump() for s in samples], "count": len(samples)}
        return await orchestrator.get_metrics(container_id)
    except Exception as e:
        return _error(e, "Container metrics")


@router.get("/containers/{container_id}/logs")
async def api_container_logs(request: Request, container_id: str, tail: int = 100):
    try:
        logs = await _orchestrator(request).get_logs(container_id, tail)
        return {"container_id": container_id, "logs": logs}
    except Exception as e:
        return _error(e, "Container logs")


# ═══════════════════════════════════════════════════════════
# TASK ENDPOINTS
# ═══════════════════════════════════════════════════════════

@router.get("/tasks")
async def api_list_tasks(request: Request):
    tasks = request.app.state.tasks.get_all()
    return {"tasks": [t.model_dump(mode="json") for t in tasks], "count": len(tasks)}


@router.get("/tasks/{task_id}")
async def api_get_task(request: Request, task_id: str):
    task = request.app.state.tasks.get(task_id)
    if not task:
        raise HTTPException(404, f"Task '{task_id}' not found")
    return task.model_dump(mode="json")


@router.delete("/tasks/{task_id}")
async def api_delete_task(request: Request, task_id: str):
    if not request.app.state.tasks.delete(task_id):
        raise HTTPException(404, f"Task '{task_id}' not found")
    return {"deleted": True, "taskId": task_id}


# ═══════════════════════════════════════════════════════════
# EVENT STREAM
# ═══════════════════════════════════════════════════════════

@router.websocket("/events")
async def api_events(websocket: WebSocket):
    await ws_handler(websocket, websocket.app.state.bus)
