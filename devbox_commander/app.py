"""
Devbox Commander — Application
══════════════════════════════
Wires the engine together and exposes it over FastAPI:
- store / runtime / bus / tasks / orchestrator / reconciler on app.state
- lifespan: init DB, start task sweeper, reconcile once, start periodic sync
- /health and the /api router
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import config
from .events import EventBus
from .orchestrator import LifecycleHooks, LifecycleOrchestrator, SessionCloser
from .reconcile import StateReconciler
from .routes import router
from .runtime import DockerRuntime
from .store import ContainerStore
from .tasks import TaskTracker
from .templates import load_templates
from .ws_stream import connection_count

logger = logging.getLogger(__name__)


def create_app(store: Optional[ContainerStore] = None,
               runtime=None,
               hooks: Optional[LifecycleHooks] = None,
               session_closer: Optional[SessionCloser] = None,
               sync_on_startup: bool = True,
               sync_interval: int = config.SYNC_INTERVAL) -> FastAPI:
    """Build the app; collaborators can be injected for tests or embedding."""
    store = store or ContainerStore()
    runtime = runtime or DockerRuntime()
    bus = EventBus()
    tasks = TaskTracker(bus)
    orchestrator = LifecycleOrchestrator(
        store, runtime, bus, tasks,
        templates=load_templates(),
        hooks=hooks,
        session_closer=session_closer,
    )
    reconciler = StateReconciler(orchestrator, interval=sync_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup & Shutdown lifecycle."""
        store.init_db()
        tasks.start_sweeper()
        if sync_on_startup:
            await reconciler.reconcile()
            reconciler.start_loop()
        logger.info("[App] Devbox Commander ready")

        yield

        await reconciler.stop_loop()
        await orchestrator.shutdown()
        await tasks.stop_sweeper()
        logger.info("[App] Shut down")

    app = FastAPI(title="Devbox Commander", version="1.0.0", lifespan=lifespan)
    app.state.store = store
    app.state.runtime = runtime
    app.state.bus = bus
    app.state.tasks = tasks
    app.state.orchestrator = orchestrator
    app.state.reconciler = reconciler

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        details = [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
        return JSONResponse({"error": "Invalid request", "details": details}, status_code=400)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "runtime": await runtime.ping(),
            "event_clients": connection_count(),
            "tasks": len(tasks.get_all()),
        }

    app.include_router(router, prefix="/api")
    return app
