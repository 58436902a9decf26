"""
API_APP
=======

FastAPI control surface for cycleCore.

Endpoints:
    GET    /health                   Health check
    GET    /status                   Controller + scheduler status
    POST   /run                      Start a bounded run (background)
    POST   /stop                     Stop the active run
    POST   /eternal/start            Start eternal mode (background)
    POST   /eternal/stop             Stop eternal mode
    PATCH  /eternal/config           Update eternal settings live
    GET    /cycles                   Recent stored cycles
    GET    /cycles/export            Whole history as JSON
    GET    /events                   Recent lifecycle events
    POST   /sessions/{session_id}/save  Save history as a session log
    GET    /sessions                 List saved session logs
    GET    /sessions/{session_id}    Cycles of a saved session

Runs and eternal starts return immediately; the work happens on a daemon
thread. Starting a run while one is active returns 409.

Usage:
    uvicorn cycle_core.api.app:create_app --factory --port 8432
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Response
from pydantic import BaseModel, Field

from .. import __version__
from ..config.loader import ConfigError, CycleCoreConfig, load_config
from ..loop import LoopAlreadyRunningError
from ..memory.session_log import SessionLogStore
from ..scheduler.eternal import EternalScheduler, build_scheduler

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8432


# ============================================================================
# PYDANTIC MODELS
# ============================================================================

class RunRequest(BaseModel):
    """Request body for a bounded run."""
    input: str = Field(..., min_length=1, description="Input for the first Generator call")
    max_cycles: Optional[int] = Field(None, ge=1, description="Cycle budget (config default if omitted)")


class EternalConfigRequest(BaseModel):
    """Partial eternal settings. Only the fields sent are applied."""
    interval_seconds: Optional[float] = Field(None, gt=0)
    max_cycles_per_loop: Optional[int] = Field(None, ge=1)
    auto_restart: Optional[bool] = None
    adaptive_interval: Optional[bool] = None
    min_interval: Optional[float] = Field(None, gt=0)
    max_interval: Optional[float] = Field(None, gt=0)


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str


class StatusResponse(BaseModel):
    is_running: bool
    cycle_id: int
    loop_count: int
    total_cycles: int
    interval_seconds: float
    last_loop_duration_ms: int
    is_eternal: bool
    state: str
    runtime_seconds: float
    last_activity: Optional[float] = None
    history_size: int = 0
    last_result: Optional[Dict[str, Any]] = None
    config: Dict[str, Any] = {}


class SessionInfo(BaseModel):
    session_id: str
    saved_at: Optional[str] = None
    total_cycles: int = 0


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    scheduler: EternalScheduler = None,
    sessions: SessionLogStore = None,
    config: CycleCoreConfig = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        scheduler: Scheduler (and through it, the controller) to expose.
            Built from ``config`` if None.
        sessions: Session log store. Built from ``config.paths`` if None.
        config: Used only for collaborators that were not passed in.
    """
    if scheduler is None or sessions is None:
        config = config or load_config()
    scheduler = scheduler or build_scheduler(config)
    sessions = sessions or SessionLogStore(config.paths.sessions_dir)
    controller = scheduler.controller

    app = FastAPI(
        title="cycleCore API",
        description="Control surface for the recursive pipeline controller",
        version=__version__,
    )
    app.state.scheduler = scheduler
    app.state.sessions = sessions
    app.state.worker = None

    def run_in_background(name: str, fn: Callable, *args) -> threading.Thread:
        worker = threading.Thread(target=fn, args=args, name=name, daemon=True)
        app.state.worker = worker
        worker.start()
        return worker

    # ========================================================================
    # HEALTH & STATUS
    # ========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        return HealthResponse(status="healthy", version=__version__, timestamp=datetime.now().isoformat())

    @app.get("/status", response_model=StatusResponse, tags=["System"])
    def get_status():
        """Controller and scheduler status."""
        status = scheduler.get_status()
        ctl = controller.get_status()
        status["history_size"] = ctl["history_size"]
        status["last_result"] = ctl["last_result"]
        return StatusResponse(**status)

    # ========================================================================
    # BOUNDED RUNS
    # ========================================================================

    @app.post("/run", status_code=202, tags=["Runs"])
    def start_run(request: RunRequest):
        """Start a bounded run in the background. The controller is claimed before responding."""
        max_cycles = request.max_cycles or controller.default_max_cycles
        try:
            app.state.worker = controller.start_in_thread(request.input, max_cycles)
        except LoopAlreadyRunningError as e:
            logger.warning("Rejected /run: %s", e)
            raise HTTPException(status_code=409, detail=str(e))
        return {"status": "started", "run_id": controller.run_id, "max_cycles": max_cycles}

    @app.post("/stop", tags=["Runs"])
    def stop_run():
        return {"stopped": controller.stop(), "state": controller.state.value}

    # ========================================================================
    # ETERNAL MODE
    # ========================================================================

    def checked_partial(request: Optional[EternalConfigRequest]) -> Dict[str, Any]:
        partial = request.model_dump(exclude_unset=True, exclude_none=True) if request else {}
        try:
            scheduler.config.merged(partial)
        except ConfigError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return partial

    @app.post("/eternal/start", status_code=202, tags=["Eternal"])
    def start_eternal(request: Optional[EternalConfigRequest] = None):
        """Start eternal mode; the first loop runs in the background."""
        partial = checked_partial(request)
        effective = scheduler.config.merged(partial)
        run_in_background("eternal-start", scheduler.start_eternal, partial or None)
        return {"status": "starting", "config": effective.to_dict()}

    @app.post("/eternal/stop", tags=["Eternal"])
    def stop_eternal():
        stopped = scheduler.stop_eternal()
        return {"stopped": stopped, "loop_count": scheduler.loop_count, "total_cycles": scheduler.total_cycles}

    @app.patch("/eternal/config", tags=["Eternal"])
    def update_eternal_config(request: EternalConfigRequest):
        partial = checked_partial(request)
        return scheduler.update_config(partial).to_dict()

    # ========================================================================
    # HISTORY
    # ========================================================================

    @app.get("/cycles", tags=["History"])
    def list_cycles(limit: int = Query(20, ge=1, le=1000)) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in controller.history.recent(limit)]

    @app.get("/cycles/export", tags=["History"])
    def export_cycles():
        return Response(content=controller.export_memory(), media_type="application/json")

    @app.get("/events", tags=["History"])
    def recent_events(limit: int = Query(20, ge=1, le=100)) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in controller.events.recent(limit)]

    # ========================================================================
    # SESSIONS
    # ========================================================================

    @app.post("/sessions/{session_id}/save", tags=["Sessions"])
    def save_session(session_id: str):
        try:
            path = sessions.save(session_id, controller.history)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"session_id": session_id, "path": str(path), "total_cycles": len(controller.history)}

    @app.get("/sessions", response_model=List[SessionInfo], tags=["Sessions"])
    def list_sessions(limit: int = Query(50, ge=1, le=500)):
        return [SessionInfo(**s) for s in sessions.list_sessions(limit)]

    @app.get("/sessions/{session_id}", tags=["Sessions"])
    def get_session(session_id: str):
        try:
            cycles = sessions.load(session_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if cycles is None:
            raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
        return {"session_id": session_id, "cycles": [c.to_dict() for c in cycles]}

    return app


# ============================================================================
# MAIN
# ============================================================================

def main(port: int = DEFAULT_PORT, config: CycleCoreConfig = None):
    """Run the API server."""
    import uvicorn

    app = create_app(config=config)
    print("Starting cycleCore API server...")
    print(f"API docs: http://localhost:{port}/docs")
    uvicorn.run(app, host="localhost", port=port)


if __name__ == "__main__":
    main()
