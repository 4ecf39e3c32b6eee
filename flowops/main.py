"""
FlowOps API Main Module.

This module provides the FastAPI service the dashboard polls. It exposes
the simulated pipeline's latest run, metrics, logs, run history and chart
series, and lets clients trigger a deployment.

The API supports the following operations:
- Latest run with its steps, and the run history
- Dashboard metrics, the recent log stream and chart samples
- Manual deployment triggering, governed by the configured trigger policy
- Request logging and JSON error responses

``create_app`` is the composition root: it owns the engine, the scheduler
driving task and the snapshot store. Published snapshots reach the store
through a ``SnapshotRecorder`` writer thread, never on the event loop.

Dependencies:
    - FastAPI for the web framework
    - Pydantic for data validation
    - asyncio for the scheduler driving loop

Version: 0.1.0
"""
from __future__ import annotations

import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, get_settings
from .engine import (
    EngineNotRunningError,
    PipelineEngine,
    RunInProgressError,
    TriggerOutcome,
)
from .logger import StandardLogger
from .models import CamelModel, ChartSample, LogEntry, Metric, PipelineView, Run
from .storage import MAX_LOG_PAGE, SnapshotRecorder, SnapshotStore, build_store

# Configure logging
logger = logging.getLogger("flowops")
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)


class TriggerResponse(CamelModel):
    """
    Response model for deployment trigger requests.

    Attributes:
        outcome (TriggerOutcome): started, queued or restarted
        run_id (int): Run that is now active (for "queued", the current run)
    """

    outcome: TriggerOutcome
    run_id: int


def get_engine(request: Request) -> PipelineEngine:
    return request.app.state.engine


def get_store(request: Request) -> SnapshotStore:
    return request.app.state.store


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[PipelineEngine] = None,
    store: Optional[SnapshotStore] = None,
) -> FastAPI:
    """
    Build the FastAPI application and its collaborators.

    Args:
        settings: Configuration (defaults to the cached environment settings)
        engine: Simulation engine (defaults to one built from ``settings``)
        store: Snapshot store (defaults to ``build_store(settings)``)

    Returns:
        FastAPI: Application whose lifespan starts and stops the engine
    """
    settings = settings or get_settings()
    logger.setLevel(getattr(logging, settings.log_level.value, logging.INFO))
    engine = engine or PipelineEngine(settings, logger=StandardLogger("flowops.engine"))
    owns_store = store is None
    store = store or build_store(settings, StandardLogger("flowops.storage"))
    recorder = SnapshotRecorder(store, StandardLogger("flowops.storage"))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not engine.state.cycle_count:
            engine.restore(store.get_metrics(), store.last_ids())
        recorder.start()
        unsubscribe = engine.subscribe(recorder)
        engine.start()
        # Serve the first run from the store as soon as requests arrive
        await asyncio.to_thread(recorder.flush, 5.0)
        driver: Optional[asyncio.Task] = None
        if settings.simulation_autorun:
            driver = asyncio.create_task(engine.scheduler.run_forever())
        logger.info(
            "Simulation service started",
            extra={"storage": type(store).__name__, "autorun": settings.simulation_autorun},
        )
        try:
            yield
        finally:
            engine.stop()
            unsubscribe()
            if driver is not None:
                engine.scheduler.shutdown()
                await driver
            await asyncio.to_thread(recorder.close)
            if owns_store:
                store.close()
            logger.info("Simulation service stopped")

    app = FastAPI(title=settings.api_title, version=settings.api_version, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.recorder = recorder

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """
        Log HTTP requests with timing information.

        Args:
            request: The incoming HTTP request
            call_next: The next middleware/handler in the chain

        Returns:
            HTTP response from the next handler
        """
        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            status = getattr(response, "status_code", 500)
            logger.info(
                "HTTP request processed",
                extra={
                    "request": {
                        "method": request.method,
                        "path": request.url.path,
                        "query_params": dict(request.query_params),
                        "client_ip": request.client.host if request.client else None,
                    },
                    "response": {
                        "status_code": status,
                        "duration_ms": int(duration_ms),
                    },
                },
            )

    # Configure CORS middleware for the dashboard front-end
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health(
        engine: PipelineEngine = Depends(get_engine),
        store: SnapshotStore = Depends(get_store),
    ):
        """
        Health check endpoint.

        Returns:
            dict: Status, version, engine state and storage backend
        """
        return {
            "status": "ok",
            "version": settings.api_version,
            "engine_running": engine.running,
            "storage": type(store).__name__,
            "timestamp": time.time(),
        }

    @app.get("/api/pipeline/latest", response_model=PipelineView)
    def latest_pipeline(store: SnapshotStore = Depends(get_store)):
        """
        Get the most recent run and its steps.

        Raises:
            HTTPException: 404 if no run has been recorded yet
        """
        view = store.latest_run()
        if view is None:
            raise HTTPException(404, "No pipeline run recorded yet")
        return view

    @app.get("/api/metrics", response_model=List[Metric])
    def list_metrics(store: SnapshotStore = Depends(get_store)):
        """Get the dashboard metrics, ordered by id."""
        return store.get_metrics()

    @app.get("/api/logs", response_model=List[LogEntry])
    def list_logs(
        limit: int = Query(MAX_LOG_PAGE, ge=1, le=MAX_LOG_PAGE),
        store: SnapshotStore = Depends(get_store),
    ):
        """
        Get the most recent log entries.

        Entries are returned oldest-first (ascending id).
        """
        return store.get_logs(limit)

    @app.get("/api/runs", response_model=List[Run])
    def list_runs(
        limit: int = Query(20, ge=1, le=100),
        store: SnapshotStore = Depends(get_store),
    ):
        """Get the run history, newest first."""
        return store.list_runs(limit)

    @app.get("/api/chart", response_model=List[ChartSample])
    async def chart_data(engine: PipelineEngine = Depends(get_engine)):
        """Get the chart samples, oldest first."""
        return engine.get_chart_data()

    @app.post("/api/pipeline/trigger", response_model=TriggerResponse, status_code=202)
    async def trigger_deployment(engine: PipelineEngine = Depends(get_engine)):
        """
        Trigger a deployment.

        Runs on the event loop so it never interleaves with the scheduler's
        driving loop.

        Raises:
            HTTPException: 409 if the trigger policy rejects it mid-run
            HTTPException: 503 if the engine is stopped
        """
        try:
            outcome = engine.trigger_deployment()
        except RunInProgressError as e:
            raise HTTPException(409, str(e))
        except EngineNotRunningError as e:
            raise HTTPException(503, str(e))
        return TriggerResponse(outcome=outcome, run_id=engine.state.cycle_count)

    # Exception handlers
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """
        Handle Pydantic validation errors.

        Returns:
            JSONResponse: 422 status with validation error details
        """
        errors = []
        for error in exc.errors():
            error_dict = {
                "type": error.get("type"),
                "loc": error.get("loc", []),
                "msg": str(error.get("msg", "")),
                "input": (
                    str(error.get("input", "")) if error.get("input") is not None else None
                ),
            }
            # Context may hold non-serializable objects
            if "ctx" in error and error["ctx"]:
                error_dict["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
            errors.append(error_dict)
        logger.warning(
            "validation_error",
            extra={"props": {"path": request.url.path, "errors": errors}},
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """
        Handle HTTP exceptions (4xx and 5xx errors).

        Returns:
            JSONResponse: Response with the original status code and error detail
        """
        logger.warning(
            "http_exception",
            extra={
                "props": {
                    "path": request.url.path,
                    "status": exc.status_code,
                    "detail": str(exc.detail),
                }
            },
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Handle unexpected exceptions without exposing internal details.

        Returns:
            JSONResponse: 500 status with generic error message
        """
        logger.exception("unhandled_exception")
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})

    return app


app = create_app()
