# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the broadcast engine.

This module provides the REST API interface of the engine. It includes:

- Pydantic models defining response schemas
- A factory function to create and configure the FastAPI application
- Authentication via API token in the X-API-Token header
- The trigger endpoint invoked by the external scheduler/cron
- Endpoints for instances, scheduled jobs, execution history and metrics

Example:
    Creating and running the API application::

        from broadcast_engine.core import BroadcastEngine
        from broadcast_engine.api import create_app

        engine = BroadcastEngine(db_path="/data/broadcast_engine.db")
        app = create_app(engine, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import BroadcastEngine, StoreUnavailableError
from .models import ExecutionLogEntry, InstanceCreate, JobStatus, ScheduledJob, ScheduledJobCreate

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

ERROR_STATUS = {
    "job_not_found": status.HTTP_404_NOT_FOUND,
    "instance_not_found": status.HTTP_404_NOT_FOUND,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "validation_error": status.HTTP_400_BAD_REQUEST,
}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token has been configured through :func:`create_app` the
    dependency is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: str | None = None


class BasicOkResponse(CommandStatus):
    pass


class SchedulerStatusResponse(CommandStatus):
    active: bool | None = None


class StatusResponse(CommandStatus):
    active: bool
    jobs: dict[str, int] = Field(default_factory=dict)


class ProcessScheduledResponse(BaseModel):
    """Response of one scheduler pass."""
    success: bool = True
    processed: int
    timestamp: str


class InstanceInfo(BaseModel):
    """Stored instance as returned by ``listInstances`` (token omitted)."""
    id: str
    name: str | None = None
    created_at: str | None = None


class InstancesResponse(CommandStatus):
    instances: list[InstanceInfo]


class JobResponse(CommandStatus):
    job: ScheduledJob


class JobsResponse(CommandStatus):
    jobs: list[ScheduledJob]


class JobStatusResponse(CommandStatus):
    id: str
    status: JobStatus


class LogsResponse(CommandStatus):
    logs: list[ExecutionLogEntry]


class ReclaimResponse(CommandStatus):
    released: int


def _raise_for_result(result: dict[str, Any]) -> dict[str, Any]:
    if result.get("ok") is True:
        return result
    code = result.get("code")
    raise HTTPException(
        ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST),
        {"error": result.get("error"), "code": code},
    )


def create_app(
    svc: BroadcastEngine,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`broadcast_engine.core.BroadcastEngine` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint except ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    api = FastAPI(title="WhatsApp Broadcast Engine", lifespan=lifespan)
    api.state.api_token = api_token
    service = svc
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": jsonable_errors(exc)})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def scheduler_status():
        """Return the scheduler state and job counts by status."""
        jobs = await service.persistence.count_jobs_by_status()
        return StatusResponse(ok=True, active=service.active, jobs=jobs)

    @router.post("/process-scheduled", response_model=ProcessScheduledResponse)
    async def process_scheduled():
        """Run one scheduler pass (trigger endpoint for cron)."""
        try:
            result = await service.handle_command("processScheduled", {})
        except StoreUnavailableError as exc:
            logger.error("process-scheduled failed: %s", exc)
            return JSONResponse(status_code=500, content={"error": str(exc)})
        return ProcessScheduledResponse(processed=result["processed"], timestamp=result["timestamp"])

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the background poll loop."""
        result = await service.handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/suspend", response_model=SchedulerStatusResponse, response_model_exclude_none=True)
    async def suspend():
        """Suspend the background poll loop."""
        result = await service.handle_command("suspend", {})
        return SchedulerStatusResponse.model_validate(result)

    @router.post("/activate", response_model=SchedulerStatusResponse, response_model_exclude_none=True)
    async def activate():
        """Activate the background poll loop."""
        result = await service.handle_command("activate", {})
        return SchedulerStatusResponse.model_validate(result)

    @router.post("/reclaim-stale", response_model=ReclaimResponse, response_model_exclude_none=True)
    async def reclaim_stale():
        """Return abandoned ``processing`` jobs to ``pending``."""
        result = await service.handle_command("reclaimStale", {})
        return ReclaimResponse.model_validate(result)

    @api.post("/instance", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_instance(payload: InstanceCreate):
        """Register or update a channel credential."""
        result = _raise_for_result(await service.handle_command("addInstance", payload.model_dump()))
        return BasicOkResponse(ok=result["ok"])

    @api.get("/instances", response_model=InstancesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_instances():
        """List registered instances without their tokens."""
        result = await service.handle_command("listInstances", {})
        return InstancesResponse.model_validate(result)

    @api.delete("/instance/{instance_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def delete_instance(instance_id: str):
        """Remove a channel credential."""
        result = _raise_for_result(await service.handle_command("deleteInstance", {"id": instance_id}))
        return BasicOkResponse.model_validate(result)

    @api.post("/jobs", response_model=JobResponse, status_code=status.HTTP_201_CREATED, dependencies=[auth_dependency])
    async def add_job(payload: ScheduledJobCreate):
        """Schedule a one-shot or recurring broadcast."""
        result = _raise_for_result(
            await service.handle_command("addJob", payload.model_dump(mode="json", exclude_none=True))
        )
        return JobResponse(ok=True, job=result["job"])

    @api.get("/jobs", response_model=JobsResponse, dependencies=[auth_dependency])
    async def list_jobs(job_status: JobStatus | None = Query(default=None, alias="status")):
        """List scheduled jobs, optionally filtered by status."""
        result = await service.handle_command(
            "listJobs", {"status": job_status.value if job_status else None}
        )
        return JobsResponse.model_validate(result)

    @api.get("/jobs/{job_id}", response_model=JobResponse, dependencies=[auth_dependency])
    async def get_job(job_id: str):
        """Return one scheduled job."""
        result = _raise_for_result(await service.handle_command("getJob", {"id": job_id}))
        return JobResponse.model_validate(result)

    @api.post("/jobs/{job_id}/{action}", response_model=JobStatusResponse, dependencies=[auth_dependency])
    async def job_action(job_id: str, action: str):
        """Pause, resume or cancel a job."""
        commands = {"pause": "pauseJob", "resume": "resumeJob", "cancel": "cancelJob"}
        if action not in commands:
            raise HTTPException(status.HTTP_404_NOT_FOUND, f"Unknown action '{action}'")
        result = _raise_for_result(await service.handle_command(commands[action], {"id": job_id}))
        return JobStatusResponse.model_validate(result)

    @api.get("/jobs/{job_id}/logs", response_model=LogsResponse, dependencies=[auth_dependency])
    async def job_logs(job_id: str, limit: int = 100):
        """Return the execution history of a job, newest first."""
        result = _raise_for_result(await service.handle_command("listLogs", {"id": job_id, "limit": limit}))
        return LogsResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the engine."""
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Validation errors with non-serialisable context values stringified."""
    errors = []
    for error in exc.errors():
        item = dict(error)
        if "ctx" in item:
            item["ctx"] = {key: str(value) for key, value in item["ctx"].items()}
        errors.append(item)
    return errors
