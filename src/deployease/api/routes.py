"""HTTP routes. Thin wrappers over the runtime; no orchestration here."""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import Field

from deployease.contracts.events import DeployStatus
from deployease.contracts.models import ApiModel, FileSpec
from deployease.observability.metrics import render_metrics
from deployease.runtime import DeployRuntime

router = APIRouter(prefix="/api")
meta_router = APIRouter()


class DeployRequest(ApiModel):
    branch: str
    files: list[FileSpec] = Field(default_factory=list)
    commit_message: str | None = None


class SwitchRequest(ApiModel):
    target_branch: str


def get_runtime(request: Request) -> DeployRuntime:
    return request.app.state.runtime


@router.post("/deployments", tags=["deployments"])
async def deploy(body: DeployRequest, rt: DeployRuntime = Depends(get_runtime)) -> dict[str, Any]:
    record = await rt.recorder.deploy(body.branch, body.files, body.commit_message)
    if record.deduplicated:
        # The first submission already triggered the host build.
        await rt.bus.broadcast_log(
            f"Duplicate deployment to {record.environment.value} ignored;"
            f" already committed as {record.commit_id[:7]}"
        )
        return {"success": True, "deduplicated": True, "deployment": record.to_wire(), "build": None}
    build = await rt.coordinator.trigger_build(record.environment.value)
    await rt.bus.broadcast(
        DeployStatus(
            status="success",
            message=f"Deployed {len(body.files)} file(s) to {record.environment.value}",
            branch=record.environment.value,
            commit_id=record.commit_id,
        ).to_wire()
    )
    await rt.bus.broadcast_log(
        f"Deployment to {record.environment.value} committed as {record.commit_id[:7]}"
    )
    return {"success": True, "deployment": record.to_wire(), "build": build}


@router.get("/deployments/history/all", tags=["deployments"])
async def history_all(
    limit: int = Query(10, ge=1, le=30), rt: DeployRuntime = Depends(get_runtime)
) -> dict[str, Any]:
    pages = await rt.recorder.history_all(limit)
    return {"success": True, "history": {branch: page.to_wire() for branch, page in pages.items()}}


@router.get("/deployments/history/{branch}", tags=["deployments"])
async def history(
    branch: str, limit: int = Query(10, ge=1, le=30), rt: DeployRuntime = Depends(get_runtime)
) -> dict[str, Any]:
    page = await rt.recorder.history(branch, limit)
    return {"success": True, **page.to_wire()}


@router.post("/deployments/rollback/{branch}/{commit_id}", tags=["deployments"])
async def rollback(
    branch: str, commit_id: str, rt: DeployRuntime = Depends(get_runtime)
) -> dict[str, Any]:
    record = await rt.recorder.rollback_to_commit(branch, commit_id)
    build = await rt.coordinator.trigger_build(record.environment.value)
    await rt.bus.broadcast(
        DeployStatus(
            status="rolled_back",
            message=f"Rolled back {record.environment.value} to {record.commit_id[:7]}",
            branch=record.environment.value,
            commit_id=record.commit_id,
        ).to_wire()
    )
    return {"success": True, "deployment": record.to_wire(), "build": build}


@router.post("/git/initialize", tags=["git"])
async def initialize(rt: DeployRuntime = Depends(get_runtime)) -> dict[str, Any]:
    outcome = await rt.tracker.initialize(rt.settings.initial_active_environment)
    return {"success": True, **outcome}


@router.get("/environments/status", tags=["environments"])
async def environment_status(rt: DeployRuntime = Depends(get_runtime)) -> dict[str, Any]:
    status = await rt.coordinator.status()
    return {"success": True, **status.to_wire()}


@router.post("/environments/switch", tags=["environments"])
async def switch_environment(
    body: SwitchRequest, rt: DeployRuntime = Depends(get_runtime)
) -> dict[str, Any]:
    result = await rt.coordinator.switch(body.target_branch)
    return {"success": True, **result.to_wire()}


@router.post("/environments/rollback", tags=["environments"])
async def restore_environment(rt: DeployRuntime = Depends(get_runtime)) -> dict[str, Any]:
    result = await rt.coordinator.restore_initial()
    return {"success": True, **result.to_wire()}


@meta_router.get("/metrics", tags=["meta"], response_class=PlainTextResponse)
async def metrics() -> str:
    return render_metrics()


@meta_router.get("/", tags=["meta"])
async def root(request: Request, rt: DeployRuntime = Depends(get_runtime)) -> dict[str, str | None]:
    return {
        "service": rt.settings.service_name,
        "env": rt.settings.app_env,
        "version": request.app.version,
        "request_id": getattr(request.state, "req_id", None),
    }


@meta_router.get("/healthz", tags=["meta"])
async def healthz(rt: DeployRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return {
        "status": "ok",
        "observers": rt.bus.connection_count,
        "hosting": await rt.hosting.verify_connection(),
        "rateLimit": rt.rate_limit.snapshot(time.time()),
    }
