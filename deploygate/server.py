from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from deploygate import __version__, engine, queries, scheduler
from deploygate.approvals.store import record_approval
from deploygate.errors import NotFoundError, PreconditionError
from deploygate.models import (
    Deployment,
    DeploymentVersion,
    Environment,
    Resource,
    VersionDependency,
    VersionStatus,
)
from deploygate.observability.internal_metrics import persisted_totals
from deploygate.observability.internal_metrics import snapshot as metrics_snapshot
from deploygate.observability.logging import configure_logging
from deploygate.policy.types import Policy
from deploygate.storage import repository
from deploygate.storage.schema import SCHEMA_VERSION, init_db
from deploygate.utils.canonical import utc_now

configure_logging()

app = FastAPI(title="deploygate", version=__version__)
logger = logging.getLogger(__name__)


class RedeployRequest(BaseModel):
    force: bool = False


class PinRequest(BaseModel):
    version_id: str
    force: bool = False


class ApprovalRequest(BaseModel):
    version_id: str
    environment_id: str
    approver_id: str
    status: str = "approved"
    reason: Optional[str] = None
    policy_id: Optional[str] = None


class JobStatusRequest(BaseModel):
    status: str
    message: Optional[str] = None
    external_id: Optional[str] = None


class VersionDependencyRequest(BaseModel):
    deployment_id: str
    version_selector: Dict[str, Any] = Field(default_factory=dict)


class VersionRequest(BaseModel):
    id: Optional[str] = None
    deployment_id: str
    tag: str
    name: Optional[str] = None
    status: VersionStatus = VersionStatus.READY
    metadata: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[VersionDependencyRequest] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class VersionStatusRequest(BaseModel):
    status: VersionStatus


class ResourceRequest(BaseModel):
    name: str
    identifier: str
    kind: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)


class EnvironmentRequest(BaseModel):
    name: str
    resource_selector: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DeploymentRequest(BaseModel):
    name: str
    resource_selector: Optional[Dict[str, Any]] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


class LockRequest(BaseModel):
    locked_by: str = Field(min_length=1)


@app.exception_handler(NotFoundError)
def _not_found(_request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc), "kind": exc.kind, "id": exc.identifier})


@app.exception_handler(PreconditionError)
def _precondition_failed(_request: Request, exc: PreconditionError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc), "code": exc.code, "details": exc.details})


@app.on_event("startup")
def _startup() -> None:
    init_db()
    status = scheduler.start_scheduler()
    logger.info("dispatch scheduler %s", status.get("reason"))


@app.on_event("shutdown")
def _shutdown() -> None:
    scheduler.stop_scheduler()


@app.get("/healthz")
def healthz():
    return {"status": "ok", "service": "deploygate", "version": __version__, "schema_version": SCHEMA_VERSION}


@app.get("/metrics/internal")
def metrics_internal():
    return {
        "process": metrics_snapshot(),
        "persisted": persisted_totals(),
        "scheduler": scheduler.scheduler_status(),
    }


# -- queries ------------------------------------------------------------------


@app.get("/release-targets/{release_target_id}/rejections")
def get_release_target_rejections(release_target_id: str):
    return queries.release_target_rejections(release_target_id)


@app.get("/release-targets/{release_target_id}/history")
def get_release_target_history(release_target_id: str):
    return queries.release_target_history(release_target_id)


@app.get("/environments/{environment_id}/rejections")
def get_environment_rejections(environment_id: str):
    return queries.environment_rejections(environment_id)


@app.get("/versions/{version_id}/environments/{environment_id}/rollout")
def get_version_rollout(version_id: str, environment_id: str):
    return queries.version_rollout(version_id, environment_id)


# -- release target actions ---------------------------------------------------


@app.post("/release-targets/{release_target_id}/redeploy")
def post_redeploy(release_target_id: str, payload: Optional[RedeployRequest] = None):
    force = payload.force if payload is not None else False
    return engine.redeploy(release_target_id, force=force).to_dict()


@app.put("/release-targets/{release_target_id}/pin")
def put_pin(release_target_id: str, payload: PinRequest):
    return engine.pin_version(release_target_id, payload.version_id, force=payload.force).to_dict()


@app.delete("/release-targets/{release_target_id}/pin")
def delete_pin(release_target_id: str):
    return engine.unpin_version(release_target_id).to_dict()


# -- events -------------------------------------------------------------------


@app.post("/approvals", status_code=201)
def post_approval(payload: ApprovalRequest):
    try:
        record = record_approval(
            version_id=payload.version_id,
            environment_id=payload.environment_id,
            approver_id=payload.approver_id,
            status=payload.status,
            reason=payload.reason,
            policy_id=payload.policy_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    targets = repository.list_release_targets(environment_id=payload.environment_id)
    report = engine.tick(release_target_ids=[t.id for t in targets])
    return {"approval": asdict(record), "dispatch": report.to_dict()}


@app.post("/jobs/{job_id}/status")
def post_job_status(job_id: str, payload: JobStatusRequest):
    job, report = engine.on_job_updated(
        job_id,
        payload.status,
        message=payload.message,
        external_id=payload.external_id,
    )
    return {"job": asdict(job), "dispatch": report.to_dict() if report is not None else None}


@app.post("/versions", status_code=201)
def post_version(payload: VersionRequest):
    version = DeploymentVersion(
        id=payload.id or repository.new_id(),
        deployment_id=payload.deployment_id,
        name=payload.name or payload.tag,
        tag=payload.tag,
        created_at=payload.created_at or utc_now(),
        status=payload.status.value,
        metadata=payload.metadata,
        config=payload.config,
        dependencies=tuple(VersionDependency(d.deployment_id, d.version_selector) for d in payload.dependencies),
    )
    result = engine.on_new_version(version)
    return {"version_id": version.id, **result.to_dict()}


@app.post("/versions/{version_id}/status")
def post_version_status(version_id: str, payload: VersionStatusRequest):
    return engine.on_version_updated(version_id, payload.status.value).to_dict()


@app.put("/policies/{policy_id}")
def put_policy(policy_id: str, payload: Policy):
    if payload.id != policy_id:
        raise HTTPException(status_code=400, detail="policy id in body does not match path")
    return engine.on_policy_updated(payload).to_dict()


@app.delete("/policies/{policy_id}")
def delete_policy(policy_id: str):
    return engine.on_policy_deleted(policy_id).to_dict()


@app.put("/resources/{resource_id}")
def put_resource(resource_id: str, payload: ResourceRequest):
    resource = Resource(id=resource_id, **payload.model_dump())
    return {"cycles": [r.to_dict() for r in engine.on_resource_updated(resource)]}


@app.put("/environments/{environment_id}")
def put_environment(environment_id: str, payload: EnvironmentRequest):
    environment = Environment(id=environment_id, **payload.model_dump())
    return {"cycles": [r.to_dict() for r in engine.on_environment_updated(environment)]}


@app.put("/deployments/{deployment_id}")
def put_deployment(deployment_id: str, payload: DeploymentRequest):
    deployment = Deployment(id=deployment_id, **payload.model_dump())
    return {"cycles": [r.to_dict() for r in engine.on_deployment_updated(deployment)]}


@app.post("/resources/{resource_id}/lock")
def post_resource_lock(resource_id: str, payload: LockRequest):
    return asdict(engine.lock_resource(resource_id, payload.locked_by))


@app.delete("/resources/{resource_id}/lock")
def delete_resource_lock(resource_id: str):
    return engine.unlock_resource(resource_id).to_dict()


@app.post("/dispatch/tick")
def post_dispatch_tick():
    return scheduler.tick()
