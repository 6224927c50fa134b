from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from deploygate.dispatch.agent import JobAgentChannel
from deploygate.dispatch.jobs import update_job_status
from deploygate.models import (
    Deployment,
    DeploymentVersion,
    Environment,
    Job,
    ReleaseTarget,
    Resource,
    VersionDependency,
)
from deploygate.policy.types import Policy
from deploygate.release_targets import compute_release_targets
from deploygate.storage import repository

# A Monday.
T0 = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)


def at(hours: float = 0, days: int = 0) -> datetime:
    return T0 + timedelta(days=days, hours=hours)


class RecordingChannel(JobAgentChannel):
    name = "recording"

    def __init__(self):
        self.created: List[Job] = []
        self.cancelled: List[str] = []

    def job_created(self, job: Job) -> None:
        self.created.append(job)

    def job_cancelled(self, job_id: str, reason: str) -> None:
        self.cancelled.append(job_id)


def make_deployment(
    deployment_id: str = "dep-api",
    *,
    resource_selector: Optional[Dict[str, Any]] = None,
    variables: Optional[Dict[str, Any]] = None,
) -> Deployment:
    return repository.upsert_deployment(
        Deployment(
            id=deployment_id,
            name=deployment_id,
            resource_selector=resource_selector,
            variables=variables or {},
        )
    )


def make_environment(
    environment_id: str = "env-prod",
    *,
    resource_selector: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Environment:
    return repository.upsert_environment(
        Environment(
            id=environment_id,
            name=environment_id,
            resource_selector=resource_selector if resource_selector is not None else {},
            metadata=metadata or {},
        )
    )


def make_resource(
    resource_id: str,
    *,
    kind: str = "cluster",
    metadata: Optional[Dict[str, Any]] = None,
    variables: Optional[Dict[str, Any]] = None,
) -> Resource:
    return repository.upsert_resource(
        Resource(
            id=resource_id,
            name=resource_id,
            identifier=f"{kind}/{resource_id}",
            kind=kind,
            metadata=metadata or {},
            variables=variables or {},
        )
    )


def make_version(
    version_id: str,
    tag: str,
    *,
    deployment_id: str = "dep-api",
    created_at: Optional[datetime] = None,
    status: str = "ready",
    metadata: Optional[Dict[str, Any]] = None,
    dependencies: Sequence[VersionDependency] = (),
) -> DeploymentVersion:
    return repository.insert_version(
        DeploymentVersion(
            id=version_id,
            deployment_id=deployment_id,
            name=tag,
            tag=tag,
            created_at=created_at or T0,
            status=status,
            metadata=metadata or {},
            dependencies=tuple(dependencies),
        )
    )


def make_policy(policy_id: str, **fields: Any) -> Policy:
    fields.setdefault("name", policy_id)
    fields.setdefault("targets", [{}])
    policy = Policy.model_validate({"id": policy_id, **fields})
    repository.upsert_policy(policy)
    return policy


def build_workspace(
    resource_ids: Sequence[str] = ("r1",),
    *,
    deployment_id: str = "dep-api",
    environment_id: str = "env-prod",
) -> List[ReleaseTarget]:
    make_deployment(deployment_id)
    make_environment(environment_id)
    for resource_id in resource_ids:
        make_resource(resource_id)
    compute_release_targets()
    return repository.list_release_targets(deployment_id=deployment_id, environment_id=environment_id)


def target_for(resource_id: str, *, deployment_id: str = "dep-api", environment_id: str = "env-prod") -> ReleaseTarget:
    row = repository.find_release_target(resource_id, environment_id, deployment_id)
    assert row is not None
    return repository.get_release_target(row["id"])


def complete_job(job_id: str, status: str = "successful") -> Job:
    update_job_status(job_id, "in_progress")
    return update_job_status(job_id, status)
