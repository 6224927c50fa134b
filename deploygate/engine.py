"""
Event entry points.

Every event persists its change, then runs one deployment cycle over the
release targets it could affect: create triggers, then dispatch every
pending trigger on those targets (not only the new ones, so work blocked by
an earlier evaluation gets another look).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from deploygate.approvals.gate import RoleChecker
from deploygate.dispatch import (
    DispatchReport,
    TriggerScope,
    create_triggers,
    dispatch_triggers,
    pending_trigger_ids,
    update_job_status,
)
from deploygate.dispatch.agent import JobAgentChannel
from deploygate.errors import PreconditionError
from deploygate.models import (
    TERMINAL_JOB_STATUSES,
    Deployment,
    DeploymentVersion,
    Environment,
    Job,
    Resource,
    TriggerCause,
    WorkTrigger,
)
from deploygate.policy.types import Policy
from deploygate.release_targets import ReleaseTargetChanges, compute_release_targets
from deploygate.storage import repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleResult:
    cause: str
    created: Tuple[WorkTrigger, ...] = ()
    report: DispatchReport = field(default_factory=DispatchReport)

    @property
    def job_ids(self) -> List[str]:
        return self.report.job_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cause": self.cause,
            "triggers_created": [t.id for t in self.created],
            "dispatch": self.report.to_dict(),
        }


def run_cycle(
    cause: str,
    scope: TriggerScope,
    *,
    force: bool = False,
    now: Optional[datetime] = None,
    role_checker: Optional[RoleChecker] = None,
    channel: Optional[JobAgentChannel] = None,
) -> CycleResult:
    created = create_triggers(cause, scope, now=now, role_checker=role_checker)
    target_ids = [t.id for t in scope.release_targets()]
    report = dispatch_triggers(
        pending_trigger_ids(target_ids),
        force=force,
        now=now,
        role_checker=role_checker,
        channel=channel,
    )
    logger.info(
        "cycle finished created=%d dispatched=%d rejected=%d",
        len(created),
        len(report.dispatched),
        len(report.rejected),
        extra={"cause": cause},
    )
    return CycleResult(cause=cause, created=tuple(created), report=report)


def _run_for_changes(
    changes: ReleaseTargetChanges,
    cause: str,
    **kwargs: Any,
) -> List[CycleResult]:
    results: List[CycleResult] = []
    if changes.created:
        scope = TriggerScope(release_target_ids=tuple(t.id for t in changes.created))
        results.append(run_cycle(TriggerCause.NEW_RELEASE_TARGET.value, scope, **kwargs))
    if changes.kept:
        scope = TriggerScope(release_target_ids=tuple(t.id for t in changes.kept))
        results.append(run_cycle(cause, scope, **kwargs))
    return results


def on_new_version(version: DeploymentVersion, **kwargs: Any) -> CycleResult:
    repository.get_deployment(version.deployment_id)
    repository.insert_version(version)
    logger.info("version created tag=%s", version.tag, extra={"version_id": version.id})
    scope = TriggerScope(deployment_id=version.deployment_id, version_id=version.id)
    return run_cycle(TriggerCause.NEW_VERSION.value, scope, **kwargs)


def on_version_updated(version_id: str, status: str, **kwargs: Any) -> CycleResult:
    version = repository.update_version_status(version_id, status)
    scope = TriggerScope(deployment_id=version.deployment_id)
    return run_cycle(TriggerCause.VERSION_UPDATED.value, scope, **kwargs)


def on_policy_updated(policy: Policy, **kwargs: Any) -> CycleResult:
    # A policy edit can widen or narrow its own scope, so every target is in play.
    repository.upsert_policy(policy)
    return run_cycle(TriggerCause.POLICY_UPDATED.value, TriggerScope(), **kwargs)


def on_policy_deleted(policy_id: str, **kwargs: Any) -> CycleResult:
    repository.delete_policy(policy_id)
    return run_cycle(TriggerCause.POLICY_UPDATED.value, TriggerScope(), **kwargs)


def on_resource_updated(resource: Resource, **kwargs: Any) -> List[CycleResult]:
    repository.upsert_resource(resource)
    changes = compute_release_targets(resource_ids=[resource.id])
    return _run_for_changes(changes, TriggerCause.RESOURCE_UPDATED.value, **kwargs)


def on_environment_updated(environment: Environment, **kwargs: Any) -> List[CycleResult]:
    repository.upsert_environment(environment)
    changes = compute_release_targets(environment_ids=[environment.id])
    return _run_for_changes(changes, TriggerCause.ENVIRONMENT_UPDATED.value, **kwargs)


def on_deployment_updated(deployment: Deployment, **kwargs: Any) -> List[CycleResult]:
    repository.upsert_deployment(deployment)
    changes = compute_release_targets(deployment_ids=[deployment.id])
    return _run_for_changes(changes, TriggerCause.DEPLOYMENT_UPDATED.value, **kwargs)


def _require_unlocked(release_target_id: str) -> None:
    target = repository.get_release_target(release_target_id)
    resource = repository.get_resource(target.resource_id)
    if resource.locked:
        raise PreconditionError(
            "RESOURCE_LOCKED",
            f"resource {resource.identifier} is locked",
            {"resource_id": resource.id, "locked_by": resource.locked_by},
        )


def redeploy(release_target_id: str, force: bool = False, **kwargs: Any) -> CycleResult:
    """
    Re-run the target's current release. Force skips every dispatch rule
    except locking.
    """
    _require_unlocked(release_target_id)
    jobs = repository.list_jobs(release_target_id=release_target_id)
    if not jobs:
        raise PreconditionError(
            "NO_PRIOR_RELEASE",
            f"release target {release_target_id} has never been deployed",
            {"release_target_id": release_target_id},
        )
    cause = TriggerCause.FORCE_DEPLOY if force else TriggerCause.REDEPLOY
    scope = TriggerScope(release_target_ids=(release_target_id,), version_id=jobs[0].version_id)
    result = run_cycle(cause.value, scope, force=force, **kwargs)
    if not result.created:
        raise PreconditionError(
            "REDEPLOY_NOT_ELIGIBLE",
            f"version {jobs[0].version_id} can no longer be deployed to {release_target_id}",
            {"release_target_id": release_target_id, "version_id": jobs[0].version_id},
        )
    return result


def pin_version(release_target_id: str, version_id: str, force: bool = False, **kwargs: Any) -> CycleResult:
    """
    Pin the target to one version. Pinning to an older version than the one
    deployed needs force, since sequencing otherwise blocks the rollback.
    """
    target = repository.get_release_target(release_target_id)
    version = repository.get_version(version_id)
    if version.deployment_id != target.deployment_id:
        raise PreconditionError(
            "VERSION_DEPLOYMENT_MISMATCH",
            f"version {version_id} belongs to deployment {version.deployment_id}, not {target.deployment_id}",
            {"release_target_id": release_target_id, "version_id": version_id},
        )
    if force:
        _require_unlocked(release_target_id)
    repository.set_desired_version(release_target_id, version_id)
    cause = TriggerCause.FORCE_DEPLOY if force else TriggerCause.PINNED_VERSION
    scope = TriggerScope(release_target_ids=(release_target_id,))
    return run_cycle(cause.value, scope, force=force, **kwargs)


def unpin_version(release_target_id: str, **kwargs: Any) -> CycleResult:
    repository.get_release_target(release_target_id)
    repository.set_desired_version(release_target_id, None)
    scope = TriggerScope(release_target_ids=(release_target_id,))
    return run_cycle(TriggerCause.PINNED_VERSION.value, scope, **kwargs)


def lock_resource(resource_id: str, locked_by: str) -> Resource:
    if not str(locked_by or "").strip():
        raise ValueError("locked_by is required")
    resource = repository.set_resource_lock(resource_id, locked_by.strip())
    logger.info("resource %s locked by=%s", resource_id, locked_by)
    return resource


def unlock_resource(resource_id: str, **kwargs: Any) -> CycleResult:
    repository.set_resource_lock(resource_id, None)
    return run_cycle(TriggerCause.RESOURCE_UPDATED.value, TriggerScope(resource_id=resource_id), **kwargs)


def on_job_updated(
    job_id: str,
    status: str,
    *,
    message: Optional[str] = None,
    external_id: Optional[str] = None,
    **kwargs: Any,
) -> Tuple[Job, Optional[DispatchReport]]:
    """
    Apply an agent report. A job reaching a terminal status can free a
    concurrency slot or satisfy a dependency, so pending work is retried.
    """
    job = update_job_status(job_id, status, message=message, external_id=external_id)
    if job.status not in {s.value for s in TERMINAL_JOB_STATUSES}:
        return job, None
    return job, tick(**kwargs)


def tick(
    *,
    release_target_ids: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None,
    role_checker: Optional[RoleChecker] = None,
    channel: Optional[JobAgentChannel] = None,
) -> DispatchReport:
    """
    Re-dispatch pending triggers. Catches rollout times and window
    boundaries that pass without any event.
    """
    ids = pending_trigger_ids(release_target_ids)
    logger.debug("tick pending=%d", len(ids), extra={"cause": TriggerCause.SCHEDULED_TICK.value})
    return dispatch_triggers(ids, now=now, role_checker=role_checker, channel=channel)
