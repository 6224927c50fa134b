"""
Trigger creation: the first, cheap pass of the pipeline.

An event names a scope; every release target inside it is run through the
ordered stages below. Survivors are persisted as pending WorkTriggers and
nothing else: jobs are only ever emitted by ``dispatch_triggers``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from deploygate.approvals.gate import RoleChecker
from deploygate.approvals.store import create_placeholder_records
from deploygate.dispatch.stages import Stage, run_stages
from deploygate.dispatch.types import TriggerScope
from deploygate.models import (
    REPEATABLE_CAUSES,
    Deployment,
    DeploymentVersion,
    ReleaseTarget,
    Resource,
    TriggerCause,
    TriggerStatus,
    WorkTrigger,
)
from deploygate.observability.internal_metrics import incr
from deploygate.policy.resolver import effective_policy
from deploygate.policy.types import EffectivePolicy
from deploygate.rules import RuleContext, creation_chain, evaluate_chain
from deploygate.storage import repository
from deploygate.utils.canonical import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedTrigger:
    release_target: ReleaseTarget
    resource: Resource
    deployment: Deployment
    policy: EffectivePolicy
    candidates: Tuple[DeploymentVersion, ...] = ()
    version: Optional[DeploymentVersion] = None
    variables: Mapping[str, Any] = field(default_factory=dict)


def _load(targets: List[ReleaseTarget]) -> List[PlannedTrigger]:
    deployments: Dict[str, Deployment] = {}
    planned: List[PlannedTrigger] = []
    for target in targets:
        if target.deployment_id not in deployments:
            deployments[target.deployment_id] = repository.get_deployment(target.deployment_id)
        planned.append(
            PlannedTrigger(
                release_target=target,
                resource=repository.get_resource(target.resource_id),
                deployment=deployments[target.deployment_id],
                policy=effective_policy(target),
            )
        )
    return planned


def _enumerate_candidates(scope: TriggerScope):
    versions_by_deployment: Dict[str, List[DeploymentVersion]] = {}

    def stage(items: List[PlannedTrigger]) -> List[PlannedTrigger]:
        out: List[PlannedTrigger] = []
        for item in items:
            pinned = item.release_target.desired_version_id
            if pinned:
                if scope.version_id is not None and scope.version_id != pinned:
                    continue
                candidates: List[DeploymentVersion] = [repository.get_version(pinned)]
            else:
                deployment_id = item.release_target.deployment_id
                if deployment_id not in versions_by_deployment:
                    versions_by_deployment[deployment_id] = repository.list_versions(deployment_id)
                candidates = versions_by_deployment[deployment_id]
                if scope.version_id is not None:
                    candidates = [v for v in candidates if v.id == scope.version_id]
            if candidates:
                out.append(replace(item, candidates=tuple(candidates)))
        return out

    return stage


def _apply_creation_chain(cause: str, now: datetime, role_checker: Optional[RoleChecker]):
    rules = creation_chain(force=cause == TriggerCause.FORCE_DEPLOY.value)

    def stage(items: List[PlannedTrigger]) -> List[PlannedTrigger]:
        out: List[PlannedTrigger] = []
        for item in items:
            ctx = RuleContext(
                release_target=item.release_target,
                resource=item.resource,
                policy=item.policy,
                now=now,
                cause=cause,
                role_checker=role_checker,
            )
            result = evaluate_chain(rules, ctx, item.candidates)
            if result.eligible:
                out.append(replace(item, candidates=result.eligible))
            else:
                logger.debug(
                    "no candidate survived creation rules",
                    extra={"release_target_id": item.release_target.id, "cause": cause},
                )
        return out

    return stage


def _pick_newest(items: List[PlannedTrigger]) -> List[PlannedTrigger]:
    return [replace(item, version=max(item.candidates, key=lambda v: v.sort_key())) for item in items]


def _skip_existing(cause: str):
    repeatable = cause in {c.value for c in REPEATABLE_CAUSES}

    def stage(items: List[PlannedTrigger]) -> List[PlannedTrigger]:
        out: List[PlannedTrigger] = []
        for item in items:
            target_id = item.release_target.id
            version_id = item.version.id
            if not repeatable:
                pending = repository.list_triggers(release_target_id=target_id, status=TriggerStatus.PENDING.value)
                if any(t.version_id == version_id for t in pending):
                    continue
                active = repository.active_jobs(target_id)
                if active:
                    if any(j.version_id == version_id for j in active):
                        continue
                else:
                    # One attempt per version; retrying a failed job takes a redeploy.
                    jobs = repository.list_jobs(release_target_id=target_id)
                    if jobs and jobs[0].version_id == version_id:
                        continue
                    deployed = repository.latest_successful_job(target_id)
                    if deployed is not None and deployed.version_id == version_id:
                        continue
            out.append(item)
        return out

    return stage


def _cancel_superseded(items: List[PlannedTrigger]) -> List[PlannedTrigger]:
    for item in items:
        for trigger in repository.list_triggers(
            release_target_id=item.release_target.id, status=TriggerStatus.PENDING.value
        ):
            if repository.transition_trigger(trigger.id, TriggerStatus.CANCELLED.value):
                logger.info(
                    "superseded pending trigger",
                    extra={"trigger_id": trigger.id, "release_target_id": trigger.release_target_id},
                )
    return items


def _create_placeholders(items: List[PlannedTrigger]) -> List[PlannedTrigger]:
    for item in items:
        if item.policy.requires_approval:
            create_placeholder_records(item.version.id, item.release_target.environment_id, item.policy)
    return items


def _resolve_variables(items: List[PlannedTrigger]) -> List[PlannedTrigger]:
    return [
        replace(item, variables={**dict(item.deployment.variables), **dict(item.resource.variables)})
        for item in items
    ]


def _persist(cause: str, created: List[WorkTrigger]):
    def stage(items: List[PlannedTrigger]) -> List[PlannedTrigger]:
        for item in items:
            trigger = repository.insert_trigger(
                WorkTrigger(
                    id=repository.new_id(),
                    release_target_id=item.release_target.id,
                    version_id=item.version.id,
                    cause=cause,
                    status=TriggerStatus.PENDING.value,
                    created_at=utc_now(),
                    variables=item.variables,
                )
            )
            created.append(trigger)
            logger.info(
                "trigger created",
                extra={
                    "trigger_id": trigger.id,
                    "release_target_id": trigger.release_target_id,
                    "version_id": trigger.version_id,
                    "cause": cause,
                },
            )
        return items

    return stage


def create_triggers(
    cause: str,
    scope: TriggerScope,
    *,
    now: Optional[datetime] = None,
    cancel_superseded: bool = True,
    create_approval_placeholders: bool = True,
    role_checker: Optional[RoleChecker] = None,
) -> List[WorkTrigger]:
    cause_value = TriggerCause(cause).value
    at = now or utc_now()
    created: List[WorkTrigger] = []

    stages: List[Stage] = [
        ("load", _load),
        ("enumerate_candidates", _enumerate_candidates(scope)),
        ("creation_rules", _apply_creation_chain(cause_value, at, role_checker)),
        ("pick_newest", _pick_newest),
        ("skip_existing", _skip_existing(cause_value)),
    ]
    if cancel_superseded:
        stages.append(("cancel_superseded", _cancel_superseded))
    if create_approval_placeholders:
        stages.append(("approval_placeholders", _create_placeholders))
    stages.append(("resolve_variables", _resolve_variables))
    stages.append(("persist", _persist(cause_value, created)))

    run_stages(stages, scope.release_targets())
    if created:
        incr("triggers_created", len(created), {"cause": cause_value})
    return created
