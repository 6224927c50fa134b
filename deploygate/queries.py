"""Read-only "why is this blocked" queries. Nothing here writes."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional

from deploygate.approvals.gate import RoleChecker
from deploygate.models import ReleaseTarget, TriggerStatus
from deploygate.policy.resolver import effective_policy
from deploygate.rollout.scheduler import environment_rollout
from deploygate.rules import DISPATCH_CHAIN, RuleContext, evaluate_chain
from deploygate.storage import repository
from deploygate.utils.canonical import format_ts, utc_now

logger = logging.getLogger(__name__)

MAX_WORKERS = 8


def _candidate_versions(release_target: ReleaseTarget):
    if release_target.desired_version_id:
        return [repository.get_version(release_target.desired_version_id)]
    return repository.list_versions(release_target.deployment_id)


def release_target_rejections(
    release_target_id: str,
    *,
    now: Optional[datetime] = None,
    role_checker: Optional[RoleChecker] = None,
) -> Dict[str, Any]:
    """
    Evaluates the full dispatch chain over every candidate version of the
    target and returns the per-version reasons, plus the stored evaluation
    of each pending trigger.
    """
    at = now or utc_now()
    target = repository.get_release_target(release_target_id)
    policy = effective_policy(target)
    ctx = RuleContext(
        release_target=target,
        resource=repository.get_resource(target.resource_id),
        policy=policy,
        now=at,
        role_checker=role_checker,
    )
    candidates = _candidate_versions(target)
    result = evaluate_chain(DISPATCH_CHAIN, ctx, candidates)

    pending = repository.list_triggers(release_target_id=target.id, status=TriggerStatus.PENDING.value)
    return {
        "release_target_id": target.id,
        "environment_id": target.environment_id,
        "deployment_id": target.deployment_id,
        "resource_id": target.resource_id,
        "desired_version_id": target.desired_version_id,
        "evaluated_at": format_ts(at),
        "policy_ids": list(policy.policy_ids),
        "policy_hash": policy.policy_hash,
        "eligible_version_ids": [v.id for v in result.eligible],
        "rejections": {v.id: result.reasons_for(v.id) for v in candidates if not result.is_eligible(v.id)},
        "pending_triggers": [
            {
                "trigger_id": t.id,
                "version_id": t.version_id,
                "cause": t.cause,
                "evaluation": repository.get_trigger_evaluation(t.id),
            }
            for t in pending
        ],
    }


def environment_rejections(
    environment_id: str,
    *,
    now: Optional[datetime] = None,
    role_checker: Optional[RoleChecker] = None,
) -> Dict[str, Any]:
    """Per-target rejection maps for every target in the environment, evaluated in parallel."""
    repository.get_environment(environment_id)
    at = now or utc_now()
    targets = repository.list_release_targets(environment_id=environment_id)
    if not targets:
        return {"environment_id": environment_id, "evaluated_at": format_ts(at), "release_targets": {}}

    with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(targets))) as pool:
        futures = {
            t.id: pool.submit(release_target_rejections, t.id, now=at, role_checker=role_checker) for t in targets
        }
        results: Dict[str, Any] = {target_id: future.result() for target_id, future in futures.items()}
    return {"environment_id": environment_id, "evaluated_at": format_ts(at), "release_targets": results}


def version_rollout(
    version_id: str,
    environment_id: str,
    *,
    now: Optional[datetime] = None,
    role_checker: Optional[RoleChecker] = None,
) -> Dict[str, Any]:
    repository.get_environment(environment_id)
    return environment_rollout(environment_id, version_id, now=now, role_checker=role_checker)


def release_target_history(release_target_id: str) -> Dict[str, List[Dict[str, Any]]]:
    repository.get_release_target(release_target_id)
    triggers = repository.list_triggers(release_target_id=release_target_id)
    jobs = repository.list_jobs(release_target_id=release_target_id)
    return {
        "triggers": [
            {
                "id": t.id,
                "version_id": t.version_id,
                "cause": t.cause,
                "status": t.status,
                "job_id": t.job_id,
                "created_at": format_ts(t.created_at),
            }
            for t in triggers
        ],
        "jobs": [
            {
                "id": j.id,
                "trigger_id": j.trigger_id,
                "version_id": j.version_id,
                "status": j.status,
                "message": j.message,
                "external_id": j.external_id,
                "created_at": format_ts(j.created_at),
                "completed_at": format_ts(j.completed_at) if j.completed_at else None,
            }
            for j in jobs
        ],
    }
