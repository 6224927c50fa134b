"""Rules that read the release target's job history."""
from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Optional, Sequence

from deploygate.models import ACTIVE_JOB_STATUSES, REPEATABLE_CAUSES, DeploymentVersion, JobStatus
from deploygate.policy.resolver import release_targets_in_policy_scope
from deploygate.rules.base import RejectionReason, Rejections, RuleContext, reject_all
from deploygate.storage import repository

_HOLDING_STATUSES = sorted({s.value for s in ACTIVE_JOB_STATUSES} | {JobStatus.SUCCESSFUL.value})


def newest_held_version(release_target_id: str) -> Optional[DeploymentVersion]:
    """Newest version active or successfully deployed on the target."""
    jobs = repository.list_jobs(release_target_id=release_target_id, statuses=_HOLDING_STATUSES)
    if not jobs:
        return None
    versions = repository.get_versions(j.version_id for j in jobs)
    if not versions:
        return None
    return max(versions.values(), key=lambda v: v.sort_key())


@dataclass(frozen=True)
class SequencingFilter:
    """Blocks regressions to a version older than what the target already holds."""
    rule_type: ClassVar[str] = "sequencing"

    def filter(self, ctx: RuleContext, candidates: Sequence[DeploymentVersion]) -> Rejections:
        cause = ctx.cause or (ctx.trigger.cause if ctx.trigger is not None else None)
        if cause in {c.value for c in REPEATABLE_CAUSES}:
            return {}
        newest = newest_held_version(ctx.release_target.id)
        if newest is None:
            return {}
        return {
            v.id: RejectionReason(
                rule_type=self.rule_type,
                code="VERSION_OLDER_THAN_DEPLOYED",
                message=f"Version {v.tag} is older than {newest.tag} already on this target.",
                details={"newest_version_id": newest.id, "newest_tag": newest.tag},
            )
            for v in candidates
            if v.sort_key() < newest.sort_key()
        }


@dataclass(frozen=True)
class ConcurrencyFilter:
    rule_type: ClassVar[str] = "concurrency"

    def filter(self, ctx: RuleContext, candidates: Sequence[DeploymentVersion]) -> Rejections:
        sourced = ctx.policy.concurrency
        if sourced is None or not candidates:
            return {}
        limit = int(sourced.value.limit)
        scope_ids = [
            rt.id for rt in release_targets_in_policy_scope(sourced.policy_id) if rt.id != ctx.release_target.id
        ]
        active = repository.count_active_jobs(scope_ids)
        if active < limit:
            return {}
        return reject_all(
            candidates,
            RejectionReason(
                rule_type=self.rule_type,
                code="CONCURRENCY_LIMIT_REACHED",
                message=f"{active} job(s) already active in this policy's scope (limit {limit}).",
                details={"active_jobs": active, "limit": limit, "scope_size": len(scope_ids)},
                policy_id=sourced.policy_id,
            ),
        )


@dataclass(frozen=True)
class TargetConcurrencyFilter:
    """
    Rejects a duplicate of the work already running on this target: the same
    trigger or the same version. An active job for another version is left to
    the dispatcher, which supersedes it.
    """
    rule_type: ClassVar[str] = "target_concurrency"

    def filter(self, ctx: RuleContext, candidates: Sequence[DeploymentVersion]) -> Rejections:
        active = repository.active_jobs(ctx.release_target.id)
        if not active:
            return {}
        rejections: Rejections = {}
        trigger_id = ctx.trigger.id if ctx.trigger is not None else None
        for version in candidates:
            for job in active:
                if job.version_id == version.id or (trigger_id is not None and job.trigger_id == trigger_id):
                    rejections[version.id] = RejectionReason(
                        rule_type=self.rule_type,
                        code="TARGET_JOB_ACTIVE",
                        message=f"Job {job.id} is already {job.status} on this target.",
                        details={"job_id": job.id, "job_status": job.status, "job_version_id": job.version_id},
                    )
                    break
        return rejections
