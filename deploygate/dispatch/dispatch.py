"""
Trigger dispatch: the second pass of the pipeline.

Each pending trigger is re-validated against live state inside one storage
transaction that holds the release target's row lock. Only an eligible
trigger emits a job, and emitting one cancels whatever was still active on
the target, so at most one job per target is ever active.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from deploygate.approvals.gate import RoleChecker
from deploygate.config import get_dispatch_max_attempts
from deploygate.dispatch.agent import JobAgentChannel, get_job_agent_channel
from deploygate.dispatch.types import DispatchOutcome, DispatchReport, OutcomeStatus
from deploygate.errors import NotFoundError, TransientDispatchError
from deploygate.models import Job, JobStatus, TriggerCause, TriggerStatus
from deploygate.observability.internal_metrics import incr
from deploygate.policy.resolver import effective_policy
from deploygate.rules import RuleContext, dispatch_chain, evaluate_chain
from deploygate.storage import get_storage_backend, repository
from deploygate.utils.canonical import utc_now

logger = logging.getLogger(__name__)


def _emit_job(trigger, release_target, version, policy_hash: str, forced: bool) -> Tuple[Job, List[str]]:
    now = utc_now()
    cancelled: List[str] = []
    for active in repository.active_jobs(release_target.id):
        if repository.update_job(
            active.id,
            expected_status=active.status,
            status=JobStatus.CANCELLED.value,
            message=f"superseded by trigger {trigger.id}",
            completed_at=now,
        ):
            cancelled.append(active.id)

    job = repository.insert_job(
        Job(
            id=repository.new_id(),
            trigger_id=trigger.id,
            release_target_id=release_target.id,
            version_id=version.id,
            status=JobStatus.PENDING.value,
            created_at=now,
            updated_at=now,
            variables=trigger.variables,
            metadata={"cause": trigger.cause, "forced": forced, "policy_hash": policy_hash},
        )
    )
    repository.transition_trigger(trigger.id, TriggerStatus.DISPATCHED.value, job_id=job.id)
    return job, cancelled


def _evaluate_and_emit(
    trigger_id: str,
    *,
    force: bool,
    now: datetime,
    role_checker: Optional[RoleChecker],
) -> Tuple[DispatchOutcome, Optional[Job]]:
    trigger = repository.get_trigger(trigger_id)
    try:
        release_target = repository.lock_release_target(trigger.release_target_id)
    except NotFoundError:
        repository.transition_trigger(trigger.id, TriggerStatus.CANCELLED.value)
        return (
            DispatchOutcome(
                trigger_id=trigger.id,
                release_target_id=trigger.release_target_id,
                status=OutcomeStatus.CANCELLED.value,
                note="release target removed",
            ),
            None,
        )

    # Re-read under the lock; another dispatcher may have won the race.
    trigger = repository.get_trigger(trigger_id)
    if trigger.status != TriggerStatus.PENDING.value:
        return (
            DispatchOutcome(
                trigger_id=trigger.id,
                release_target_id=release_target.id,
                status=OutcomeStatus.SKIPPED.value,
                job_id=trigger.job_id,
                note=f"trigger is {trigger.status}",
            ),
            None,
        )

    forced = force or trigger.cause == TriggerCause.FORCE_DEPLOY.value
    version = repository.get_version(trigger.version_id)
    policy = effective_policy(release_target)
    ctx = RuleContext(
        release_target=release_target,
        resource=repository.get_resource(release_target.resource_id),
        policy=policy,
        now=now,
        trigger=trigger,
        role_checker=role_checker,
    )
    result = evaluate_chain(dispatch_chain(forced), ctx, [version])
    reasons = result.reasons_for(version.id)
    eligible = result.is_eligible(version.id)
    repository.save_trigger_evaluation(
        trigger.id,
        eligible=eligible,
        reasons=reasons,
        policy_hash=policy.policy_hash,
        evaluated_at=now,
    )
    if not eligible:
        return (
            DispatchOutcome(
                trigger_id=trigger.id,
                release_target_id=release_target.id,
                status=OutcomeStatus.REJECTED.value,
                reasons=tuple(reasons),
            ),
            None,
        )

    job, cancelled = _emit_job(trigger, release_target, version, policy.policy_hash, forced)
    return (
        DispatchOutcome(
            trigger_id=trigger.id,
            release_target_id=release_target.id,
            status=OutcomeStatus.DISPATCHED.value,
            job_id=job.id,
            cancelled_job_ids=tuple(cancelled),
        ),
        job,
    )


def _dispatch_one(
    trigger_id: str,
    *,
    force: bool,
    now: datetime,
    role_checker: Optional[RoleChecker],
) -> Tuple[DispatchOutcome, Optional[Job]]:
    storage = get_storage_backend()
    try:
        with storage.transaction():
            return _evaluate_and_emit(trigger_id, force=force, now=now, role_checker=role_checker)
    except Exception as exc:
        if storage.is_transient_error(exc):
            raise TransientDispatchError(str(exc)) from exc
        raise


def _dispatch_with_retry(
    trigger_id: str,
    *,
    force: bool,
    now: datetime,
    role_checker: Optional[RoleChecker],
) -> Tuple[DispatchOutcome, Optional[Job]]:
    retrying = Retrying(
        stop=stop_after_attempt(get_dispatch_max_attempts()),
        wait=wait_exponential(multiplier=0.05, max=1),
        retry=retry_if_exception_type(TransientDispatchError),
        reraise=True,
    )
    try:
        return retrying(_dispatch_one, trigger_id, force=force, now=now, role_checker=role_checker)
    except TransientDispatchError as exc:
        logger.warning("dispatch retries exhausted: %s", exc, extra={"trigger_id": trigger_id})
        return (
            DispatchOutcome(
                trigger_id=trigger_id,
                status=OutcomeStatus.RETRY_EXHAUSTED.value,
                note=str(exc),
            ),
            None,
        )


def _notify(channel: JobAgentChannel, outcome: DispatchOutcome, job: Job) -> None:
    try:
        for cancelled_id in outcome.cancelled_job_ids:
            channel.job_cancelled(cancelled_id, f"superseded by job {job.id}")
        channel.job_created(job)
    except Exception:
        # The job is committed; the agent can still pick it up by polling.
        logger.exception("job agent notification failed", extra={"job_id": job.id})


def dispatch_triggers(
    trigger_ids: Iterable[str],
    *,
    force: bool = False,
    now: Optional[datetime] = None,
    role_checker: Optional[RoleChecker] = None,
    channel: Optional[JobAgentChannel] = None,
) -> DispatchReport:
    at = now or utc_now()
    agent = channel or get_job_agent_channel()
    outcomes: List[DispatchOutcome] = []
    for trigger_id in trigger_ids:
        outcome, job = _dispatch_with_retry(trigger_id, force=force, now=at, role_checker=role_checker)
        outcomes.append(outcome)
        if job is not None:
            logger.info(
                "job dispatched",
                extra={
                    "trigger_id": trigger_id,
                    "job_id": job.id,
                    "release_target_id": job.release_target_id,
                    "version_id": job.version_id,
                },
            )
            _notify(agent, outcome, job)
        elif outcome.status == OutcomeStatus.REJECTED.value:
            logger.debug(
                "trigger rejected codes=%s",
                ",".join(r["code"] for r in outcome.reasons),
                extra={"trigger_id": trigger_id, "release_target_id": outcome.release_target_id},
            )

    report = DispatchReport(tuple(outcomes))
    for status, count in report.to_dict()["counts"].items():
        incr(f"dispatch_{status}", count)
    return report


def pending_trigger_ids(release_target_ids: Optional[Iterable[str]] = None) -> List[str]:
    triggers = repository.list_triggers(
        release_target_ids=release_target_ids,
        status=TriggerStatus.PENDING.value,
    )
    return [t.id for t in triggers]
