from __future__ import annotations

import logging
from typing import Optional

from deploygate.errors import PreconditionError
from deploygate.models import ALLOWED_JOB_TRANSITIONS, TERMINAL_JOB_STATUSES, Job, JobStatus
from deploygate.observability.internal_metrics import incr
from deploygate.storage import repository
from deploygate.utils.canonical import utc_now

logger = logging.getLogger(__name__)


def update_job_status(
    job_id: str,
    status: str,
    *,
    message: Optional[str] = None,
    external_id: Optional[str] = None,
) -> Job:
    """
    Apply a status report from the job agent. Terminal jobs never change;
    repeating the current status only refreshes message and external id.
    """
    try:
        target = JobStatus(str(status or "").strip().lower())
    except ValueError as exc:
        raise PreconditionError("INVALID_JOB_STATUS", f"unknown job status {status!r}") from exc

    job = repository.get_job(job_id)
    current = JobStatus(job.status)
    if target != current and target not in ALLOWED_JOB_TRANSITIONS[current]:
        raise PreconditionError(
            "INVALID_JOB_TRANSITION",
            f"job {job_id} cannot move from {current.value} to {target.value}",
            {"job_id": job_id, "from": current.value, "to": target.value},
        )
    if target == current and current in TERMINAL_JOB_STATUSES:
        return job

    now = utc_now()
    updated = repository.update_job(
        job_id,
        expected_status=current.value,
        status=target.value,
        message=message,
        external_id=external_id,
        started_at=now if target == JobStatus.IN_PROGRESS else None,
        completed_at=now if target in TERMINAL_JOB_STATUSES else None,
    )
    if not updated:
        raise PreconditionError(
            "JOB_STATUS_CONFLICT",
            f"job {job_id} changed while applying {target.value}",
            {"job_id": job_id, "expected": current.value},
        )
    if target != current:
        logger.info("job %s -> %s", current.value, target.value, extra={"job_id": job_id})
        incr(f"jobs_{target.value}")
    return repository.get_job(job_id)
