from __future__ import annotations

import logging
from typing import Optional

from deploygate.models import ApprovalRecord, ApprovalStatus
from deploygate.policy.types import EffectivePolicy
from deploygate.storage import repository
from deploygate.utils.canonical import utc_now

logger = logging.getLogger(__name__)


def record_approval(
    *,
    version_id: str,
    environment_id: str,
    approver_id: str,
    status: str,
    reason: Optional[str] = None,
    policy_id: Optional[str] = None,
) -> ApprovalRecord:
    """
    Append one decision. Earlier decisions by the same approver stay in the
    table; the gate only ever looks at the latest one.
    """
    normalized = str(status or "").strip().lower()
    if normalized not in {ApprovalStatus.APPROVED.value, ApprovalStatus.REJECTED.value}:
        raise ValueError(f"approval status must be approved or rejected, got {status!r}")
    approver = str(approver_id or "").strip()
    if not approver:
        raise ValueError("approver_id is required")
    repository.get_version(version_id)
    repository.get_environment(environment_id)

    record = ApprovalRecord(
        id=repository.new_id(),
        policy_id=policy_id,
        version_id=version_id,
        environment_id=environment_id,
        approver_id=approver,
        status=normalized,
        reason=reason,
        created_at=utc_now(),
    )
    repository.insert_approval_record(record)
    logger.info(
        "approval recorded approver=%s status=%s",
        approver,
        normalized,
        extra={"version_id": version_id, "environment_id": environment_id},
    )
    return record


def create_placeholder_records(version_id: str, environment_id: str, policy: EffectivePolicy) -> int:
    """
    One pending, approver-less row per policy carrying an approval
    requirement, so presentation layers can list what is awaiting a human.
    """
    policy_ids = []
    for entry in (*policy.any_approvals, *policy.user_approvals, *policy.role_approvals):
        if entry.policy_id not in policy_ids:
            policy_ids.append(entry.policy_id)

    created = 0
    for policy_id in policy_ids:
        if repository.has_placeholder_record(version_id, environment_id, policy_id):
            continue
        repository.insert_approval_record(
            ApprovalRecord(
                id=repository.new_id(),
                policy_id=policy_id,
                version_id=version_id,
                environment_id=environment_id,
                approver_id=None,
                status=ApprovalStatus.PENDING.value,
                created_at=utc_now(),
            )
        )
        created += 1
    return created
