"""
Approval gate.

Evaluates the approval requirements of an effective policy against the
persisted decision records for one (version, environment) pair. Records are
read from storage on every call; a trigger may wait on a human for days and
must see the decision as soon as it lands.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from deploygate.config import get_role_members
from deploygate.models import ApprovalRecord, ApprovalStatus, DeploymentVersion
from deploygate.policy.types import EffectivePolicy
from deploygate.storage import repository


class RoleChecker(Protocol):
    def has_role(self, user_id: str, role_id: str) -> bool:
        ...


class StaticRoleChecker:
    """Role membership from DEPLOYGATE_ROLE_MEMBERS, or an explicit map."""

    def __init__(self, members: Optional[Dict[str, Sequence[str]]] = None):
        source = members if members is not None else get_role_members()
        self._members = {str(role): {str(u) for u in users} for role, users in source.items()}

    def has_role(self, user_id: str, role_id: str) -> bool:
        return user_id in self._members.get(role_id, set())


@dataclass(frozen=True)
class RequirementResult:
    kind: str  # any | user | role
    policy_id: str
    satisfied: bool
    required: int
    approved_by: Tuple[str, ...] = ()
    rejected_by: Tuple[str, ...] = ()
    missing: Tuple[str, ...] = ()
    subject: str = ""
    reason_code: Optional[str] = None
    satisfied_at: Optional[datetime] = None


@dataclass(frozen=True)
class ApprovalGateResult:
    requirements: Tuple[RequirementResult, ...] = ()

    @property
    def satisfied(self) -> bool:
        return all(r.satisfied for r in self.requirements)

    @property
    def satisfied_at(self) -> Optional[datetime]:
        """
        Moment the last requirement was met. None while anything is
        outstanding, and None when every requirement auto-passed.
        """
        if not self.satisfied:
            return None
        stamps = [r.satisfied_at for r in self.requirements if r.satisfied_at is not None]
        return max(stamps) if stamps else None

    def of_kind(self, kind: str) -> List[RequirementResult]:
        return [r for r in self.requirements if r.kind == kind]


def _latest_decisions_by_approver(records: Sequence[ApprovalRecord]) -> Dict[str, ApprovalRecord]:
    """Last decision per approver wins; placeholder rows carry no approver."""
    latest: Dict[str, ApprovalRecord] = {}
    for record in records:
        approver = str(record.approver_id or "").strip()
        if not approver or record.status == ApprovalStatus.PENDING.value:
            continue
        existing = latest.get(approver)
        if existing is None or (record.created_at, record.id) >= (existing.created_at, existing.id):
            latest[approver] = record
    return latest


def _nth_approval_time(approvals: Sequence[ApprovalRecord], n: int) -> Optional[datetime]:
    if n <= 0 or len(approvals) < n:
        return None
    ordered = sorted(approvals, key=lambda r: (r.created_at, r.id))
    return ordered[n - 1].created_at


def evaluate_approvals(
    version: DeploymentVersion,
    environment_id: str,
    policy: EffectivePolicy,
    role_checker: Optional[RoleChecker] = None,
) -> ApprovalGateResult:
    if not policy.requires_approval:
        return ApprovalGateResult()

    checker = role_checker or StaticRoleChecker()
    latest = _latest_decisions_by_approver(repository.list_approval_records(version.id, environment_id))
    approved = [r for r in latest.values() if r.status == ApprovalStatus.APPROVED.value]
    rejected_by = tuple(sorted(a for a, r in latest.items() if r.status == ApprovalStatus.REJECTED.value))
    approved_ids = tuple(sorted(r.approver_id for r in approved))

    results: List[RequirementResult] = []

    for entry in policy.any_approvals:
        required = int(entry.value.required_approvals)
        ok = len(approved) >= required
        results.append(
            RequirementResult(
                kind="any",
                policy_id=entry.policy_id,
                satisfied=ok,
                required=required,
                approved_by=approved_ids,
                rejected_by=rejected_by,
                reason_code=None if ok else "APPROVALS_INSUFFICIENT",
                satisfied_at=_nth_approval_time(approved, required) if ok else None,
            )
        )

    for entry in policy.user_approvals:
        user_id = entry.value.user_id
        decision = latest.get(user_id)
        ok = decision is not None and decision.status == ApprovalStatus.APPROVED.value
        if ok:
            code = None
        elif decision is not None:
            code = "USER_APPROVAL_REJECTED"
        else:
            code = "USER_APPROVAL_REQUIRED"
        results.append(
            RequirementResult(
                kind="user",
                policy_id=entry.policy_id,
                satisfied=ok,
                required=1,
                approved_by=(user_id,) if ok else (),
                rejected_by=(user_id,) if code == "USER_APPROVAL_REJECTED" else (),
                missing=() if ok else (user_id,),
                subject=user_id,
                reason_code=code,
                satisfied_at=decision.created_at if ok else None,
            )
        )

    for entry in policy.role_approvals:
        role_id = entry.value.role_id
        required = int(entry.value.required_approvals)
        in_role = [r for r in approved if checker.has_role(r.approver_id, role_id)]
        ok = len(in_role) >= required
        results.append(
            RequirementResult(
                kind="role",
                policy_id=entry.policy_id,
                satisfied=ok,
                required=required,
                approved_by=tuple(sorted(r.approver_id for r in in_role)),
                subject=role_id,
                reason_code=None if ok else "ROLE_APPROVALS_INSUFFICIENT",
                satisfied_at=_nth_approval_time(in_role, required) if ok else None,
            )
        )

    return ApprovalGateResult(tuple(results))
