from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Sequence

from deploygate.approvals.gate import RequirementResult
from deploygate.models import DeploymentVersion
from deploygate.rules.base import RejectionReason, Rejections, RuleContext


def _message(req: RequirementResult) -> str:
    if req.kind == "any":
        return f"Requires {req.required} approval(s); {len(req.approved_by)} recorded."
    if req.kind == "user":
        if req.reason_code == "USER_APPROVAL_REJECTED":
            return f"User {req.subject} rejected this version."
        return f"Awaiting approval from user {req.subject}."
    return f"Requires {req.required} approval(s) from role {req.subject}; {len(req.approved_by)} recorded."


@dataclass(frozen=True)
class _ApprovalFilter:
    kind: ClassVar[str] = ""
    rule_type: ClassVar[str] = ""

    def filter(self, ctx: RuleContext, candidates: Sequence[DeploymentVersion]) -> Rejections:
        rejections: Rejections = {}
        for version in candidates:
            unmet = [r for r in ctx.approval_gate(version).of_kind(self.kind) if not r.satisfied]
            if not unmet:
                continue
            first = unmet[0]
            rejections[version.id] = RejectionReason(
                rule_type=self.rule_type,
                code=first.reason_code or "APPROVAL_REQUIRED",
                message=_message(first),
                details={
                    "unmet": [
                        {
                            "policy_id": r.policy_id,
                            "subject": r.subject,
                            "required": r.required,
                            "approved_by": list(r.approved_by),
                            "rejected_by": list(r.rejected_by),
                            "missing": list(r.missing),
                            "reason_code": r.reason_code,
                        }
                        for r in unmet
                    ]
                },
                policy_id=first.policy_id,
            )
        return rejections


@dataclass(frozen=True)
class AnyApprovalFilter(_ApprovalFilter):
    kind: ClassVar[str] = "any"
    rule_type: ClassVar[str] = "any_approval"


@dataclass(frozen=True)
class UserApprovalFilter(_ApprovalFilter):
    kind: ClassVar[str] = "user"
    rule_type: ClassVar[str] = "user_approval"


@dataclass(frozen=True)
class RoleApprovalFilter(_ApprovalFilter):
    kind: ClassVar[str] = "role"
    rule_type: ClassVar[str] = "role_approval"
