from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, Mapping, Optional, Protocol, Sequence

from deploygate.approvals.gate import ApprovalGateResult, RoleChecker, evaluate_approvals
from deploygate.models import DeploymentVersion, ReleaseTarget, Resource, WorkTrigger
from deploygate.policy.types import EffectivePolicy


@dataclass(frozen=True)
class RejectionReason:
    rule_type: str
    code: str
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)
    policy_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_type": self.rule_type,
            "code": self.code,
            "message": self.message,
            "details": dict(self.details),
            "policy_id": self.policy_id,
        }


@dataclass(frozen=True)
class RuleContext:
    """Everything a rule may read about the target under evaluation."""
    release_target: ReleaseTarget
    resource: Resource
    policy: EffectivePolicy
    now: datetime
    trigger: Optional[WorkTrigger] = None
    cause: Optional[str] = None
    role_checker: Optional[RoleChecker] = None
    _gates: Dict[str, ApprovalGateResult] = field(default_factory=dict, compare=False, repr=False)

    @property
    def environment_id(self) -> str:
        return self.release_target.environment_id

    def approval_gate(self, version: DeploymentVersion) -> ApprovalGateResult:
        # Shared by the three approval rules within one evaluation only.
        gate = self._gates.get(version.id)
        if gate is None:
            gate = evaluate_approvals(version, self.environment_id, self.policy, self.role_checker)
            self._gates[version.id] = gate
        return gate


Rejections = Dict[str, RejectionReason]


class Rule(Protocol):
    rule_type: ClassVar[str]

    def filter(self, ctx: RuleContext, candidates: Sequence[DeploymentVersion]) -> Rejections:
        ...


def reject_all(candidates: Sequence[DeploymentVersion], reason: RejectionReason) -> Rejections:
    return {v.id: reason for v in candidates}


def misconfigured(rule_type: str, exc: Exception, policy_id: Optional[str]) -> RejectionReason:
    return RejectionReason(
        rule_type=rule_type,
        code="POLICY_MISCONFIGURED",
        message=f"Policy is misconfigured: {exc}",
        details={"error": str(exc)},
        policy_id=policy_id,
    )
