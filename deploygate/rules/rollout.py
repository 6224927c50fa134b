from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Sequence

from deploygate.errors import PolicyMisconfigurationError
from deploygate.models import DeploymentVersion
from deploygate.rollout.scheduler import rollout_info
from deploygate.rules.base import RejectionReason, Rejections, RuleContext, misconfigured, reject_all
from deploygate.utils.canonical import format_ts


@dataclass(frozen=True)
class RolloutFilter:
    rule_type: ClassVar[str] = "rollout"

    def filter(self, ctx: RuleContext, candidates: Sequence[DeploymentVersion]) -> Rejections:
        sourced = ctx.policy.rollout
        if sourced is None:
            return {}
        rejections: Rejections = {}
        for version in candidates:
            try:
                info = rollout_info(ctx.release_target, ctx.policy, version, role_checker=ctx.role_checker)
            except PolicyMisconfigurationError as exc:
                return reject_all(candidates, misconfigured(self.rule_type, exc, sourced.policy_id))
            details = {"position": info.position, "total": info.total}
            if info.time is None:
                rejections[version.id] = RejectionReason(
                    rule_type=self.rule_type,
                    code="ROLLOUT_NOT_STARTED",
                    message="Rollout has not started; approvals are outstanding.",
                    details=details,
                    policy_id=sourced.policy_id,
                )
            elif ctx.now < info.time:
                rejections[version.id] = RejectionReason(
                    rule_type=self.rule_type,
                    code="ROLLOUT_PENDING",
                    message=f"Position {info.position}/{info.total} is scheduled for {format_ts(info.time)}.",
                    details={**details, "rollout_time": format_ts(info.time)},
                    policy_id=sourced.policy_id,
                )
        return rejections
