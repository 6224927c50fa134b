from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Sequence

from deploygate.errors import PolicyMisconfigurationError
from deploygate.models import DeploymentVersion, VersionStatus
from deploygate.rules.base import RejectionReason, Rejections, RuleContext, misconfigured, reject_all
from deploygate.selectors import matches
from deploygate.utils.canonical import format_ts


@dataclass(frozen=True)
class MisconfigurationFilter:
    """Fail closed when any applicable policy could not be evaluated."""
    rule_type: ClassVar[str] = "misconfiguration"

    def filter(self, ctx: RuleContext, candidates: Sequence[DeploymentVersion]) -> Rejections:
        if not ctx.policy.misconfigurations:
            return {}
        first = ctx.policy.misconfigurations[0]
        return reject_all(
            candidates,
            RejectionReason(
                rule_type=self.rule_type,
                code="POLICY_MISCONFIGURED",
                message=f"{len(ctx.policy.misconfigurations)} applicable policy(ies) are misconfigured.",
                details={
                    "policies": [
                        {"policy_id": m.policy_id, "error": m.message} for m in ctx.policy.misconfigurations
                    ]
                },
                policy_id=first.policy_id,
            ),
        )


@dataclass(frozen=True)
class VersionStatusFilter:
    rule_type: ClassVar[str] = "version_status"

    def filter(self, ctx: RuleContext, candidates: Sequence[DeploymentVersion]) -> Rejections:
        return {
            v.id: RejectionReason(
                rule_type=self.rule_type,
                code="VERSION_NOT_READY",
                message=f"Version {v.tag} has status {v.status}.",
                details={"status": v.status},
            )
            for v in candidates
            if v.status != VersionStatus.READY.value
        }


@dataclass(frozen=True)
class VersionSelectorFilter:
    """Keeps versions matching the effective selector. A pinned target skips it."""
    rule_type: ClassVar[str] = "version_selector"

    def filter(self, ctx: RuleContext, candidates: Sequence[DeploymentVersion]) -> Rejections:
        if ctx.release_target.desired_version_id:
            return {}
        sourced = ctx.policy.version_selector
        if sourced is None:
            return {}
        selector = sourced.value.selector
        rejections: Rejections = {}
        for version in candidates:
            try:
                ok = matches(selector, version)
            except PolicyMisconfigurationError as exc:
                return reject_all(candidates, misconfigured(self.rule_type, exc, sourced.policy_id))
            if not ok:
                rejections[version.id] = RejectionReason(
                    rule_type=self.rule_type,
                    code="VERSION_SELECTOR_MISMATCH",
                    message=f"Version {version.tag} does not match the policy version selector.",
                    details={"selector": selector, "description": sourced.value.description},
                    policy_id=sourced.policy_id,
                )
        return rejections


@dataclass(frozen=True)
class LockingFilter:
    rule_type: ClassVar[str] = "locking"

    def filter(self, ctx: RuleContext, candidates: Sequence[DeploymentVersion]) -> Rejections:
        resource = ctx.resource
        if not resource.locked:
            return {}
        return reject_all(
            candidates,
            RejectionReason(
                rule_type=self.rule_type,
                code="RESOURCE_LOCKED",
                message=f"Resource {resource.identifier} is locked.",
                details={
                    "resource_id": resource.id,
                    "locked_by": resource.locked_by,
                    "locked_at": format_ts(resource.locked_at),
                },
            ),
        )
