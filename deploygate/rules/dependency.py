from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple

from deploygate.errors import PolicyMisconfigurationError
from deploygate.models import DeploymentVersion
from deploygate.rules.base import RejectionReason, Rejections, RuleContext
from deploygate.selectors import matches, validate_selector
from deploygate.storage import repository


def deployed_versions(deployment_id: str) -> List[Tuple[str, DeploymentVersion]]:
    """(release_target_id, version) for every target of the deployment with a successful job."""
    out: List[Tuple[str, DeploymentVersion]] = []
    for target in repository.list_release_targets(deployment_id=deployment_id):
        job = repository.latest_successful_job(target.id)
        if job is None:
            continue
        out.append((target.id, repository.get_version(job.version_id)))
    return out


def _requirements(ctx: RuleContext, version: DeploymentVersion) -> List[Tuple[Optional[str], str, Mapping[str, Any]]]:
    reqs: List[Tuple[Optional[str], str, Mapping[str, Any]]] = [
        (None, dep.deployment_id, dep.version_selector) for dep in version.dependencies
    ]
    reqs.extend((s.policy_id, s.value.deployment_id, s.value.version_selector) for s in ctx.policy.dependencies)
    return reqs


@dataclass(frozen=True)
class DependencyFilter:
    """
    Every declared dependency, on the version or from policy, needs at least
    one target of the dependency's deployment currently running a version
    that satisfies its selector.
    """
    rule_type: ClassVar[str] = "dependency"

    def filter(self, ctx: RuleContext, candidates: Sequence[DeploymentVersion]) -> Rejections:
        cache: Dict[str, List[Tuple[str, DeploymentVersion]]] = {}
        rejections: Rejections = {}
        for version in candidates:
            unmet: List[Dict[str, Any]] = []
            broken: Optional[Tuple[Optional[str], str]] = None
            for policy_id, deployment_id, selector in _requirements(ctx, version):
                try:
                    validate_selector(dict(selector))
                except PolicyMisconfigurationError as exc:
                    broken = (policy_id, str(exc))
                    break
                if deployment_id not in cache:
                    cache[deployment_id] = deployed_versions(deployment_id)
                if not any(matches(dict(selector), v) for _, v in cache[deployment_id]):
                    unmet.append(
                        {
                            "deployment_id": deployment_id,
                            "version_selector": dict(selector),
                            "source_policy_id": policy_id,
                            "deployed": sorted({v.tag for _, v in cache[deployment_id]}),
                        }
                    )
            if broken is not None:
                rejections[version.id] = RejectionReason(
                    rule_type=self.rule_type,
                    code="POLICY_MISCONFIGURED",
                    message=f"Dependency selector is malformed: {broken[1]}",
                    details={"error": broken[1]},
                    policy_id=broken[0],
                )
            elif unmet:
                rejections[version.id] = RejectionReason(
                    rule_type=self.rule_type,
                    code="DEPENDENCY_UNSATISFIED",
                    message=f"{len(unmet)} dependency(ies) not satisfied: "
                    + ", ".join(u["deployment_id"] for u in unmet),
                    details={"unmet": unmet},
                    policy_id=next((u["source_policy_id"] for u in unmet if u["source_policy_id"]), None),
                )
        return rejections
