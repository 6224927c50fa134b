from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from deploygate.errors import PolicyMisconfigurationError
from deploygate.models import Deployment, Environment, ReleaseTarget, Resource
from deploygate.policy.merge import merge_policies, merge_order_key
from deploygate.policy.types import EffectivePolicy, Misconfiguration, Policy, PolicyTarget
from deploygate.selectors import matches
from deploygate.storage import repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScopeResolution:
    policies: Tuple[Policy, ...]
    misconfigurations: Tuple[Misconfiguration, ...]

    def effective(self) -> EffectivePolicy:
        return merge_policies(self.policies, self.misconfigurations)


def _target_matches(
    target: PolicyTarget,
    deployment: Deployment,
    environment: Environment,
    resource: Optional[Resource],
) -> bool:
    if not matches(target.deployment_selector, deployment):
        return False
    if not matches(target.environment_selector, environment):
        return False
    if resource is None:
        # Without a resource only targets that do not narrow by resource apply.
        return target.resource_selector is None
    return matches(target.resource_selector, resource)


def policy_applies(
    policy: Policy,
    deployment: Deployment,
    environment: Environment,
    resource: Optional[Resource],
) -> Tuple[bool, Optional[str]]:
    """
    Returns (applies, misconfiguration message). A policy whose target
    selectors cannot be evaluated is reported as applying so the caller fails
    closed on it.
    """
    if not policy.enabled:
        return False, None
    problem: Optional[str] = None
    applies = False
    for target in policy.targets:
        try:
            if _target_matches(target, deployment, environment, resource):
                applies = True
        except PolicyMisconfigurationError as exc:
            problem = f"policy target selector: {exc}"
    if problem is not None:
        return True, problem
    return applies, None


def resolve_scope(
    policies: Sequence[Policy],
    deployment: Deployment,
    environment: Environment,
    resource: Optional[Resource],
) -> ScopeResolution:
    applicable: List[Policy] = []
    misconfigs: List[Misconfiguration] = []
    for policy in policies:
        applies, problem = policy_applies(policy, deployment, environment, resource)
        if not applies:
            continue
        applicable.append(policy)
        if problem is not None:
            logger.warning("policy misconfigured policy_id=%s problem=%s", policy.id, problem)
            misconfigs.append(Misconfiguration(policy.id, problem))
    applicable.sort(key=merge_order_key)
    return ScopeResolution(tuple(applicable), tuple(misconfigs))


def resolve_release_target(release_target: ReleaseTarget, policies: Optional[Sequence[Policy]] = None) -> ScopeResolution:
    if policies is None:
        policies = repository.list_policies()
    return resolve_scope(
        policies,
        repository.get_deployment(release_target.deployment_id),
        repository.get_environment(release_target.environment_id),
        repository.get_resource(release_target.resource_id),
    )


def applicable_policies(release_target_id: str) -> List[Policy]:
    release_target = repository.get_release_target(release_target_id)
    return list(resolve_release_target(release_target).policies)


def resolve_without_resource_scope(environment_id: str, deployment_id: str) -> ScopeResolution:
    """Policies for an (environment, deployment) pair before any resource is known."""
    return resolve_scope(
        repository.list_policies(),
        repository.get_deployment(deployment_id),
        repository.get_environment(environment_id),
        None,
    )


def applicable_policies_without_resource_scope(environment_id: str, deployment_id: str) -> List[Policy]:
    return list(resolve_without_resource_scope(environment_id, deployment_id).policies)


def effective_policy(release_target: ReleaseTarget) -> EffectivePolicy:
    """Recomputed from storage on every call; nothing is cached."""
    return resolve_release_target(release_target).effective()


def release_targets_in_policy_scope(policy_id: str) -> List[ReleaseTarget]:
    """Every live release target the given policy applies to."""
    policy = repository.get_policy(policy_id)
    deployments: Dict[str, Deployment] = {d.id: d for d in repository.list_deployments()}
    environments: Dict[str, Environment] = {e.id: e for e in repository.list_environments()}
    resources: Dict[str, Resource] = {r.id: r for r in repository.list_resources()}
    scoped: List[ReleaseTarget] = []
    for target in repository.list_release_targets():
        applies, _ = policy_applies(
            policy,
            deployments[target.deployment_id],
            environments[target.environment_id],
            resources[target.resource_id],
        )
        if applies:
            scoped.append(target)
    return scoped
