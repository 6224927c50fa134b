from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from deploygate.errors import PolicyMisconfigurationError
from deploygate.models import Deployment, Environment, ReleaseTarget, Resource
from deploygate.selectors import matches
from deploygate.storage import repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReleaseTargetChanges:
    created: Tuple[ReleaseTarget, ...] = ()
    removed: Tuple[ReleaseTarget, ...] = ()
    kept: Tuple[ReleaseTarget, ...] = ()


def target_should_exist(resource: Resource, environment: Environment, deployment: Deployment) -> Optional[bool]:
    """
    An environment without a resource selector holds no resources. A
    deployment without one runs on every resource of the environment.
    None when a selector is malformed; the caller leaves things as they are.
    """
    if environment.resource_selector is None:
        return False
    try:
        if not matches(environment.resource_selector, resource):
            return False
        if deployment.resource_selector is not None and not matches(deployment.resource_selector, resource):
            return False
    except PolicyMisconfigurationError as exc:
        logger.warning(
            "resource selector misconfigured deployment=%s error=%s",
            deployment.id,
            exc,
            extra={"environment_id": environment.id},
        )
        return None
    return True


def _restrict(items: List, ids: Optional[Iterable[str]]) -> List:
    if ids is None:
        return items
    wanted = set(ids)
    return [item for item in items if item.id in wanted]


def compute_release_targets(
    *,
    resource_ids: Optional[Iterable[str]] = None,
    environment_ids: Optional[Iterable[str]] = None,
    deployment_ids: Optional[Iterable[str]] = None,
) -> ReleaseTargetChanges:
    """Create targets for new matches and soft-remove those that stopped matching."""
    resources = _restrict(repository.list_resources(), resource_ids)
    environments = _restrict(repository.list_environments(), environment_ids)
    deployments = _restrict(repository.list_deployments(), deployment_ids)

    created: List[ReleaseTarget] = []
    removed: List[ReleaseTarget] = []
    kept: List[ReleaseTarget] = []
    for environment in environments:
        for deployment in deployments:
            for resource in resources:
                wanted = target_should_exist(resource, environment, deployment)
                if wanted is None:
                    continue
                if wanted:
                    target, is_new = repository.ensure_release_target(resource.id, environment.id, deployment.id)
                    (created if is_new else kept).append(target)
                    continue
                existing = repository.find_release_target(resource.id, environment.id, deployment.id)
                if existing and not existing.get("removed_at"):
                    target = repository.get_release_target(existing["id"])
                    repository.remove_release_target(target.id)
                    removed.append(target)
                    logger.info("release target removed", extra={"release_target_id": target.id})

    if created:
        logger.info("release targets created count=%d", len(created))
    return ReleaseTargetChanges(tuple(created), tuple(removed), tuple(kept))
