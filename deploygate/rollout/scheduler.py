from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from deploygate.approvals.gate import RoleChecker, evaluate_approvals
from deploygate.models import DeploymentVersion, ReleaseTarget
from deploygate.policy.resolver import resolve_without_resource_scope
from deploygate.policy.types import EffectivePolicy
from deploygate.rollout.curves import get_curve
from deploygate.storage import repository
from deploygate.utils.canonical import format_ts, sha256_text, utc_now


@dataclass(frozen=True)
class RolloutInfo:
    release_target_id: str
    position: int
    total: int
    time: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "release_target_id": self.release_target_id,
            "position": self.position,
            "total": self.total,
            "time": format_ts(self.time) if self.time is not None else None,
        }


def rollout_order_key(release_target_id: str, version_id: str) -> str:
    return sha256_text(f"{release_target_id}|{version_id}")


def rollout_positions(release_target_ids: Sequence[str], version_id: str) -> Dict[str, int]:
    """
    Stable 1..N numbering. Hashing with the version id reshuffles which
    targets go first per version while staying fixed for a given target set.
    """
    ordered = sorted(set(release_target_ids), key=lambda rt: (rollout_order_key(rt, version_id), rt))
    return {rt: idx for idx, rt in enumerate(ordered, start=1)}


def rollout_start_time(
    version: DeploymentVersion,
    environment_id: str,
    policy: EffectivePolicy,
    role_checker: Optional[RoleChecker] = None,
) -> Optional[datetime]:
    """
    Version creation time, or the moment approvals were satisfied when the
    policy asks for any. None while approvals are outstanding.
    """
    if not policy.requires_approval:
        return version.created_at
    gate = evaluate_approvals(version, environment_id, policy, role_checker)
    if not gate.satisfied:
        return None
    satisfied_at = gate.satisfied_at
    if satisfied_at is None:
        return version.created_at
    return max(version.created_at, satisfied_at)


def _peer_ids(release_target: ReleaseTarget) -> List[str]:
    return [
        rt.id
        for rt in repository.list_release_targets(
            environment_id=release_target.environment_id,
            deployment_id=release_target.deployment_id,
        )
    ]


def rollout_info(
    release_target: ReleaseTarget,
    policy: EffectivePolicy,
    version: DeploymentVersion,
    *,
    role_checker: Optional[RoleChecker] = None,
    peer_ids: Optional[Sequence[str]] = None,
    start: Optional[datetime] = None,
) -> RolloutInfo:
    """
    Raises PolicyMisconfigurationError for an unknown curve; the rollout rule
    turns that into a rejection.
    """
    peers = list(peer_ids) if peer_ids is not None else _peer_ids(release_target)
    if release_target.id not in peers:
        peers.append(release_target.id)
    positions = rollout_positions(peers, version.id)
    position = positions[release_target.id]
    total = len(positions)

    if start is None:
        start = rollout_start_time(version, release_target.environment_id, policy, role_checker)
    if start is None:
        return RolloutInfo(release_target.id, position, total, None)
    if policy.rollout is None:
        return RolloutInfo(release_target.id, position, total, start)

    rule = policy.rollout.value
    offset_fn = get_curve(rule.rollout_type)
    offset = offset_fn(position, total, float(rule.time_scale_interval) * 60.0, float(rule.positions_growth_factor))
    return RolloutInfo(release_target.id, position, total, start + timedelta(seconds=offset))


def current_position(infos: Sequence[RolloutInfo], now: datetime) -> int:
    """
    1 when the rollout has not started; otherwise the first position whose
    time is still ahead, or N once every target's time has passed.
    """
    if not infos:
        return 1
    ordered = sorted(infos, key=lambda i: i.position)
    if all(info.time is None for info in ordered):
        return 1
    for info in ordered:
        if info.time is None or info.time > now:
            return info.position
    return ordered[-1].position


def environment_rollout(
    environment_id: str,
    version_id: str,
    *,
    now: Optional[datetime] = None,
    role_checker: Optional[RoleChecker] = None,
) -> Dict[str, Any]:
    """Rollout preview across the environment using resource-less policies."""
    version = repository.get_version(version_id)
    policy = resolve_without_resource_scope(environment_id, version.deployment_id).effective()
    targets = repository.list_release_targets(environment_id=environment_id, deployment_id=version.deployment_id)
    peer_ids = [t.id for t in targets]
    start = rollout_start_time(version, environment_id, policy, role_checker)

    infos = [
        rollout_info(t, policy, version, peer_ids=peer_ids, start=start, role_checker=role_checker)
        for t in targets
    ]
    infos.sort(key=lambda i: i.position)
    at = now or utc_now()
    return {
        "environment_id": environment_id,
        "version_id": version_id,
        "rollout_type": policy.rollout.value.rollout_type if policy.rollout else None,
        "policy_ids": list(policy.policy_ids),
        "policy_hash": policy.policy_hash,
        "start_time": format_ts(start) if start is not None else None,
        "current_position": current_position(infos, at),
        "targets": [i.to_dict() for i in infos],
    }
