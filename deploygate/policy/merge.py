from __future__ import annotations

from typing import Any, Dict, Iterable, List, Sequence, Tuple

from deploygate.policy.types import EffectivePolicy, Misconfiguration, Policy, Sourced
from deploygate.utils.canonical import sha256_json

# Single-valued fields: the first policy in merge order that defines one wins.
SINGLE_VALUED_FIELDS = ("version_selector", "rollout", "concurrency")

# List-valued fields concatenate across policies; every entry must hold.
LIST_VALUED_FIELDS = ("deny_windows", "any_approvals", "user_approvals", "role_approvals", "dependencies")


def merge_order_key(policy: Policy) -> Tuple[int, str, str]:
    """priority desc, name asc, id asc."""
    return (-int(policy.priority), policy.name, policy.id)


def _entries(policy: Policy, field: str) -> List[Any]:
    if field == "any_approvals":
        return [policy.any_approval] if policy.any_approval is not None else []
    return list(getattr(policy, field))


def _note(provenance: Dict[str, List[str]], field: str, policy_id: str) -> None:
    sources = provenance.setdefault(field, [])
    if policy_id not in sources:
        sources.append(policy_id)


def _dump(value: Any) -> Any:
    if isinstance(value, Sourced):
        return {"policy_id": value.policy_id, "value": _dump(value.value)}
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value


def merge_policies(
    policies: Iterable[Policy],
    misconfigurations: Sequence[Misconfiguration] = (),
) -> EffectivePolicy:
    """
    Combine every applicable policy into one effective policy. Input order
    does not matter: policies are sorted by merge_order_key first, so the
    result and its hash are identical for any permutation.
    """
    ordered = sorted({p.id: p for p in policies}.values(), key=merge_order_key)
    misconfigs = tuple(sorted(set(misconfigurations), key=lambda m: (m.policy_id, m.message)))

    singles: Dict[str, Sourced] = {}
    lists: Dict[str, List[Sourced]] = {field: [] for field in LIST_VALUED_FIELDS}
    provenance: Dict[str, List[str]] = {}

    for policy in ordered:
        for field in SINGLE_VALUED_FIELDS:
            value = getattr(policy, field)
            if value is not None and field not in singles:
                singles[field] = Sourced(policy.id, value)
                _note(provenance, field, policy.id)
        for field in LIST_VALUED_FIELDS:
            for entry in _entries(policy, field):
                lists[field].append(Sourced(policy.id, entry))
                _note(provenance, field, policy.id)

    policy_ids = tuple(p.id for p in ordered)
    hashed = {
        "policy_ids": list(policy_ids),
        "singles": {k: _dump(v) for k, v in sorted(singles.items())},
        "lists": {k: [_dump(v) for v in vs] for k, vs in sorted(lists.items())},
        "misconfigurations": [[m.policy_id, m.message] for m in misconfigs],
    }

    return EffectivePolicy(
        policy_ids=policy_ids,
        deny_windows=tuple(lists["deny_windows"]),
        version_selector=singles.get("version_selector"),
        any_approvals=tuple(lists["any_approvals"]),
        user_approvals=tuple(lists["user_approvals"]),
        role_approvals=tuple(lists["role_approvals"]),
        rollout=singles.get("rollout"),
        concurrency=singles.get("concurrency"),
        dependencies=tuple(lists["dependencies"]),
        misconfigurations=misconfigs,
        provenance={k: tuple(v) for k, v in sorted(provenance.items())},
        policy_hash=sha256_json(hashed),
    )
