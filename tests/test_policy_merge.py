import itertools

from deploygate.policy import merge_policies
from deploygate.policy.resolver import (
    applicable_policies,
    applicable_policies_without_resource_scope,
    effective_policy,
    policy_applies,
)
from deploygate.policy.types import Policy
from deploygate.storage import repository
from tests.factories import build_workspace, make_policy, make_resource


def _policy(policy_id: str, priority: int, **fields) -> Policy:
    return Policy.model_validate({"id": policy_id, "name": fields.pop("name", policy_id), "priority": priority, **fields})


def test_zero_policies_yield_empty_effective_policy():
    effective = merge_policies([])
    assert effective.is_empty
    assert effective.rollout is None
    assert effective.deny_windows == ()
    assert not effective.requires_approval


def test_merge_is_independent_of_input_order():
    policies = [
        _policy("p-a", 10, rollout={"rollout_type": "linear", "time_scale_interval": 30}),
        _policy("p-b", 10, name="alpha", rollout={"rollout_type": "exponential", "time_scale_interval": 60}),
        _policy("p-c", 1, any_approval={"required_approvals": 2}, concurrency={"limit": 3}),
        _policy(
            "p-d",
            5,
            deny_windows=[{"rrule": "FREQ=WEEKLY;BYDAY=SA", "duration_minutes": 60}],
            concurrency={"limit": 1},
        ),
    ]
    results = {merge_policies(list(order)).policy_hash for order in itertools.permutations(policies)}
    assert len(results) == 1

    effective = merge_policies(policies)
    # Equal priority: name breaks the tie, so "alpha" (p-b) wins rollout.
    assert effective.rollout.policy_id == "p-b"
    assert effective.rollout.value.rollout_type == "exponential"
    # Higher priority wins the single-valued concurrency limit.
    assert effective.concurrency.policy_id == "p-d"
    assert effective.concurrency.value.limit == 1
    assert effective.policy_ids == ("p-b", "p-a", "p-d", "p-c")
    assert effective.provenance["concurrency"] == ("p-d",)


def test_list_fields_concatenate_with_sources():
    effective = merge_policies(
        [
            _policy("p-1", 2, user_approvals=[{"user_id": "alice"}]),
            _policy("p-2", 1, user_approvals=[{"user_id": "bob"}], any_approval={"required_approvals": 1}),
        ]
    )
    assert [(s.policy_id, s.value.user_id) for s in effective.user_approvals] == [("p-1", "alice"), ("p-2", "bob")]
    assert [s.policy_id for s in effective.any_approvals] == ["p-2"]
    assert effective.requires_approval


def test_duplicate_policy_ids_merge_once():
    policy = _policy("p-1", 1, user_approvals=[{"user_id": "alice"}])
    assert len(merge_policies([policy, policy]).user_approvals) == 1


def test_resolver_scopes_by_selectors_and_enabled(clean_db):
    targets = build_workspace(["r1"])
    make_resource("r2", metadata={"region": "us"})
    make_policy("p-all")
    make_policy(
        "p-eu",
        targets=[{"resource_selector": {"type": "metadata", "key": "region", "operator": "equals", "value": "eu"}}],
    )
    make_policy("p-off", enabled=False)
    make_policy("p-none", targets=[])

    ids = [p.id for p in applicable_policies(targets[0].id)]
    assert ids == ["p-all"]


def test_malformed_target_selector_applies_and_fails_closed(clean_db):
    targets = build_workspace(["r1"])
    make_policy("p-broken", targets=[{"environment_selector": {"type": "tag", "operator": "nope", "value": "x"}}])

    effective = effective_policy(targets[0])
    assert effective.policy_ids == ("p-broken",)
    assert effective.misconfigurations[0].policy_id == "p-broken"

    policy = repository.get_policy("p-broken")
    applies, problem = policy_applies(
        policy,
        repository.get_deployment("dep-api"),
        repository.get_environment("env-prod"),
        repository.get_resource("r1"),
    )
    assert applies is True
    assert "selector" in problem


def test_resource_scoped_policies_need_a_resource(clean_db):
    targets = build_workspace(["r1"])
    make_policy("p-env", targets=[{"environment_selector": {"type": "name", "operator": "equals", "value": "env-prod"}}])
    make_policy(
        "p-r1",
        priority=10,
        targets=[{"resource_selector": {"type": "name", "operator": "equals", "value": "r1"}}],
    )
    make_policy(
        "p-mixed",
        targets=[
            {"resource_selector": {"type": "name", "operator": "equals", "value": "r9"}},
            {"deployment_selector": {"type": "id", "operator": "equals", "value": "dep-api"}},
        ],
    )

    ids = [p.id for p in applicable_policies_without_resource_scope("env-prod", "dep-api")]
    assert ids == ["p-env", "p-mixed"]
    assert [p.id for p in applicable_policies(targets[0].id)] == ["p-r1", "p-env", "p-mixed"]
