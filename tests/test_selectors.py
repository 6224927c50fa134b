from datetime import datetime, timezone

import pytest

from deploygate.errors import PolicyMisconfigurationError
from deploygate.models import DeploymentVersion, Resource
from deploygate.selectors import matches, validate_selector


def _version(tag: str, **metadata) -> DeploymentVersion:
    return DeploymentVersion(
        id=f"v-{tag}",
        deployment_id="dep",
        name=tag,
        tag=tag,
        created_at=datetime(2026, 1, 10, tzinfo=timezone.utc),
        metadata=metadata,
    )


def test_missing_or_empty_selector_matches_everything():
    version = _version("v1.0.0")
    assert matches(None, version)
    assert matches({}, version)


def test_tag_operators():
    version = _version("v2.3.1")
    assert matches({"type": "tag", "operator": "glob", "value": "v2.*"}, version)
    assert matches({"type": "version", "operator": "starts-with", "value": "v2."}, version)
    assert matches({"type": "tag", "operator": "regex", "value": r"^v2\.\d+\.\d+$"}, version)
    assert not matches({"type": "tag", "operator": "equals", "value": "v2.3.0"}, version)
    assert matches({"type": "tag", "operator": "not-equals", "value": "v2.3.0"}, version)


def test_metadata_and_null_operator():
    resource = Resource(id="r1", name="r1", identifier="cluster/r1", metadata={"region": "eu-west-1"})
    assert matches({"type": "metadata", "key": "region", "operator": "starts-with", "value": "eu-"}, resource)
    assert matches({"type": "metadata", "key": "tier", "operator": "null"}, resource)
    assert not matches({"type": "metadata", "key": "region", "operator": "null"}, resource)


def test_comparison_tree_with_not_and_shorthand():
    version = _version("v3.0.0", channel="stable")
    selector = {
        "all": [
            {"type": "metadata", "key": "channel", "operator": "equals", "value": "stable"},
            {
                "type": "comparison",
                "operator": "or",
                "not": True,
                "conditions": [{"type": "tag", "operator": "glob", "value": "v1.*"}],
            },
        ]
    }
    assert matches(selector, version)
    assert not matches({"any": [{"type": "tag", "operator": "glob", "value": "v1.*"}]}, version)


def test_created_at_condition():
    version = _version("v1.0.0")
    assert matches({"type": "created-at", "operator": "before", "value": "2026-02-01T00:00:00Z"}, version)
    assert not matches({"type": "created-at", "operator": "after", "value": "2026-02-01T00:00:00Z"}, version)


@pytest.mark.parametrize(
    "selector",
    [
        {"type": "tag", "operator": "sounds-like", "value": "v1"},
        {"type": "colour", "operator": "equals", "value": "blue"},
        {"type": "tag", "operator": "equals", "value": ""},
        {"type": "tag", "operator": "regex", "value": "(unclosed"},
        {"type": "metadata", "operator": "equals", "value": "x"},
        {"type": "comparison", "operator": "xor", "conditions": []},
        {"type": "comparison", "operator": "and", "conditions": "nope"},
    ],
)
def test_malformed_selectors_raise(selector):
    with pytest.raises(PolicyMisconfigurationError):
        validate_selector(selector)


def test_bad_branch_is_not_hidden_by_short_circuit():
    version = _version("v1.0.0")
    selector = {
        "any": [
            {"type": "tag", "operator": "equals", "value": "v1.0.0"},
            {"type": "tag", "operator": "bogus", "value": "x"},
        ]
    }
    with pytest.raises(PolicyMisconfigurationError):
        matches(selector, version)
