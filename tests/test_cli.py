import json
import sys

import pytest

from deploygate import __version__
from deploygate.cli import build_parser, load_workspace, main
from deploygate.storage import repository
from tests.factories import target_for

WORKSPACE = """
deployments:
  - id: dep-api
    name: api
    variables: {replicas: 2}
environments:
  - id: env-prod
    name: prod
    resource_selector: {}
resources:
  - id: r1
    name: r1
    identifier: cluster/r1
    kind: cluster
policies:
  - id: p-gate
    name: gate
    targets: [{}]
    any_approval: {required_approvals: 1}
versions:
  - id: v1
    deployment_id: dep-api
    tag: v1.0.0
    created_at: "2026-03-02T00:00:00Z"
"""


@pytest.fixture
def workspace_file(tmp_path):
    path = tmp_path / "workspace.yaml"
    path.write_text(WORKSPACE, encoding="utf-8")
    return str(path)


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["deploygate", *argv])
    return main()


def test_parser_requires_a_target_for_evaluate():
    parser = build_parser()
    args = parser.parse_args(["evaluate", "--environment", "env-prod"])
    assert args.environment == "env-prod"
    with pytest.raises(SystemExit):
        parser.parse_args(["evaluate"])


def test_version(monkeypatch, capsys):
    assert _run(monkeypatch, "version") == 0
    assert __version__ in capsys.readouterr().out


def test_load_workspace_rejects_non_mapping(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_workspace(str(path))


def test_seed_evaluate_approve(clean_db, monkeypatch, capsys, workspace_file):
    assert _run(monkeypatch, "seed", workspace_file) == 0
    seeded = json.loads(capsys.readouterr().out)
    assert seeded["versions_inserted"] == 1
    assert seeded["release_targets_created"] == 1
    assert seeded["cycle"]["dispatch"]["counts"] == {"rejected": 1}

    target = target_for("r1")
    assert _run(monkeypatch, "evaluate", "--release-target", target.id) == 0
    evaluated = json.loads(capsys.readouterr().out)
    assert evaluated["rejections"]["v1"][0]["code"] == "APPROVALS_INSUFFICIENT"

    assert _run(monkeypatch, "approve", "--version", "v1", "--environment", "env-prod", "--approver", "alice") == 0
    approved = json.loads(capsys.readouterr().out)
    assert approved["dispatch"]["counts"] == {"dispatched": 1}
    [job] = repository.list_jobs(release_target_id=target.id)
    assert dict(job.variables) == {"replicas": 2}


def test_seed_without_dispatch(clean_db, monkeypatch, capsys, workspace_file):
    assert _run(monkeypatch, "seed", workspace_file, "--no-dispatch") == 0
    assert "cycle" not in json.loads(capsys.readouterr().out)
    assert repository.list_triggers() == []


def test_tick_json(clean_db, monkeypatch, capsys):
    assert _run(monkeypatch, "tick", "--format", "json") == 0
    assert json.loads(capsys.readouterr().out)["ok"] is True


def test_errors_exit_nonzero(clean_db, monkeypatch, capsys):
    assert _run(monkeypatch, "redeploy", "rt-missing") == 1
    assert "rt-missing" in capsys.readouterr().err

    assert _run(monkeypatch, "seed", "/nonexistent/workspace.yaml") == 1
