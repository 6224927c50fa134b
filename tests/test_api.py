from fastapi.testclient import TestClient

from deploygate.server import app
from deploygate.storage import repository
from tests.factories import build_workspace, make_policy, make_version, target_for

client = TestClient(app)


def _post_version(version_id="v1", tag="v1.0.0"):
    return client.post(
        "/versions",
        json={
            "id": version_id,
            "deployment_id": "dep-api",
            "tag": tag,
            "created_at": "2026-03-02T00:00:00Z",
            "metadata": {"channel": "stable"},
        },
    )


def test_healthz():
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["service"] == "deploygate"


def test_unknown_release_target_is_404(clean_db):
    resp = client.get("/release-targets/rt-missing/rejections")
    assert resp.status_code == 404
    assert resp.json()["kind"] == "release target"
    assert resp.json()["id"] == "rt-missing"


def test_redeploy_without_history_is_409(clean_db):
    target = build_workspace(["r1"])[0]
    resp = client.post(f"/release-targets/{target.id}/redeploy")
    assert resp.status_code == 409
    assert resp.json()["code"] == "NO_PRIOR_RELEASE"


def test_new_version_dispatches(clean_db):
    build_workspace(["r1", "r2"])
    resp = _post_version()
    assert resp.status_code == 201
    body = resp.json()
    assert body["version_id"] == "v1"
    assert body["dispatch"]["counts"] == {"dispatched": 2}
    assert repository.get_version("v1").metadata == {"channel": "stable"}


def test_rejections_then_approval_unblocks(clean_db):
    build_workspace(["r1"])
    make_policy("p-gate", any_approval={"required_approvals": 1})
    _post_version()
    target = target_for("r1")

    resp = client.get(f"/release-targets/{target.id}/rejections")
    assert resp.status_code == 200
    body = resp.json()
    assert body["policy_ids"] == ["p-gate"]
    assert body["eligible_version_ids"] == []
    assert [r["code"] for r in body["rejections"]["v1"]] == ["APPROVALS_INSUFFICIENT"]
    assert body["pending_triggers"][0]["evaluation"]["eligible"] is False

    env = client.get("/environments/env-prod/rejections").json()
    assert list(env["release_targets"]) == [target.id]

    resp = client.post(
        "/approvals",
        json={"version_id": "v1", "environment_id": "env-prod", "approver_id": "alice"},
    )
    assert resp.status_code == 201
    assert resp.json()["dispatch"]["counts"] == {"dispatched": 1}

    history = client.get(f"/release-targets/{target.id}/history").json()
    assert [j["version_id"] for j in history["jobs"]] == ["v1"]
    assert history["triggers"][0]["status"] == "dispatched"


def test_bad_approval_status_is_400(clean_db):
    build_workspace(["r1"])
    make_version("v1", "v1.0.0")
    resp = client.post(
        "/approvals",
        json={"version_id": "v1", "environment_id": "env-prod", "approver_id": "alice", "status": "maybe"},
    )
    assert resp.status_code == 400


def test_job_status_reports(clean_db):
    build_workspace(["r1"])
    job_id = _post_version().json()["dispatch"]["outcomes"][0]["job_id"]

    resp = client.post(f"/jobs/{job_id}/status", json={"status": "in_progress"})
    assert resp.status_code == 200
    assert resp.json()["dispatch"] is None

    resp = client.post(f"/jobs/{job_id}/status", json={"status": "successful"})
    assert resp.json()["job"]["status"] == "successful"

    resp = client.post(f"/jobs/{job_id}/status", json={"status": "in_progress"})
    assert resp.status_code == 409
    assert resp.json()["code"] == "INVALID_JOB_TRANSITION"


def test_policy_put_checks_id(clean_db):
    build_workspace(["r1"])
    policy = {"id": "p-freeze", "name": "freeze", "targets": [{}], "concurrency": {"limit": 1}}

    assert client.put("/policies/other", json=policy).status_code == 400
    assert client.put("/policies/p-freeze", json=policy).status_code == 200
    assert repository.get_policy("p-freeze").concurrency.limit == 1

    assert client.delete("/policies/p-freeze").status_code == 200
    assert client.delete("/policies/p-freeze").status_code == 404


def test_policy_with_unknown_field_is_422(clean_db):
    resp = client.put("/policies/p-x", json={"id": "p-x", "name": "x", "blackout": True})
    assert resp.status_code == 422


def test_resource_lock_round_trip(clean_db):
    build_workspace(["r1"])
    locked = client.post("/resources/r1/lock", json={"locked_by": "oncall"})
    assert locked.status_code == 200
    assert locked.json()["locked_by"] == "oncall"

    assert client.post("/resources/r1/lock", json={"locked_by": ""}).status_code == 422
    assert client.delete("/resources/r1/lock").status_code == 200
    assert repository.get_resource("r1").locked_by is None


def test_resource_put_creates_targets(clean_db):
    build_workspace(["r1"])
    resp = client.put("/resources/r2", json={"name": "r2", "identifier": "cluster/r2", "kind": "cluster"})
    assert resp.status_code == 200
    [cycle] = resp.json()["cycles"]
    assert cycle["cause"] == "new_release_target"
    assert target_for("r2").resource_id == "r2"


def test_rollout_preview(clean_db):
    build_workspace(["r1", "r2"])
    make_policy("p-rollout", rollout={"rollout_type": "linear", "time_scale_interval": 30})
    make_version("v1", "v1.0.0")

    body = client.get("/versions/v1/environments/env-prod/rollout").json()
    assert body["rollout_type"] == "linear"
    assert [t["position"] for t in body["targets"]] == [1, 2]
    assert body["start_time"].startswith("2026-03-02T00:00:00")


def test_dispatch_tick(clean_db):
    resp = client.post("/dispatch/tick")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
