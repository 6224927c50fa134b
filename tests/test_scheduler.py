from deploygate import scheduler
from deploygate.dispatch import TriggerScope, create_triggers
from deploygate.storage import repository
from tests.factories import build_workspace, make_version


def test_tick_dispatches_pending_work(clean_db):
    build_workspace(["r1"])
    make_version("v1", "v1.0.0")
    create_triggers("new_version", TriggerScope(version_id="v1"))
    result = scheduler.tick()

    assert result["ok"] is True
    assert result["counts"] == {"dispatched": 1}
    assert "generated_at" in result
    assert len(repository.list_jobs()) == 1


def test_tick_is_skipped_while_another_runs(clean_db):
    assert scheduler._LOCAL_TICK_LOCK.acquire(blocking=False)
    try:
        result = scheduler.tick()
    finally:
        scheduler._LOCAL_TICK_LOCK.release()
    assert result == {"ok": True, "skipped": True, "reason": "LOCAL_LOCK_HELD"}


def test_scheduler_disabled_by_default(monkeypatch):
    monkeypatch.delenv("DEPLOYGATE_SCHEDULER_ENABLED", raising=False)
    assert scheduler.start_scheduler() == {"started": False, "reason": "DISABLED"}
    assert scheduler.scheduler_status()["running"] is False


def test_scheduler_start_and_stop(clean_db, monkeypatch):
    monkeypatch.setenv("DEPLOYGATE_SCHEDULER_ENABLED", "true")
    monkeypatch.setenv("DEPLOYGATE_SCHEDULER_INTERVAL_SECONDS", "3600")
    try:
        assert scheduler.start_scheduler()["reason"] == "STARTED"
        assert scheduler.start_scheduler()["reason"] == "ALREADY_RUNNING"
        assert scheduler.scheduler_status()["running"] is True
    finally:
        assert scheduler.stop_scheduler() == {"stopped": True, "reason": "STOPPED"}
    assert scheduler.stop_scheduler()["reason"] == "NOT_RUNNING"
