from datetime import datetime, timedelta, timezone

from dateutil.rrule import rrulestr

from deploygate import engine
from deploygate.dispatch import TriggerScope
from deploygate.models import TriggerCause, VersionDependency
from deploygate.policy.resolver import effective_policy
from deploygate.policy.types import DenyWindow
from deploygate.release_targets import compute_release_targets
from deploygate.rules import DISPATCH_CHAIN, RuleContext, dispatch_chain, evaluate_chain
from deploygate.rules import deny_window
from deploygate.rules.basic import LockingFilter, VersionSelectorFilter, VersionStatusFilter
from deploygate.rules.deny_window import DenyWindowFilter, current_occurrence
from deploygate.rules.dependency import DependencyFilter
from deploygate.rules.history import ConcurrencyFilter, SequencingFilter, TargetConcurrencyFilter
from deploygate.storage import repository
from tests.factories import (
    T0,
    RecordingChannel,
    at,
    build_workspace,
    complete_job,
    make_deployment,
    make_policy,
    make_resource,
    make_version,
    target_for,
)

MONDAY_NIGHT = "FREQ=WEEKLY;BYDAY=MO;BYHOUR=0;BYMINUTE=0;BYSECOND=0"


def _ctx(resource_id="r1", *, now=None, cause=None, trigger=None, deployment_id="dep-api"):
    target = target_for(resource_id, deployment_id=deployment_id)
    return RuleContext(
        release_target=target,
        resource=repository.get_resource(target.resource_id),
        policy=effective_policy(target),
        now=now or T0,
        cause=cause,
        trigger=trigger,
    )


def _deploy(version_id, resource_id="r1", *, status="successful", now=None):
    target = target_for(resource_id)
    result = engine.run_cycle(
        TriggerCause.NEW_VERSION.value,
        TriggerScope(release_target_ids=(target.id,), version_id=version_id),
        now=now or at(12),
        channel=RecordingChannel(),
    )
    assert len(result.job_ids) == 1
    job_id = result.job_ids[0]
    if status != "pending":
        complete_job(job_id, status)
    return job_id


def test_version_status_rejects_anything_not_ready(clean_db):
    build_workspace(["r1"])
    ready = make_version("v1", "v1.0.0")
    building = make_version("v2", "v2.0.0", status="building")

    rejected = VersionStatusFilter().filter(_ctx(), [ready, building])
    assert list(rejected) == ["v2"]
    assert rejected["v2"].code == "VERSION_NOT_READY"


def test_version_selector_filters_and_pin_bypasses_it(clean_db):
    targets = build_workspace(["r1"])
    make_policy("p-stable", version_selector={"selector": {"type": "tag", "operator": "glob", "value": "v1.*"}})
    v1 = make_version("v1", "v1.4.0")
    v2 = make_version("v2", "v2.0.0-rc1", created_at=at(1))

    rejected = VersionSelectorFilter().filter(_ctx(), [v1, v2])
    assert set(rejected) == {"v2"}
    assert rejected["v2"].code == "VERSION_SELECTOR_MISMATCH"
    assert rejected["v2"].policy_id == "p-stable"

    repository.set_desired_version(targets[0].id, "v2")
    assert VersionSelectorFilter().filter(_ctx(), [v2]) == {}


def test_malformed_version_selector_rejects_every_candidate(clean_db):
    build_workspace(["r1"])
    make_policy("p-bad", version_selector={"selector": {"type": "tag", "operator": "sounds-like", "value": "v1"}})
    v1 = make_version("v1", "v1.0.0")

    rejected = VersionSelectorFilter().filter(_ctx(), [v1])
    assert rejected["v1"].code == "POLICY_MISCONFIGURED"
    assert rejected["v1"].policy_id == "p-bad"


def test_locking(clean_db):
    build_workspace(["r1"])
    v1 = make_version("v1", "v1.0.0")
    assert LockingFilter().filter(_ctx(), [v1]) == {}

    engine.lock_resource("r1", "oncall")
    rejected = LockingFilter().filter(_ctx(), [v1])
    assert rejected["v1"].code == "RESOURCE_LOCKED"
    assert rejected["v1"].details["locked_by"] == "oncall"


def test_deny_window_blocks_inside_occurrence_only(clean_db):
    build_workspace(["r1"])
    make_policy("p-freeze", deny_windows=[{"rrule": MONDAY_NIGHT, "duration_minutes": 360}])
    v1 = make_version("v1", "v1.0.0")

    inside = DenyWindowFilter().filter(_ctx(now=at(3)), [v1])
    assert inside["v1"].code == "DENY_WINDOW_ACTIVE"
    assert inside["v1"].details["window_end"].startswith("2026-03-02T06:00:00")

    assert DenyWindowFilter().filter(_ctx(now=at(7)), [v1]) == {}
    assert DenyWindowFilter().filter(_ctx(now=at(3, days=1)), [v1]) == {}
    assert DenyWindowFilter().filter(_ctx(now=at(3, days=7)), [v1])["v1"].code == "DENY_WINDOW_ACTIVE"


def test_deny_window_in_local_timezone(clean_db):
    build_workspace(["r1"])
    make_policy(
        "p-ny",
        deny_windows=[
            {
                "rrule": "FREQ=DAILY;BYHOUR=0;BYMINUTE=0;BYSECOND=0",
                "duration_minutes": 60,
                "timezone": "America/New_York",
            }
        ],
    )
    v1 = make_version("v1", "v1.0.0")

    # Midnight in New York is 05:00 UTC before the March DST change.
    assert DenyWindowFilter().filter(_ctx(now=at(0.5)), [v1]) == {}
    assert DenyWindowFilter().filter(_ctx(now=at(5.5)), [v1])["v1"].code == "DENY_WINDOW_ACTIVE"


def test_allow_window_rejects_outside(clean_db):
    build_workspace(["r1"])
    make_policy(
        "p-office",
        deny_windows=[
            {
                "rrule": "FREQ=DAILY;BYHOUR=9;BYMINUTE=0;BYSECOND=0",
                "duration_minutes": 480,
                "window_type": "allow",
            }
        ],
    )
    v1 = make_version("v1", "v1.0.0")

    assert DenyWindowFilter().filter(_ctx(now=at(3)), [v1])["v1"].code == "OUTSIDE_ALLOW_WINDOW"
    assert DenyWindowFilter().filter(_ctx(now=at(10)), [v1]) == {}


def test_unparseable_window_fails_closed(clean_db):
    build_workspace(["r1"])
    make_policy("p-typo", deny_windows=[{"rrule": "FREQ=SOMETIMES", "duration_minutes": 30}])
    make_policy(
        "p-zone",
        deny_windows=[{"rrule": MONDAY_NIGHT, "duration_minutes": 30, "timezone": "Mars/Olympus_Mons"}],
    )
    v1 = make_version("v1", "v1.0.0")

    rejected = DenyWindowFilter().filter(_ctx(now=at(12)), [v1])
    assert rejected["v1"].code == "POLICY_MISCONFIGURED"
    assert rejected["v1"].policy_id in {"p-typo", "p-zone"}


def test_fast_recurrences_expand_from_a_recent_start(monkeypatch):
    seen = []

    def recording_rrulestr(text, dtstart):
        seen.append(dtstart)
        return rrulestr(text, dtstart=dtstart)

    monkeypatch.setattr(deny_window, "rrulestr", recording_rrulestr)
    now = datetime(2026, 10, 19, 3, 35, tzinfo=timezone.utc)

    half_hourly = DenyWindow(rrule="FREQ=MINUTELY;INTERVAL=30", duration_minutes=10)
    start, end = current_occurrence(half_hourly, now)
    assert start == datetime(2026, 10, 19, 3, 30, tzinfo=timezone.utc)
    assert end == datetime(2026, 10, 19, 3, 40, tzinfo=timezone.utc)

    hourly = DenyWindow(rrule="FREQ=HOURLY;BYMINUTE=0;BYSECOND=0", duration_minutes=10)
    assert current_occurrence(hourly, now) is None
    assert current_occurrence(hourly, now - timedelta(minutes=30)) is not None

    # Expansion starts on a Monday midnight at most two weeks back.
    for dtstart in seen:
        assert dtstart.weekday() == 0
        assert (dtstart.hour, dtstart.minute) == (0, 0)
        assert now - timedelta(weeks=2) < dtstart <= now - timedelta(weeks=1)


def test_old_explicit_dtstart_keeps_its_phase():
    # 2001-01-02 was a Tuesday; daily windows stay at 09:15 Berlin time.
    window = DenyWindow(
        rrule="FREQ=DAILY",
        duration_minutes=30,
        timezone="Europe/Berlin",
        dtstart="2001-01-02T09:15:00",
    )
    start, _ = current_occurrence(window, datetime(2026, 3, 2, 8, 20, tzinfo=timezone.utc))
    assert start == datetime(2026, 3, 2, 8, 15, tzinfo=timezone.utc)
    assert current_occurrence(window, datetime(2026, 3, 2, 8, 50, tzinfo=timezone.utc)) is None


def test_recurrences_not_aligned_to_weeks_are_not_moved():
    every_third_day = DenyWindow(
        rrule="FREQ=DAILY;INTERVAL=3", duration_minutes=30, dtstart="2026-01-01T00:00:00Z"
    )
    # 60 days after the start is an occurrence, 61 days is not.
    assert current_occurrence(every_third_day, datetime(2026, 3, 2, 0, 10, tzinfo=timezone.utc)) is not None
    assert current_occurrence(every_third_day, datetime(2026, 3, 3, 0, 10, tzinfo=timezone.utc)) is None

    monthly = DenyWindow(rrule="FREQ=MONTHLY;BYMONTHDAY=1;BYHOUR=0;BYMINUTE=0;BYSECOND=0", duration_minutes=60)
    assert current_occurrence(monthly, datetime(2026, 3, 1, 0, 30, tzinfo=timezone.utc)) is not None


def test_sequencing_blocks_regression_unless_repeatable(clean_db):
    build_workspace(["r1"])
    v1 = make_version("v1", "v1.0.0", created_at=T0)
    make_version("v2", "v2.0.0", created_at=at(1))
    _deploy("v2")

    rejected = SequencingFilter().filter(_ctx(), [v1])
    assert rejected["v1"].code == "VERSION_OLDER_THAN_DEPLOYED"
    assert rejected["v1"].details["newest_version_id"] == "v2"

    assert SequencingFilter().filter(_ctx(cause=TriggerCause.REDEPLOY.value), [v1]) == {}
    assert SequencingFilter().filter(_ctx(cause=TriggerCause.FORCE_DEPLOY.value), [v1]) == {}


def test_failed_job_does_not_hold_a_version(clean_db):
    build_workspace(["r1"])
    v1 = make_version("v1", "v1.0.0", created_at=T0)
    make_version("v2", "v2.0.0", created_at=at(1))
    _deploy("v2", status="failure")

    assert SequencingFilter().filter(_ctx(), [v1]) == {}


def test_concurrency_counts_active_jobs_in_policy_scope(clean_db):
    build_workspace(["r1", "r2"])
    make_policy("p-one-at-a-time", concurrency={"limit": 1})
    v1 = make_version("v1", "v1.0.0")
    job_id = _deploy("v1", "r1", status="pending")

    rejected = ConcurrencyFilter().filter(_ctx("r2"), [v1])
    assert rejected["v1"].code == "CONCURRENCY_LIMIT_REACHED"
    assert rejected["v1"].details["active_jobs"] == 1

    # The target's own job does not count against it.
    assert ConcurrencyFilter().filter(_ctx("r1"), [v1]) == {}

    complete_job(job_id)
    assert ConcurrencyFilter().filter(_ctx("r2"), [v1]) == {}


def test_target_concurrency_rejects_duplicate_work_only(clean_db):
    build_workspace(["r1"])
    v1 = make_version("v1", "v1.0.0")
    v2 = make_version("v2", "v2.0.0", created_at=at(1))
    _deploy("v1", status="pending")

    rejected = TargetConcurrencyFilter().filter(_ctx(), [v1, v2])
    assert set(rejected) == {"v1"}
    assert rejected["v1"].code == "TARGET_JOB_ACTIVE"


def test_dependency_satisfied_by_successful_job_elsewhere(clean_db):
    build_workspace(["r1"])
    make_deployment("dep-db")
    make_resource("db1")
    compute_release_targets()
    make_version("db-v2", "v2.1.0", deployment_id="dep-db")
    api = make_version(
        "v1",
        "v1.0.0",
        dependencies=[VersionDependency("dep-db", {"type": "tag", "operator": "glob", "value": "v2.*"})],
    )

    rejected = DependencyFilter().filter(_ctx(), [api])
    assert rejected["v1"].code == "DEPENDENCY_UNSATISFIED"

    db_target = target_for("db1", deployment_id="dep-db")
    result = engine.run_cycle(
        TriggerCause.NEW_VERSION.value,
        TriggerScope(release_target_ids=(db_target.id,), version_id="db-v2"),
        now=at(12),
        channel=RecordingChannel(),
    )
    complete_job(result.job_ids[0])

    assert DependencyFilter().filter(_ctx(), [api]) == {}


def test_chain_keeps_every_failing_reason(clean_db):
    build_workspace(["r1"])
    make_policy("p-freeze", deny_windows=[{"rrule": MONDAY_NIGHT, "duration_minutes": 360}])
    v1 = make_version("v1", "v1.0.0")
    engine.lock_resource("r1", "oncall")

    result = evaluate_chain(DISPATCH_CHAIN, _ctx(now=at(3)), [v1])
    assert not result.eligible
    assert [r["code"] for r in result.reasons_for("v1")] == ["RESOURCE_LOCKED", "DENY_WINDOW_ACTIVE"]

    forced = evaluate_chain(dispatch_chain(force=True), _ctx(now=at(3)), [v1])
    assert [r["code"] for r in forced.reasons_for("v1")] == ["RESOURCE_LOCKED"]

    engine.unlock_resource("r1", now=at(3), channel=RecordingChannel())
    assert evaluate_chain(dispatch_chain(force=True), _ctx(now=at(3)), [v1]).is_eligible("v1")


def test_misconfigured_policy_rejects_through_the_chain(clean_db):
    build_workspace(["r1"])
    make_policy("p-broken", targets=[{"resource_selector": {"type": "kind", "operator": "nope", "value": "x"}}])
    v1 = make_version("v1", "v1.0.0")

    result = evaluate_chain(DISPATCH_CHAIN, _ctx(), [v1])
    codes = [r["code"] for r in result.reasons_for("v1")]
    assert codes[0] == "POLICY_MISCONFIGURED"
