from __future__ import annotations

import logging
from typing import List, Optional

from deploygate.models import ACTIVE_JOB_STATUSES, TERMINAL_JOB_STATUSES, TriggerStatus
from deploygate.storage import get_storage_backend
from deploygate.storage.base import StorageBackend

logger = logging.getLogger(__name__)

# Bump when tables or triggers change shape.
SCHEMA_VERSION = "v3"

TERMINAL_TRIGGER_STATUSES = (TriggerStatus.DISPATCHED, TriggerStatus.CANCELLED)


def _quoted(values) -> str:
    return ", ".join(sorted("'" + str(getattr(v, 'value', v)) + "'" for v in values))


TABLES: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS deployments (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        resource_selector_json TEXT,
        variables_json TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS environments (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        resource_selector_json TEXT,
        metadata_json TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS resources (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        identifier TEXT NOT NULL,
        kind TEXT NOT NULL DEFAULT '',
        metadata_json TEXT NOT NULL DEFAULT '{}',
        variables_json TEXT NOT NULL DEFAULT '{}',
        locked_at TEXT,
        locked_by TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS release_targets (
        id TEXT PRIMARY KEY,
        resource_id TEXT NOT NULL REFERENCES resources(id),
        environment_id TEXT NOT NULL REFERENCES environments(id),
        deployment_id TEXT NOT NULL REFERENCES deployments(id),
        desired_version_id TEXT,
        removed_at TEXT,
        created_at TEXT NOT NULL,
        UNIQUE(resource_id, environment_id, deployment_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deployment_versions (
        id TEXT PRIMARY KEY,
        deployment_id TEXT NOT NULL REFERENCES deployments(id),
        name TEXT NOT NULL,
        tag TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ready',
        metadata_json TEXT NOT NULL DEFAULT '{}',
        config_json TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS version_dependencies (
        version_id TEXT NOT NULL REFERENCES deployment_versions(id),
        deployment_id TEXT NOT NULL,
        version_selector_json TEXT NOT NULL,
        PRIMARY KEY (version_id, deployment_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS policies (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        priority INTEGER NOT NULL DEFAULT 0,
        enabled INTEGER NOT NULL DEFAULT 1,
        deny_windows_json TEXT,
        version_selector_json TEXT,
        any_approval_json TEXT,
        user_approvals_json TEXT,
        role_approvals_json TEXT,
        rollout_json TEXT,
        concurrency_json TEXT,
        dependencies_json TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS policy_targets (
        id TEXT PRIMARY KEY,
        policy_id TEXT NOT NULL REFERENCES policies(id) ON DELETE CASCADE,
        deployment_selector_json TEXT,
        environment_selector_json TEXT,
        resource_selector_json TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approval_records (
        id TEXT PRIMARY KEY,
        policy_id TEXT,
        version_id TEXT NOT NULL,
        environment_id TEXT NOT NULL,
        approver_id TEXT,
        status TEXT NOT NULL,
        reason TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS work_triggers (
        id TEXT PRIMARY KEY,
        release_target_id TEXT NOT NULL REFERENCES release_targets(id),
        version_id TEXT NOT NULL REFERENCES deployment_versions(id),
        variables_json TEXT NOT NULL DEFAULT '{}',
        cause TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        job_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trigger_evaluations (
        trigger_id TEXT PRIMARY KEY REFERENCES work_triggers(id),
        eligible INTEGER NOT NULL,
        reasons_json TEXT NOT NULL,
        policy_hash TEXT,
        evaluated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        trigger_id TEXT NOT NULL REFERENCES work_triggers(id),
        release_target_id TEXT NOT NULL REFERENCES release_targets(id),
        version_id TEXT NOT NULL REFERENCES deployment_versions(id),
        status TEXT NOT NULL,
        external_id TEXT,
        message TEXT,
        metadata_json TEXT NOT NULL DEFAULT '{}',
        variables_json TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS metrics_events (
        event_id TEXT PRIMARY KEY,
        metric_name TEXT NOT NULL,
        metric_value INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        metadata_json TEXT NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS schema_state (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        current_version TEXT NOT NULL
    )
    """,
]

INDEXES: List[str] = [
    "CREATE INDEX IF NOT EXISTS idx_release_targets_env_dep ON release_targets(environment_id, deployment_id)",
    "CREATE INDEX IF NOT EXISTS idx_versions_deployment_created ON deployment_versions(deployment_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_policy_targets_policy ON policy_targets(policy_id)",
    "CREATE INDEX IF NOT EXISTS idx_approvals_version_env ON approval_records(version_id, environment_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_triggers_target_status ON work_triggers(release_target_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_target_status ON jobs(release_target_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_trigger ON jobs(trigger_id)",
    # At most one active job per release target.
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_one_active_per_target
    ON jobs(release_target_id)
    WHERE status IN ({_quoted(ACTIVE_JOB_STATUSES)})
    """,
]

SQLITE_TRIGGERS: List[str] = [
    """
    CREATE TRIGGER IF NOT EXISTS prevent_work_trigger_identity_update
    BEFORE UPDATE OF release_target_id, version_id, variables_json, cause, created_at ON work_triggers
    BEGIN
        SELECT RAISE(FAIL, 'Work triggers are immutable: only status may change');
    END;
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS prevent_work_trigger_terminal_update
    BEFORE UPDATE ON work_triggers
    WHEN OLD.status IN ({_quoted(TERMINAL_TRIGGER_STATUSES)})
    BEGIN
        SELECT RAISE(FAIL, 'Work trigger is terminal: UPDATE not allowed');
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS prevent_work_trigger_delete
    BEFORE DELETE ON work_triggers
    BEGIN
        SELECT RAISE(FAIL, 'Work triggers are append-only: DELETE not allowed');
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS prevent_job_identity_update
    BEFORE UPDATE OF trigger_id, release_target_id, version_id, created_at ON jobs
    BEGIN
        SELECT RAISE(FAIL, 'Jobs are immutable: identity columns may not change');
    END;
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS prevent_job_terminal_update
    BEFORE UPDATE ON jobs
    WHEN OLD.status IN ({_quoted(TERMINAL_JOB_STATUSES)})
    BEGIN
        SELECT RAISE(FAIL, 'Job is terminal: UPDATE not allowed');
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS prevent_job_delete
    BEFORE DELETE ON jobs
    BEGIN
        SELECT RAISE(FAIL, 'Jobs are append-only: DELETE not allowed');
    END;
    """,
]

POSTGRES_TRIGGERS: List[str] = [
    f"""
    CREATE OR REPLACE FUNCTION deploygate_guard_history() RETURNS trigger AS $$
    BEGIN
        IF TG_OP = 'DELETE' THEN
            RAISE EXCEPTION '% is append-only: DELETE not allowed', TG_TABLE_NAME;
        END IF;
        IF TG_TABLE_NAME = 'jobs' AND OLD.status IN ({_quoted(TERMINAL_JOB_STATUSES)}) THEN
            RAISE EXCEPTION 'Job is terminal: UPDATE not allowed';
        END IF;
        IF TG_TABLE_NAME = 'work_triggers' AND OLD.status IN ({_quoted(TERMINAL_TRIGGER_STATUSES)}) THEN
            RAISE EXCEPTION 'Work trigger is terminal: UPDATE not allowed';
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS guard_work_triggers ON work_triggers",
    """
    CREATE TRIGGER guard_work_triggers
    BEFORE UPDATE OR DELETE ON work_triggers
    FOR EACH ROW EXECUTE FUNCTION deploygate_guard_history()
    """,
    "DROP TRIGGER IF EXISTS guard_jobs ON jobs",
    """
    CREATE TRIGGER guard_jobs
    BEFORE UPDATE OR DELETE ON jobs
    FOR EACH ROW EXECUTE FUNCTION deploygate_guard_history()
    """,
]


def init_db(storage: Optional[StorageBackend] = None) -> str:
    """
    Create every table, index and history guard. Safe to call repeatedly.
    Returns the schema version.
    """
    storage = storage or get_storage_backend()
    triggers = POSTGRES_TRIGGERS if storage.name == "postgres" else SQLITE_TRIGGERS
    with storage.transaction():
        for statement in TABLES + INDEXES + triggers:
            storage.execute(statement)
        storage.execute(
            """
            INSERT INTO schema_state (id, current_version) VALUES (1, ?)
            ON CONFLICT(id) DO UPDATE SET current_version = excluded.current_version
            """,
            (SCHEMA_VERSION,),
        )
    logger.debug("schema ready backend=%s version=%s", storage.name, SCHEMA_VERSION)
    return SCHEMA_VERSION
