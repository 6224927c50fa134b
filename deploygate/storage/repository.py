from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from deploygate.errors import NotFoundError
from deploygate.models import (
    ACTIVE_JOB_STATUSES,
    ApprovalRecord,
    Deployment,
    DeploymentVersion,
    Environment,
    Job,
    JobStatus,
    ReleaseTarget,
    Resource,
    TriggerStatus,
    VersionDependency,
    WorkTrigger,
)
from deploygate.policy.types import Policy, PolicyTarget
from deploygate.storage import get_storage_backend
from deploygate.utils.canonical import canonical_json, format_ts, load_json, parse_ts, utc_now

_ACTIVE = tuple(sorted(s.value for s in ACTIVE_JOB_STATUSES))


def new_id() -> str:
    return str(uuid.uuid4())


def _ts(value: Optional[datetime]) -> Optional[str]:
    return format_ts(value) if value is not None else None


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


# -- deployments / environments / resources ---------------------------------


def _deployment_from_row(row: Dict[str, Any]) -> Deployment:
    return Deployment(
        id=row["id"],
        name=row["name"],
        resource_selector=load_json(row.get("resource_selector_json")),
        variables=load_json(row.get("variables_json"), {}),
    )


def upsert_deployment(deployment: Deployment) -> Deployment:
    get_storage_backend().execute(
        """
        INSERT INTO deployments (id, name, resource_selector_json, variables_json, created_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            resource_selector_json = excluded.resource_selector_json,
            variables_json = excluded.variables_json
        """,
        (
            deployment.id,
            deployment.name,
            canonical_json(deployment.resource_selector) if deployment.resource_selector is not None else None,
            canonical_json(dict(deployment.variables)),
            format_ts(utc_now()),
        ),
    )
    return deployment


def get_deployment(deployment_id: str) -> Deployment:
    row = get_storage_backend().fetchone("SELECT * FROM deployments WHERE id = ?", (deployment_id,))
    if not row:
        raise NotFoundError("deployment", deployment_id)
    return _deployment_from_row(row)


def list_deployments() -> List[Deployment]:
    rows = get_storage_backend().fetchall("SELECT * FROM deployments ORDER BY id")
    return [_deployment_from_row(r) for r in rows]


def _environment_from_row(row: Dict[str, Any]) -> Environment:
    return Environment(
        id=row["id"],
        name=row["name"],
        resource_selector=load_json(row.get("resource_selector_json")),
        metadata=load_json(row.get("metadata_json"), {}),
    )


def upsert_environment(environment: Environment) -> Environment:
    get_storage_backend().execute(
        """
        INSERT INTO environments (id, name, resource_selector_json, metadata_json, created_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            resource_selector_json = excluded.resource_selector_json,
            metadata_json = excluded.metadata_json
        """,
        (
            environment.id,
            environment.name,
            canonical_json(environment.resource_selector) if environment.resource_selector is not None else None,
            canonical_json(dict(environment.metadata)),
            format_ts(utc_now()),
        ),
    )
    return environment


def get_environment(environment_id: str) -> Environment:
    row = get_storage_backend().fetchone("SELECT * FROM environments WHERE id = ?", (environment_id,))
    if not row:
        raise NotFoundError("environment", environment_id)
    return _environment_from_row(row)


def list_environments() -> List[Environment]:
    rows = get_storage_backend().fetchall("SELECT * FROM environments ORDER BY id")
    return [_environment_from_row(r) for r in rows]


def _resource_from_row(row: Dict[str, Any]) -> Resource:
    return Resource(
        id=row["id"],
        name=row["name"],
        identifier=row["identifier"],
        kind=row.get("kind") or "",
        metadata=load_json(row.get("metadata_json"), {}),
        variables=load_json(row.get("variables_json"), {}),
        locked_at=parse_ts(row.get("locked_at")),
        locked_by=row.get("locked_by"),
    )


def upsert_resource(resource: Resource) -> Resource:
    # Lock columns are owned by set_resource_lock and survive upserts.
    get_storage_backend().execute(
        """
        INSERT INTO resources (id, name, identifier, kind, metadata_json, variables_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            identifier = excluded.identifier,
            kind = excluded.kind,
            metadata_json = excluded.metadata_json,
            variables_json = excluded.variables_json
        """,
        (
            resource.id,
            resource.name,
            resource.identifier,
            resource.kind,
            canonical_json(dict(resource.metadata)),
            canonical_json(dict(resource.variables)),
            format_ts(utc_now()),
        ),
    )
    return get_resource(resource.id)


def get_resource(resource_id: str) -> Resource:
    row = get_storage_backend().fetchone("SELECT * FROM resources WHERE id = ?", (resource_id,))
    if not row:
        raise NotFoundError("resource", resource_id)
    return _resource_from_row(row)


def list_resources() -> List[Resource]:
    rows = get_storage_backend().fetchall("SELECT * FROM resources ORDER BY id")
    return [_resource_from_row(r) for r in rows]


def set_resource_lock(resource_id: str, locked_by: Optional[str]) -> Resource:
    storage = get_storage_backend()
    if locked_by:
        updated = storage.execute(
            "UPDATE resources SET locked_at = ?, locked_by = ? WHERE id = ?",
            (format_ts(utc_now()), locked_by, resource_id),
        )
    else:
        updated = storage.execute(
            "UPDATE resources SET locked_at = NULL, locked_by = NULL WHERE id = ?",
            (resource_id,),
        )
    if not updated:
        raise NotFoundError("resource", resource_id)
    return get_resource(resource_id)


# -- release targets ----------------------------------------------------------


def _release_target_from_row(row: Dict[str, Any]) -> ReleaseTarget:
    return ReleaseTarget(
        id=row["id"],
        resource_id=row["resource_id"],
        environment_id=row["environment_id"],
        deployment_id=row["deployment_id"],
        desired_version_id=row.get("desired_version_id"),
    )


def find_release_target(resource_id: str, environment_id: str, deployment_id: str) -> Optional[Dict[str, Any]]:
    """Raw row, including soft-removed targets."""
    return get_storage_backend().fetchone(
        """
        SELECT * FROM release_targets
        WHERE resource_id = ? AND environment_id = ? AND deployment_id = ?
        """,
        (resource_id, environment_id, deployment_id),
    )


def ensure_release_target(resource_id: str, environment_id: str, deployment_id: str) -> Tuple[ReleaseTarget, bool]:
    """
    Returns (release_target, created). A previously removed target is
    revived under its original id so its history stays attached.
    """
    storage = get_storage_backend()
    existing = find_release_target(resource_id, environment_id, deployment_id)
    if existing and not existing.get("removed_at"):
        return _release_target_from_row(existing), False
    if existing:
        storage.execute("UPDATE release_targets SET removed_at = NULL WHERE id = ?", (existing["id"],))
        return _release_target_from_row(existing), True
    target_id = new_id()
    storage.execute(
        """
        INSERT INTO release_targets (id, resource_id, environment_id, deployment_id, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (target_id, resource_id, environment_id, deployment_id, format_ts(utc_now())),
    )
    return ReleaseTarget(target_id, resource_id, environment_id, deployment_id), True


def remove_release_target(release_target_id: str) -> None:
    get_storage_backend().execute(
        "UPDATE release_targets SET removed_at = ? WHERE id = ? AND removed_at IS NULL",
        (format_ts(utc_now()), release_target_id),
    )


def get_release_target(release_target_id: str) -> ReleaseTarget:
    row = get_storage_backend().fetchone(
        "SELECT * FROM release_targets WHERE id = ? AND removed_at IS NULL",
        (release_target_id,),
    )
    if not row:
        raise NotFoundError("release target", release_target_id)
    return _release_target_from_row(row)


def lock_release_target(release_target_id: str) -> ReleaseTarget:
    """Re-read the target holding a row lock until the transaction ends."""
    storage = get_storage_backend()
    row = storage.fetchone(
        "SELECT * FROM release_targets WHERE id = ? AND removed_at IS NULL" + storage.row_lock_clause,
        (release_target_id,),
    )
    if not row:
        raise NotFoundError("release target", release_target_id)
    return _release_target_from_row(row)


def list_release_targets(
    *,
    environment_id: Optional[str] = None,
    deployment_id: Optional[str] = None,
    resource_id: Optional[str] = None,
    ids: Optional[Iterable[str]] = None,
) -> List[ReleaseTarget]:
    clauses = ["removed_at IS NULL"]
    params: List[Any] = []
    if environment_id is not None:
        clauses.append("environment_id = ?")
        params.append(environment_id)
    if deployment_id is not None:
        clauses.append("deployment_id = ?")
        params.append(deployment_id)
    if resource_id is not None:
        clauses.append("resource_id = ?")
        params.append(resource_id)
    if ids is not None:
        id_list = list(ids)
        if not id_list:
            return []
        clauses.append(f"id IN ({_placeholders(id_list)})")
        params.extend(id_list)
    rows = get_storage_backend().fetchall(
        f"SELECT * FROM release_targets WHERE {' AND '.join(clauses)} ORDER BY id",
        params,
    )
    return [_release_target_from_row(r) for r in rows]


def set_desired_version(release_target_id: str, version_id: Optional[str]) -> None:
    updated = get_storage_backend().execute(
        "UPDATE release_targets SET desired_version_id = ? WHERE id = ? AND removed_at IS NULL",
        (version_id, release_target_id),
    )
    if not updated:
        raise NotFoundError("release target", release_target_id)


# -- versions -----------------------------------------------------------------


def _version_from_row(row: Dict[str, Any], dependencies: Sequence[VersionDependency] = ()) -> DeploymentVersion:
    return DeploymentVersion(
        id=row["id"],
        deployment_id=row["deployment_id"],
        name=row["name"],
        tag=row["tag"],
        status=row["status"],
        metadata=load_json(row.get("metadata_json"), {}),
        config=load_json(row.get("config_json"), {}),
        created_at=parse_ts(row["created_at"]),
        dependencies=tuple(dependencies),
    )


def _dependencies_for(version_ids: Sequence[str]) -> Dict[str, List[VersionDependency]]:
    if not version_ids:
        return {}
    rows = get_storage_backend().fetchall(
        f"""
        SELECT version_id, deployment_id, version_selector_json
        FROM version_dependencies
        WHERE version_id IN ({_placeholders(version_ids)})
        ORDER BY version_id, deployment_id
        """,
        list(version_ids),
    )
    out: Dict[str, List[VersionDependency]] = {}
    for r in rows:
        out.setdefault(r["version_id"], []).append(
            VersionDependency(
                deployment_id=r["deployment_id"],
                version_selector=load_json(r["version_selector_json"], {}),
            )
        )
    return out


def insert_version(version: DeploymentVersion) -> DeploymentVersion:
    storage = get_storage_backend()
    with storage.transaction():
        storage.execute(
            """
            INSERT INTO deployment_versions (id, deployment_id, name, tag, status, metadata_json, config_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                version.id,
                version.deployment_id,
                version.name,
                version.tag,
                str(version.status),
                canonical_json(dict(version.metadata)),
                canonical_json(dict(version.config)),
                format_ts(version.created_at),
            ),
        )
        for dep in version.dependencies:
            storage.execute(
                """
                INSERT INTO version_dependencies (version_id, deployment_id, version_selector_json)
                VALUES (?, ?, ?)
                """,
                (version.id, dep.deployment_id, canonical_json(dict(dep.version_selector))),
            )
    return version


def update_version_status(version_id: str, status: str) -> DeploymentVersion:
    updated = get_storage_backend().execute(
        "UPDATE deployment_versions SET status = ? WHERE id = ?",
        (status, version_id),
    )
    if not updated:
        raise NotFoundError("version", version_id)
    return get_version(version_id)


def get_version(version_id: str) -> DeploymentVersion:
    row = get_storage_backend().fetchone("SELECT * FROM deployment_versions WHERE id = ?", (version_id,))
    if not row:
        raise NotFoundError("version", version_id)
    return _version_from_row(row, _dependencies_for([version_id]).get(version_id, ()))


def get_versions(version_ids: Iterable[str]) -> Dict[str, DeploymentVersion]:
    id_list = sorted(set(version_ids))
    if not id_list:
        return {}
    rows = get_storage_backend().fetchall(
        f"SELECT * FROM deployment_versions WHERE id IN ({_placeholders(id_list)})",
        id_list,
    )
    deps = _dependencies_for(id_list)
    return {r["id"]: _version_from_row(r, deps.get(r["id"], ())) for r in rows}


def list_versions(deployment_id: str, *, statuses: Optional[Sequence[str]] = None) -> List[DeploymentVersion]:
    """Newest first by (created_at, id)."""
    params: List[Any] = [deployment_id]
    query = "SELECT * FROM deployment_versions WHERE deployment_id = ?"
    if statuses:
        query += f" AND status IN ({_placeholders(statuses)})"
        params.extend(statuses)
    query += " ORDER BY created_at DESC, id DESC"
    rows = get_storage_backend().fetchall(query, params)
    deps = _dependencies_for([r["id"] for r in rows])
    return [_version_from_row(r, deps.get(r["id"], ())) for r in rows]


# -- policies -----------------------------------------------------------------

_POLICY_JSON_COLUMNS = (
    ("deny_windows", "deny_windows_json"),
    ("version_selector", "version_selector_json"),
    ("any_approval", "any_approval_json"),
    ("user_approvals", "user_approvals_json"),
    ("role_approvals", "role_approvals_json"),
    ("rollout", "rollout_json"),
    ("concurrency", "concurrency_json"),
    ("dependencies", "dependencies_json"),
)


def upsert_policy(policy: Policy) -> Policy:
    storage = get_storage_backend()
    data = policy.model_dump(mode="json")
    now = format_ts(utc_now())
    columns = [column for _, column in _POLICY_JSON_COLUMNS]
    values = [
        canonical_json(data[field]) if data[field] not in (None, []) else None
        for field, _ in _POLICY_JSON_COLUMNS
    ]
    with storage.transaction():
        storage.execute(
            f"""
            INSERT INTO policies (id, name, description, priority, enabled, {', '.join(columns)}, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, {_placeholders(columns)}, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                priority = excluded.priority,
                enabled = excluded.enabled,
                {', '.join(f'{c} = excluded.{c}' for c in columns)},
                updated_at = excluded.updated_at
            """,
            [policy.id, policy.name, policy.description, int(policy.priority), 1 if policy.enabled else 0]
            + values
            + [now, now],
        )
        storage.execute("DELETE FROM policy_targets WHERE policy_id = ?", (policy.id,))
        for target in policy.targets:
            storage.execute(
                """
                INSERT INTO policy_targets (
                    id, policy_id, deployment_selector_json, environment_selector_json, resource_selector_json
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    new_id(),
                    policy.id,
                    canonical_json(target.deployment_selector) if target.deployment_selector is not None else None,
                    canonical_json(target.environment_selector) if target.environment_selector is not None else None,
                    canonical_json(target.resource_selector) if target.resource_selector is not None else None,
                ),
            )
    return policy


def delete_policy(policy_id: str) -> None:
    storage = get_storage_backend()
    with storage.transaction():
        storage.execute("DELETE FROM policy_targets WHERE policy_id = ?", (policy_id,))
        deleted = storage.execute("DELETE FROM policies WHERE id = ?", (policy_id,))
    if not deleted:
        raise NotFoundError("policy", policy_id)


def _policy_from_rows(row: Dict[str, Any], target_rows: Sequence[Dict[str, Any]]) -> Policy:
    payload: Dict[str, Any] = {
        "id": row["id"],
        "name": row["name"],
        "description": row.get("description") or "",
        "priority": int(row.get("priority") or 0),
        "enabled": bool(row.get("enabled")),
        "targets": [
            PolicyTarget(
                deployment_selector=load_json(t.get("deployment_selector_json")),
                environment_selector=load_json(t.get("environment_selector_json")),
                resource_selector=load_json(t.get("resource_selector_json")),
            )
            for t in target_rows
        ],
    }
    for field, column in _POLICY_JSON_COLUMNS:
        decoded = load_json(row.get(column))
        if decoded is not None:
            payload[field] = decoded
    return Policy.model_validate(payload)


def list_policies(*, enabled_only: bool = True) -> List[Policy]:
    storage = get_storage_backend()
    query = "SELECT * FROM policies"
    if enabled_only:
        query += " WHERE enabled = 1"
    rows = storage.fetchall(query + " ORDER BY id")
    target_rows = storage.fetchall("SELECT * FROM policy_targets ORDER BY policy_id, id")
    targets_by_policy: Dict[str, List[Dict[str, Any]]] = {}
    for t in target_rows:
        targets_by_policy.setdefault(t["policy_id"], []).append(t)
    return [_policy_from_rows(r, targets_by_policy.get(r["id"], [])) for r in rows]


def get_policy(policy_id: str) -> Policy:
    storage = get_storage_backend()
    row = storage.fetchone("SELECT * FROM policies WHERE id = ?", (policy_id,))
    if not row:
        raise NotFoundError("policy", policy_id)
    targets = storage.fetchall("SELECT * FROM policy_targets WHERE policy_id = ? ORDER BY id", (policy_id,))
    return _policy_from_rows(row, targets)


# -- approvals ----------------------------------------------------------------


def _approval_from_row(row: Dict[str, Any]) -> ApprovalRecord:
    return ApprovalRecord(
        id=row["id"],
        policy_id=row.get("policy_id"),
        version_id=row["version_id"],
        environment_id=row["environment_id"],
        approver_id=row.get("approver_id"),
        status=row["status"],
        reason=row.get("reason"),
        created_at=parse_ts(row["created_at"]),
    )


def insert_approval_record(record: ApprovalRecord) -> ApprovalRecord:
    get_storage_backend().execute(
        """
        INSERT INTO approval_records (id, policy_id, version_id, environment_id, approver_id, status, reason, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record.id,
            record.policy_id,
            record.version_id,
            record.environment_id,
            record.approver_id,
            record.status,
            record.reason,
            format_ts(record.created_at),
        ),
    )
    return record


def list_approval_records(version_id: str, environment_id: str) -> List[ApprovalRecord]:
    """Oldest first, so later rows override earlier ones per approver."""
    rows = get_storage_backend().fetchall(
        """
        SELECT * FROM approval_records
        WHERE version_id = ? AND environment_id = ?
        ORDER BY created_at ASC, id ASC
        """,
        (version_id, environment_id),
    )
    return [_approval_from_row(r) for r in rows]


def has_placeholder_record(version_id: str, environment_id: str, policy_id: Optional[str]) -> bool:
    row = get_storage_backend().fetchone(
        """
        SELECT id FROM approval_records
        WHERE version_id = ? AND environment_id = ? AND approver_id IS NULL
          AND ((policy_id IS NULL AND ? IS NULL) OR policy_id = ?)
        """,
        (version_id, environment_id, policy_id, policy_id),
    )
    return row is not None


# -- work triggers ------------------------------------------------------------


def _trigger_from_row(row: Dict[str, Any]) -> WorkTrigger:
    return WorkTrigger(
        id=row["id"],
        release_target_id=row["release_target_id"],
        version_id=row["version_id"],
        variables=load_json(row.get("variables_json"), {}),
        cause=row["cause"],
        status=row["status"],
        job_id=row.get("job_id"),
        created_at=parse_ts(row["created_at"]),
    )


def insert_trigger(trigger: WorkTrigger) -> WorkTrigger:
    ts = format_ts(trigger.created_at)
    get_storage_backend().execute(
        """
        INSERT INTO work_triggers (id, release_target_id, version_id, variables_json, cause, status, job_id, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            trigger.id,
            trigger.release_target_id,
            trigger.version_id,
            canonical_json(dict(trigger.variables)),
            trigger.cause,
            trigger.status,
            trigger.job_id,
            ts,
            ts,
        ),
    )
    return trigger


def get_trigger(trigger_id: str) -> WorkTrigger:
    row = get_storage_backend().fetchone("SELECT * FROM work_triggers WHERE id = ?", (trigger_id,))
    if not row:
        raise NotFoundError("trigger", trigger_id)
    return _trigger_from_row(row)


def list_triggers(
    *,
    release_target_id: Optional[str] = None,
    release_target_ids: Optional[Iterable[str]] = None,
    status: Optional[str] = None,
) -> List[WorkTrigger]:
    clauses: List[str] = []
    params: List[Any] = []
    if release_target_id is not None:
        clauses.append("release_target_id = ?")
        params.append(release_target_id)
    if release_target_ids is not None:
        id_list = list(release_target_ids)
        if not id_list:
            return []
        clauses.append(f"release_target_id IN ({_placeholders(id_list)})")
        params.extend(id_list)
    if status is not None:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = get_storage_backend().fetchall(
        f"SELECT * FROM work_triggers {where} ORDER BY created_at ASC, id ASC",
        params,
    )
    return [_trigger_from_row(r) for r in rows]


def transition_trigger(trigger_id: str, status: str, *, job_id: Optional[str] = None) -> bool:
    """Move a pending trigger to a terminal status. False if it was no longer pending."""
    updated = get_storage_backend().execute(
        """
        UPDATE work_triggers SET status = ?, job_id = ?, updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (status, job_id, format_ts(utc_now()), trigger_id, TriggerStatus.PENDING.value),
    )
    return bool(updated)


def save_trigger_evaluation(
    trigger_id: str,
    *,
    eligible: bool,
    reasons: Any,
    policy_hash: str,
    evaluated_at: datetime,
) -> None:
    get_storage_backend().execute(
        """
        INSERT INTO trigger_evaluations (trigger_id, eligible, reasons_json, policy_hash, evaluated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(trigger_id) DO UPDATE SET
            eligible = excluded.eligible,
            reasons_json = excluded.reasons_json,
            policy_hash = excluded.policy_hash,
            evaluated_at = excluded.evaluated_at
        """,
        (trigger_id, 1 if eligible else 0, canonical_json(reasons), policy_hash, format_ts(evaluated_at)),
    )


def get_trigger_evaluation(trigger_id: str) -> Optional[Dict[str, Any]]:
    row = get_storage_backend().fetchone("SELECT * FROM trigger_evaluations WHERE trigger_id = ?", (trigger_id,))
    if not row:
        return None
    return {
        "trigger_id": row["trigger_id"],
        "eligible": bool(row["eligible"]),
        "reasons": load_json(row["reasons_json"], []),
        "policy_hash": row.get("policy_hash"),
        "evaluated_at": row["evaluated_at"],
    }


# -- jobs ---------------------------------------------------------------------


def _job_from_row(row: Dict[str, Any]) -> Job:
    return Job(
        id=row["id"],
        trigger_id=row["trigger_id"],
        release_target_id=row["release_target_id"],
        version_id=row["version_id"],
        status=row["status"],
        external_id=row.get("external_id"),
        message=row.get("message"),
        metadata=load_json(row.get("metadata_json"), {}),
        variables=load_json(row.get("variables_json"), {}),
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
        started_at=parse_ts(row.get("started_at")),
        completed_at=parse_ts(row.get("completed_at")),
    )


def insert_job(job: Job) -> Job:
    get_storage_backend().execute(
        """
        INSERT INTO jobs (
            id, trigger_id, release_target_id, version_id, status, external_id, message,
            metadata_json, variables_json, created_at, started_at, completed_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job.id,
            job.trigger_id,
            job.release_target_id,
            job.version_id,
            job.status,
            job.external_id,
            job.message,
            canonical_json(dict(job.metadata)),
            canonical_json(dict(job.variables)),
            format_ts(job.created_at),
            _ts(job.started_at),
            _ts(job.completed_at),
            format_ts(job.updated_at),
        ),
    )
    return job


def get_job(job_id: str) -> Job:
    row = get_storage_backend().fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))
    if not row:
        raise NotFoundError("job", job_id)
    return _job_from_row(row)


def list_jobs(
    *,
    release_target_id: Optional[str] = None,
    release_target_ids: Optional[Iterable[str]] = None,
    statuses: Optional[Sequence[str]] = None,
) -> List[Job]:
    """Newest first."""
    clauses: List[str] = []
    params: List[Any] = []
    if release_target_id is not None:
        clauses.append("release_target_id = ?")
        params.append(release_target_id)
    if release_target_ids is not None:
        id_list = list(release_target_ids)
        if not id_list:
            return []
        clauses.append(f"release_target_id IN ({_placeholders(id_list)})")
        params.extend(id_list)
    if statuses:
        clauses.append(f"status IN ({_placeholders(statuses)})")
        params.extend(statuses)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = get_storage_backend().fetchall(
        f"SELECT * FROM jobs {where} ORDER BY created_at DESC, id DESC",
        params,
    )
    return [_job_from_row(r) for r in rows]


def active_jobs(release_target_id: str) -> List[Job]:
    return list_jobs(release_target_id=release_target_id, statuses=_ACTIVE)


def count_active_jobs(release_target_ids: Iterable[str]) -> int:
    id_list = list(release_target_ids)
    if not id_list:
        return 0
    row = get_storage_backend().fetchone(
        f"""
        SELECT COUNT(*) AS n FROM jobs
        WHERE release_target_id IN ({_placeholders(id_list)})
          AND status IN ({_placeholders(_ACTIVE)})
        """,
        id_list + list(_ACTIVE),
    )
    return int(row["n"]) if row else 0


def latest_successful_job(release_target_id: str) -> Optional[Job]:
    jobs = list_jobs(release_target_id=release_target_id, statuses=[JobStatus.SUCCESSFUL.value])
    if not jobs:
        return None
    # Completion order, not creation order, decides what is running now.
    return max(jobs, key=lambda j: (j.completed_at or j.updated_at, j.id))


def update_job(
    job_id: str,
    *,
    expected_status: str,
    status: str,
    message: Optional[str] = None,
    external_id: Optional[str] = None,
    started_at: Optional[datetime] = None,
    completed_at: Optional[datetime] = None,
) -> bool:
    """Compare-and-set on status. False when the job moved underneath us."""
    updated = get_storage_backend().execute(
        """
        UPDATE jobs SET
            status = ?,
            message = COALESCE(?, message),
            external_id = COALESCE(?, external_id),
            started_at = COALESCE(started_at, ?),
            completed_at = COALESCE(?, completed_at),
            updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (
            status,
            message,
            external_id,
            _ts(started_at),
            _ts(completed_at),
            format_ts(utc_now()),
            job_id,
            expected_status,
        ),
    )
    return bool(updated)
