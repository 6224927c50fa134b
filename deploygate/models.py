from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


class VersionStatus(str, Enum):
    READY = "ready"
    BUILDING = "building"
    PAUSED = "paused"
    REJECTED = "rejected"
    FAILED = "failed"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TriggerCause(str, Enum):
    NEW_VERSION = "new_version"
    NEW_RELEASE_TARGET = "new_release_target"
    VERSION_UPDATED = "version_updated"
    POLICY_UPDATED = "policy_updated"
    RESOURCE_UPDATED = "resource_updated"
    ENVIRONMENT_UPDATED = "environment_updated"
    DEPLOYMENT_UPDATED = "deployment_updated"
    PINNED_VERSION = "pinned_version"
    REDEPLOY = "redeploy"
    FORCE_DEPLOY = "force_deploy"
    SCHEDULED_TICK = "scheduled_tick"


# Causes that may re-run a version the target already holds.
REPEATABLE_CAUSES: FrozenSet[TriggerCause] = frozenset({TriggerCause.REDEPLOY, TriggerCause.FORCE_DEPLOY})


class TriggerStatus(str, Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    ACTION_REQUIRED = "action_required"
    SUCCESSFUL = "successful"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    INVALID_JOB_AGENT = "invalid_job_agent"


ACTIVE_JOB_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.PENDING, JobStatus.IN_PROGRESS, JobStatus.ACTION_REQUIRED}
)

TERMINAL_JOB_STATUSES: FrozenSet[JobStatus] = frozenset(
    {
        JobStatus.SUCCESSFUL,
        JobStatus.FAILURE,
        JobStatus.CANCELLED,
        JobStatus.SKIPPED,
        JobStatus.INVALID_JOB_AGENT,
    }
)

ALLOWED_JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.IN_PROGRESS, JobStatus.ACTION_REQUIRED}) | TERMINAL_JOB_STATUSES,
    JobStatus.IN_PROGRESS: frozenset({JobStatus.ACTION_REQUIRED}) | (TERMINAL_JOB_STATUSES - {JobStatus.SKIPPED}),
    JobStatus.ACTION_REQUIRED: frozenset({JobStatus.IN_PROGRESS}) | (TERMINAL_JOB_STATUSES - {JobStatus.SKIPPED}),
    JobStatus.SUCCESSFUL: frozenset(),
    JobStatus.FAILURE: frozenset(),
    JobStatus.CANCELLED: frozenset(),
    JobStatus.SKIPPED: frozenset(),
    JobStatus.INVALID_JOB_AGENT: frozenset(),
}


@dataclass(frozen=True)
class Deployment:
    id: str
    name: str
    resource_selector: Optional[Mapping[str, Any]] = None
    variables: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Environment:
    id: str
    name: str
    resource_selector: Optional[Mapping[str, Any]] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Resource:
    id: str
    name: str
    identifier: str
    kind: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)
    variables: Mapping[str, Any] = field(default_factory=dict)
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None

    @property
    def locked(self) -> bool:
        return self.locked_at is not None


@dataclass(frozen=True)
class ReleaseTarget:
    id: str
    resource_id: str
    environment_id: str
    deployment_id: str
    desired_version_id: Optional[str] = None


@dataclass(frozen=True)
class VersionDependency:
    deployment_id: str
    version_selector: Mapping[str, Any]


@dataclass(frozen=True)
class DeploymentVersion:
    id: str
    deployment_id: str
    name: str
    tag: str
    created_at: datetime
    status: str = VersionStatus.READY.value
    metadata: Mapping[str, Any] = field(default_factory=dict)
    config: Mapping[str, Any] = field(default_factory=dict)
    dependencies: Tuple[VersionDependency, ...] = ()

    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at, self.id)


@dataclass(frozen=True)
class ApprovalRecord:
    id: str
    version_id: str
    environment_id: str
    status: str
    created_at: datetime
    policy_id: Optional[str] = None
    approver_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class WorkTrigger:
    id: str
    release_target_id: str
    version_id: str
    cause: str
    status: str
    created_at: datetime
    variables: Mapping[str, Any] = field(default_factory=dict)
    job_id: Optional[str] = None


@dataclass(frozen=True)
class Job:
    id: str
    trigger_id: str
    release_target_id: str
    version_id: str
    status: str
    created_at: datetime
    updated_at: datetime
    external_id: Optional[str] = None
    message: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    variables: Mapping[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.status in {s.value for s in ACTIVE_JOB_STATUSES}
