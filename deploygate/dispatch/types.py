from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from deploygate.models import ReleaseTarget
from deploygate.storage import repository


@dataclass(frozen=True)
class TriggerScope:
    """Which release targets an event touches. Unset fields do not narrow."""
    environment_id: Optional[str] = None
    deployment_id: Optional[str] = None
    resource_id: Optional[str] = None
    version_id: Optional[str] = None
    release_target_ids: Optional[Tuple[str, ...]] = None

    def release_targets(self) -> List[ReleaseTarget]:
        deployment_id = self.deployment_id
        if deployment_id is None and self.version_id is not None:
            deployment_id = repository.get_version(self.version_id).deployment_id
        return repository.list_release_targets(
            environment_id=self.environment_id,
            deployment_id=deployment_id,
            resource_id=self.resource_id,
            ids=self.release_target_ids,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment_id": self.environment_id,
            "deployment_id": self.deployment_id,
            "resource_id": self.resource_id,
            "version_id": self.version_id,
            "release_target_ids": list(self.release_target_ids) if self.release_target_ids is not None else None,
        }


class OutcomeStatus(str, Enum):
    DISPATCHED = "dispatched"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    RETRY_EXHAUSTED = "retry_exhausted"


@dataclass(frozen=True)
class DispatchOutcome:
    trigger_id: str
    status: str
    release_target_id: Optional[str] = None
    job_id: Optional[str] = None
    cancelled_job_ids: Tuple[str, ...] = ()
    reasons: Tuple[Dict[str, Any], ...] = ()
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger_id": self.trigger_id,
            "release_target_id": self.release_target_id,
            "status": self.status,
            "job_id": self.job_id,
            "cancelled_job_ids": list(self.cancelled_job_ids),
            "reasons": [dict(r) for r in self.reasons],
            "note": self.note,
        }


@dataclass(frozen=True)
class DispatchReport:
    outcomes: Tuple[DispatchOutcome, ...] = field(default_factory=tuple)

    def _with_status(self, status: OutcomeStatus) -> List[DispatchOutcome]:
        return [o for o in self.outcomes if o.status == status.value]

    @property
    def dispatched(self) -> List[DispatchOutcome]:
        return self._with_status(OutcomeStatus.DISPATCHED)

    @property
    def rejected(self) -> List[DispatchOutcome]:
        return self._with_status(OutcomeStatus.REJECTED)

    @property
    def job_ids(self) -> List[str]:
        return [o.job_id for o in self.dispatched if o.job_id]

    def to_dict(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for outcome in self.outcomes:
            counts[outcome.status] = counts.get(outcome.status, 0) + 1
        return {"counts": counts, "outcomes": [o.to_dict() for o in self.outcomes]}
