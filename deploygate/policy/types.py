from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class PolicyTarget(BaseModel):
    """Selector triple. A missing selector matches everything on that axis."""
    model_config = ConfigDict(extra="forbid")

    deployment_selector: Optional[Dict[str, Any]] = None
    environment_selector: Optional[Dict[str, Any]] = None
    resource_selector: Optional[Dict[str, Any]] = None


class DenyWindow(BaseModel):
    """
    Recurring window expressed as an RFC 5545 RRULE. Each occurrence starts
    at the rule's DTSTART-aligned instant and lasts ``duration_minutes``.
    ``allow`` windows invert the check: dispatch is only permitted inside.
    """
    model_config = ConfigDict(extra="forbid")

    rrule: str
    duration_minutes: int = Field(gt=0)
    timezone: str = "UTC"
    dtstart: Optional[str] = None
    window_type: Literal["deny", "allow"] = "deny"
    description: Optional[str] = None


class VersionSelectorRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    selector: Dict[str, Any]
    description: Optional[str] = None


class AnyApprovalRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    required_approvals: int = Field(default=1, ge=0)


class UserApprovalRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str


class RoleApprovalRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role_id: str
    required_approvals: int = Field(default=1, ge=1)


class RolloutRule(BaseModel):
    """
    ``time_scale_interval`` is in minutes, not seconds; offsets are converted
    to seconds when a rollout time is computed. ``rollout_type`` is resolved
    against the curve map at evaluation time so an unknown curve fails
    closed for this policy only.
    """
    model_config = ConfigDict(extra="forbid")

    rollout_type: str = "linear"
    time_scale_interval: float = Field(ge=0)
    positions_growth_factor: float = Field(default=1.0, gt=0)


class ConcurrencyRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit: int = Field(ge=1)


class DependencyRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    deployment_id: str
    version_selector: Dict[str, Any]


class Policy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    description: str = ""
    priority: int = 0
    enabled: bool = True
    targets: List[PolicyTarget] = Field(default_factory=list)

    deny_windows: List[DenyWindow] = Field(default_factory=list)
    version_selector: Optional[VersionSelectorRule] = None
    any_approval: Optional[AnyApprovalRule] = None
    user_approvals: List[UserApprovalRule] = Field(default_factory=list)
    role_approvals: List[RoleApprovalRule] = Field(default_factory=list)
    rollout: Optional[RolloutRule] = None
    concurrency: Optional[ConcurrencyRule] = None
    dependencies: List[DependencyRule] = Field(default_factory=list)


@dataclass(frozen=True)
class Sourced:
    """A merged policy value together with the policy that contributed it."""
    policy_id: str
    value: Any


@dataclass(frozen=True)
class Misconfiguration:
    policy_id: str
    message: str


@dataclass(frozen=True)
class EffectivePolicy:
    policy_ids: Tuple[str, ...] = ()
    deny_windows: Tuple[Sourced, ...] = ()
    version_selector: Optional[Sourced] = None
    any_approvals: Tuple[Sourced, ...] = ()
    user_approvals: Tuple[Sourced, ...] = ()
    role_approvals: Tuple[Sourced, ...] = ()
    rollout: Optional[Sourced] = None
    concurrency: Optional[Sourced] = None
    dependencies: Tuple[Sourced, ...] = ()
    misconfigurations: Tuple[Misconfiguration, ...] = ()
    provenance: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    policy_hash: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.policy_ids and not self.misconfigurations

    @property
    def requires_approval(self) -> bool:
        return bool(self.any_approvals or self.user_approvals or self.role_approvals)
