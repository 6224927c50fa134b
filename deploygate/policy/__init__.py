from deploygate.policy.merge import merge_policies
from deploygate.policy.types import (
    AnyApprovalRule,
    ConcurrencyRule,
    DenyWindow,
    DependencyRule,
    EffectivePolicy,
    Misconfiguration,
    Policy,
    PolicyTarget,
    RoleApprovalRule,
    RolloutRule,
    Sourced,
    UserApprovalRule,
    VersionSelectorRule,
)

__all__ = [
    "AnyApprovalRule",
    "ConcurrencyRule",
    "DenyWindow",
    "DependencyRule",
    "EffectivePolicy",
    "Misconfiguration",
    "Policy",
    "PolicyTarget",
    "RoleApprovalRule",
    "RolloutRule",
    "Sourced",
    "UserApprovalRule",
    "VersionSelectorRule",
    "merge_policies",
]
