"""
Ordered rule chains.

Creation chain: cheap checks that decide whether a trigger is worth
persisting at all. Dispatch chain: the full re-validation run against live
state right before a job is emitted. Force dispatch keeps only locking;
force creation keeps only the version status check.
"""
from __future__ import annotations

from typing import Tuple

from deploygate.rules.approval import AnyApprovalFilter, RoleApprovalFilter, UserApprovalFilter
from deploygate.rules.base import Rule
from deploygate.rules.basic import LockingFilter, MisconfigurationFilter, VersionSelectorFilter, VersionStatusFilter
from deploygate.rules.dependency import DependencyFilter
from deploygate.rules.deny_window import DenyWindowFilter
from deploygate.rules.history import ConcurrencyFilter, SequencingFilter, TargetConcurrencyFilter
from deploygate.rules.rollout import RolloutFilter

CREATION_CHAIN: Tuple[Rule, ...] = (
    VersionStatusFilter(),
    VersionSelectorFilter(),
    SequencingFilter(),
)

DISPATCH_CHAIN: Tuple[Rule, ...] = (
    MisconfigurationFilter(),
    LockingFilter(),
    VersionSelectorFilter(),
    DenyWindowFilter(),
    AnyApprovalFilter(),
    UserApprovalFilter(),
    RoleApprovalFilter(),
    RolloutFilter(),
    DependencyFilter(),
    SequencingFilter(),
    ConcurrencyFilter(),
    TargetConcurrencyFilter(),
)

FORCE_CHAIN: Tuple[Rule, ...] = (LockingFilter(),)

FORCE_CREATION_CHAIN: Tuple[Rule, ...] = (VersionStatusFilter(),)


def creation_chain(force: bool = False) -> Tuple[Rule, ...]:
    return FORCE_CREATION_CHAIN if force else CREATION_CHAIN


def dispatch_chain(force: bool = False) -> Tuple[Rule, ...]:
    return FORCE_CHAIN if force else DISPATCH_CHAIN
