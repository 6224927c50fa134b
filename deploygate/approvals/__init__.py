from deploygate.approvals.gate import (
    ApprovalGateResult,
    RequirementResult,
    RoleChecker,
    StaticRoleChecker,
    evaluate_approvals,
)
from deploygate.approvals.store import create_placeholder_records, record_approval

__all__ = [
    "ApprovalGateResult",
    "RequirementResult",
    "RoleChecker",
    "StaticRoleChecker",
    "create_placeholder_records",
    "evaluate_approvals",
    "record_approval",
]
