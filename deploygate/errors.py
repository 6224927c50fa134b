from __future__ import annotations

from typing import Any, Dict, Optional


class NotFoundError(LookupError):
    """A referenced release target, version, policy or job does not exist."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class PreconditionError(ValueError):
    """
    User-actionable refusal: locked resource, nothing to redeploy,
    invalid status transition.
    """

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = dict(details or {})


class TransientDispatchError(RuntimeError):
    """Storage conflict during the atomic dispatch step; safe to retry."""


class PolicyMisconfigurationError(ValueError):
    """A malformed selector, window or rollout curve inside one policy."""

    def __init__(self, message: str, policy_id: Optional[str] = None):
        super().__init__(message)
        self.policy_id = policy_id
