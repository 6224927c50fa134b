from deploygate.rules.base import RejectionReason, Rule, RuleContext
from deploygate.rules.chain import ChainResult, evaluate_chain
from deploygate.rules.registry import (
    CREATION_CHAIN,
    DISPATCH_CHAIN,
    FORCE_CHAIN,
    creation_chain,
    dispatch_chain,
)

__all__ = [
    "CREATION_CHAIN",
    "ChainResult",
    "DISPATCH_CHAIN",
    "FORCE_CHAIN",
    "RejectionReason",
    "Rule",
    "RuleContext",
    "creation_chain",
    "dispatch_chain",
    "evaluate_chain",
]
