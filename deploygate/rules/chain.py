from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from deploygate.errors import PolicyMisconfigurationError
from deploygate.models import DeploymentVersion
from deploygate.rules.base import RejectionReason, Rule, RuleContext, misconfigured, reject_all

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainResult:
    eligible: Tuple[DeploymentVersion, ...] = ()
    rejections: Mapping[str, Tuple[RejectionReason, ...]] = field(default_factory=dict)

    def is_eligible(self, version_id: str) -> bool:
        return any(v.id == version_id for v in self.eligible)

    def reasons_for(self, version_id: str) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.rejections.get(version_id, ())]


def evaluate_chain(
    rules: Sequence[Rule],
    ctx: RuleContext,
    candidates: Sequence[DeploymentVersion],
) -> ChainResult:
    """
    AND the rules in order over every candidate. Every rule sees every
    candidate so the reasons of all failing rules are kept.
    """
    collected: Dict[str, List[RejectionReason]] = {v.id: [] for v in candidates}
    for rule in rules:
        try:
            rejected = rule.filter(ctx, candidates)
        except PolicyMisconfigurationError as exc:
            # Safety net: a rule that let a misconfiguration escape still fails closed.
            logger.warning("rule %s raised misconfiguration: %s", rule.rule_type, exc)
            rejected = reject_all(candidates, misconfigured(rule.rule_type, exc, exc.policy_id))
        for version_id, reason in rejected.items():
            if version_id in collected:
                collected[version_id].append(reason)

    eligible = tuple(v for v in candidates if not collected[v.id])
    rejections = {vid: tuple(reasons) for vid, reasons in collected.items() if reasons}
    return ChainResult(eligible=eligible, rejections=rejections)
