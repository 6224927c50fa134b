from __future__ import annotations

import logging
from typing import Callable, List, Sequence, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Stage = Tuple[str, Callable[[List[T]], List[T]]]


def run_stages(stages: Sequence[Stage], items: Sequence[T]) -> List[T]:
    """Feed items through each named stage in order, logging the narrowing."""
    current = list(items)
    for name, fn in stages:
        before = len(current)
        current = list(fn(current))
        logger.debug("stage %s kept %d of %d", name, len(current), before, extra={"stage": name})
        if not current:
            logger.debug("stage %s left nothing to do", name, extra={"stage": name})
            break
    return current
