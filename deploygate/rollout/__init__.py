from deploygate.rollout.curves import ROLLOUT_CURVES, get_curve
from deploygate.rollout.scheduler import (
    RolloutInfo,
    current_position,
    environment_rollout,
    rollout_info,
    rollout_positions,
    rollout_start_time,
)

__all__ = [
    "ROLLOUT_CURVES",
    "RolloutInfo",
    "current_position",
    "environment_rollout",
    "get_curve",
    "rollout_info",
    "rollout_positions",
    "rollout_start_time",
]
