from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import ClassVar, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.rrule import rrulestr

from deploygate.errors import PolicyMisconfigurationError
from deploygate.models import DeploymentVersion
from deploygate.policy.types import DenyWindow, Sourced
from deploygate.rules.base import RejectionReason, Rejections, RuleContext, misconfigured, reject_all
from deploygate.utils.canonical import format_ts

# A Monday, so weekly rules without an explicit DTSTART stay week-aligned.
DEFAULT_DTSTART = datetime(2000, 1, 3)
LOOKBACK = timedelta(weeks=1)

_UNIT_SECONDS = {"WEEKLY": 604800, "DAILY": 86400, "HOURLY": 3600, "MINUTELY": 60, "SECONDLY": 1}
_WEEK_SECONDS = 604800


def _zone(window: DenyWindow) -> ZoneInfo:
    try:
        return ZoneInfo(window.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise PolicyMisconfigurationError(f"unknown timezone {window.timezone!r}") from exc


def _week_periodic(rrule_text: str) -> bool:
    """True when the rule repeats exactly every week, so DTSTART can move by whole weeks."""
    parts = {}
    for line in rrule_text.strip().splitlines():
        line = line.strip()
        if line.upper().startswith("RRULE:"):
            line = line[len("RRULE:"):]
        elif ":" in line:
            continue
        for item in line.split(";"):
            key, _, value = item.partition("=")
            parts[key.strip().upper()] = value.strip().upper()
    if "COUNT" in parts:
        return False
    unit = _UNIT_SECONDS.get(parts.get("FREQ", ""))
    try:
        interval = int(parts.get("INTERVAL", "1"))
    except ValueError:
        return False
    if unit is None or interval <= 0:
        return False
    return _WEEK_SECONDS % (unit * interval) == 0


def _fast_forward(dtstart: datetime, floor: datetime) -> datetime:
    # Wall-clock arithmetic, matching how the recurrence itself is expanded.
    naive_start = dtstart.replace(tzinfo=None)
    naive_floor = floor.replace(tzinfo=None)
    weeks = (naive_floor - naive_start) // LOOKBACK
    if weeks <= 0:
        return dtstart
    return (naive_start + weeks * LOOKBACK).replace(tzinfo=dtstart.tzinfo)


def current_occurrence(window: DenyWindow, now: datetime) -> Optional[Tuple[datetime, datetime]]:
    """
    The (start, end) of the occurrence covering ``now``, or None. Occurrences
    end in start order, so only the latest start at or before now can cover it.

    Rules that repeat weekly or faster are expanded from the last whole week
    before ``now - duration - LOOKBACK`` rather than from DTSTART, which keeps
    hourly and minutely windows cheap years after their start.
    """
    tz = _zone(window)
    if window.dtstart:
        text = window.dtstart.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise PolicyMisconfigurationError(f"invalid window dtstart {window.dtstart!r}") from exc
        # Naive DTSTART is wall-clock time in the window's own timezone.
        dtstart = parsed.replace(tzinfo=tz) if parsed.tzinfo is None else parsed.astimezone(tz)
    else:
        dtstart = DEFAULT_DTSTART.replace(tzinfo=tz)

    local_now = now.astimezone(tz)
    duration = timedelta(minutes=window.duration_minutes)
    if _week_periodic(window.rrule):
        dtstart = _fast_forward(dtstart, local_now - duration - LOOKBACK)
    try:
        rule = rrulestr(window.rrule, dtstart=dtstart)
    except (ValueError, TypeError) as exc:
        raise PolicyMisconfigurationError(f"invalid RRULE {window.rrule!r}: {exc}") from exc

    start = rule.before(local_now, inc=True)
    if start is None:
        return None
    end = start + duration
    if start <= local_now < end:
        return start, end
    return None


@dataclass(frozen=True)
class DenyWindowFilter:
    rule_type: ClassVar[str] = "deny_window"

    def _evaluate(self, ctx: RuleContext) -> Optional[RejectionReason]:
        deny: List[Sourced] = [w for w in ctx.policy.deny_windows if w.value.window_type == "deny"]
        allow: List[Sourced] = [w for w in ctx.policy.deny_windows if w.value.window_type == "allow"]

        for entry in deny:
            try:
                hit = current_occurrence(entry.value, ctx.now)
            except PolicyMisconfigurationError as exc:
                return misconfigured(self.rule_type, exc, entry.policy_id)
            if hit is not None:
                start, end = hit
                return RejectionReason(
                    rule_type=self.rule_type,
                    code="DENY_WINDOW_ACTIVE",
                    message=f"Deployments are blocked until {format_ts(end)}.",
                    details={
                        "rrule": entry.value.rrule,
                        "timezone": entry.value.timezone,
                        "window_start": format_ts(start),
                        "window_end": format_ts(end),
                        "description": entry.value.description,
                    },
                    policy_id=entry.policy_id,
                )

        if not allow:
            return None
        for entry in allow:
            try:
                if current_occurrence(entry.value, ctx.now) is not None:
                    return None
            except PolicyMisconfigurationError as exc:
                return misconfigured(self.rule_type, exc, entry.policy_id)
        return RejectionReason(
            rule_type=self.rule_type,
            code="OUTSIDE_ALLOW_WINDOW",
            message="Deployments are only allowed inside the configured windows.",
            details={"windows": [{"rrule": w.value.rrule, "timezone": w.value.timezone} for w in allow]},
            policy_id=allow[0].policy_id,
        )

    def filter(self, ctx: RuleContext, candidates: Sequence[DeploymentVersion]) -> Rejections:
        if not ctx.policy.deny_windows or not candidates:
            return {}
        reason = self._evaluate(ctx)
        if reason is None:
            return {}
        return reject_all(candidates, reason)
