from deploygate.dispatch.create import create_triggers
from deploygate.dispatch.dispatch import dispatch_triggers, pending_trigger_ids
from deploygate.dispatch.jobs import update_job_status
from deploygate.dispatch.types import DispatchOutcome, DispatchReport, OutcomeStatus, TriggerScope

__all__ = [
    "DispatchOutcome",
    "DispatchReport",
    "OutcomeStatus",
    "TriggerScope",
    "create_triggers",
    "dispatch_triggers",
    "pending_trigger_ids",
    "update_job_status",
]
