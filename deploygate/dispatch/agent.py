from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from deploygate import config
from deploygate.models import Job
from deploygate.utils.canonical import format_ts

logger = logging.getLogger(__name__)


def job_payload(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "trigger_id": job.trigger_id,
        "release_target_id": job.release_target_id,
        "version_id": job.version_id,
        "status": job.status,
        "variables": dict(job.variables),
        "metadata": dict(job.metadata),
        "created_at": format_ts(job.created_at),
    }


class JobAgentChannel(ABC):
    """
    Outbound notifications to whatever executes jobs. Delivery is best
    effort: engine state is already committed when these are called.
    """

    name = "abstract"

    @abstractmethod
    def job_created(self, job: Job) -> None:
        raise NotImplementedError

    @abstractmethod
    def job_cancelled(self, job_id: str, reason: str) -> None:
        raise NotImplementedError


class LoggingJobAgentChannel(JobAgentChannel):
    name = "logging"

    def job_created(self, job: Job) -> None:
        logger.info(
            "job ready for agent",
            extra={"job_id": job.id, "release_target_id": job.release_target_id, "version_id": job.version_id},
        )

    def job_cancelled(self, job_id: str, reason: str) -> None:
        logger.info("job cancelled: %s", reason, extra={"job_id": job_id})


class WebhookJobAgentChannel(JobAgentChannel):
    name = "webhook"

    def __init__(self, url: str, timeout_seconds: Optional[float] = None):
        self.url = url
        self.timeout_seconds = timeout_seconds or config.JOB_AGENT_TIMEOUT_SECONDS

    def _post(self, event: str, body: Dict[str, Any], job_id: str) -> None:
        try:
            response = requests.post(
                self.url,
                json={"event": event, **body},
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.warning("job agent webhook failed event=%s error=%s", event, exc, extra={"job_id": job_id})
            return
        if response.status_code not in {200, 201, 202, 204}:
            logger.warning(
                "job agent webhook rejected event=%s status=%s body=%s",
                event,
                response.status_code,
                response.text[:200],
                extra={"job_id": job_id},
            )

    def job_created(self, job: Job) -> None:
        self._post("job.created", {"job": job_payload(job)}, job.id)

    def job_cancelled(self, job_id: str, reason: str) -> None:
        self._post("job.cancelled", {"job_id": job_id, "reason": reason}, job_id)


def get_job_agent_channel() -> JobAgentChannel:
    if config.JOB_AGENT_WEBHOOK_URL:
        return WebhookJobAgentChannel(config.JOB_AGENT_WEBHOOK_URL)
    return LoggingJobAgentChannel()
