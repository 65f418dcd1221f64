"""
HTTP collaborators for the job queue.

WebhookPublisher: POSTs each topic publication to {base_url}/{topic}.
WebhookBroadcaster: POSTs status and metrics snapshots to a single URL.

Each call makes a single attempt. Failures are logged and reported as a
(success, error) tuple; the engine loops never sleep on delivery.
"""

import logging
from typing import Any, Optional

import httpx

from src.jobqueue.entities import Job, to_iso, utc_now
from src.jobqueue.errors import DeadLetterCondition
from src.jobqueue.interfaces import DEAD_LETTER_TOPIC

logger = logging.getLogger(__name__)

# Webhook configuration
WEBHOOK_TIMEOUT_SECONDS = 10
USER_AGENT = "JobQueueEngine/1.0"


def build_publish_payload(topic: str, job: Job, **extra: Any) -> dict:
    """
    Build the body of a topic publication.

    Args:
        topic: Topic name (jobs, jobs.dead-letter)
        job: Job being handed off
        **extra: Additional fields (e.g. the dead-letter condition)

    Returns:
        Dictionary payload for webhook POST
    """
    payload = {
        "topic": topic,
        "job": job.to_dict(),
        "timestamp": to_iso(utc_now()),
    }
    payload.update(extra)
    return payload


def post_json(
    url: str,
    payload: dict,
    headers: Optional[dict] = None,
    timeout: float = WEBHOOK_TIMEOUT_SECONDS,
) -> tuple[bool, Optional[str]]:
    """
    POST a JSON body once.

    Returns:
        Tuple of (success: bool, error_message: Optional[str])
    """
    request_headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
    }
    request_headers.update(headers or {})

    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(url, json=payload, headers=request_headers)

        if 200 <= response.status_code < 300:
            return True, None

        error = f"HTTP {response.status_code}: {response.text[:200]}"

    except httpx.TimeoutException:
        error = f"Timeout after {timeout}s"

    except httpx.RequestError as e:
        error = f"Request error: {str(e)}"

    logger.warning(f"Webhook POST to {url} failed: {error}")
    return False, error


class WebhookPublisher:
    """Publisher that hands jobs to downstream consumers over HTTP."""

    def __init__(self, base_url: str, timeout: float = WEBHOOK_TIMEOUT_SECONDS):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def topic_url(self, topic: str) -> str:
        return f"{self.base_url}/{topic}"

    def publish(self, topic: str, job: Job) -> None:
        extra = {}
        if topic == DEAD_LETTER_TOPIC:
            extra["condition"] = DeadLetterCondition.from_job(job).to_dict()

        payload = build_publish_payload(topic, job, **extra)
        success, _ = post_json(
            self.topic_url(topic),
            payload,
            headers={"X-Job-ID": job.job_id, "X-Job-Topic": topic},
            timeout=self.timeout,
        )
        if success:
            logger.debug(f"Published job {job.job_id} to '{topic}'")


class WebhookBroadcaster:
    """Broadcaster that pushes status and metrics snapshots to one URL."""

    def __init__(self, url: str, timeout: float = WEBHOOK_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    def broadcast(self, channel: str, payload: dict) -> None:
        post_json(
            self.url,
            {"channel": channel, "payload": payload},
            headers={"X-Channel": channel},
            timeout=self.timeout,
        )
