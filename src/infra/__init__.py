"""
Infrastructure module - logging and HTTP collaborators.
"""

from .logging_config import setup_logging

from .webhook import (
    WebhookBroadcaster,
    WebhookPublisher,
    build_publish_payload,
    post_json,
)

__all__ = [
    # logging
    "setup_logging",
    # webhook
    "WebhookBroadcaster",
    "WebhookPublisher",
    "build_publish_payload",
    "post_json",
]
