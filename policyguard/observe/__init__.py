"""Observe mode: continuous evaluation with webhook notification."""

from .daemon import ObserveDaemon, build_webhook_payloads, observe_delta
from .webhook import WebhookSink

__all__ = ["ObserveDaemon", "WebhookSink", "build_webhook_payloads", "observe_delta"]
