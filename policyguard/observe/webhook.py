"""Webhook delivery for observe mode.

Payloads are delivered on a single background thread so a slow receiver
never delays the next observation tick. Failed deliveries are retried with
bounded exponential backoff, then logged and dropped.
"""

import base64
import json
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

import httpx
from jinja2 import Template, TemplateError

from ..common.config import Settings, get_settings
from ..common.logger import get_logger

logger = get_logger("webhook")

# Client errors that are worth retrying
RETRYABLE_STATUS = {408, 425, 429}


class WebhookSink:
    """Delivers violation payloads to a webhook endpoint."""

    def __init__(
        self,
        url: str,
        settings: Optional[Settings] = None,
        payload_template: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize webhook sink.

        Args:
            url: Endpoint receiving POSTed payloads
            settings: Runtime settings (defaults to get_settings())
            payload_template: Optional jinja2 template rendering a JSON body
            headers: Extra request headers
            transport: Optional httpx transport, used to mock the network
            sleep: Delay function used between retries
        """
        self.url = url
        self.settings = settings or get_settings()
        self.payload_template = payload_template
        self.extra_headers = dict(headers or {})
        self.transport = transport
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="policyguard-webhook")
        self.delivered = 0
        self.dropped = 0

    def __enter__(self) -> "WebhookSink":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def submit(self, payload: Dict[str, Any]) -> Future:
        """Queue a payload for background delivery.

        Returns:
            Future resolving to True if the payload was delivered
        """
        return self._executor.submit(self.deliver, payload)

    def close(self, wait: bool = True) -> None:
        """Stop accepting payloads, optionally draining the queue."""
        self._executor.shutdown(wait=wait)

    def deliver(self, payload: Dict[str, Any]) -> bool:
        """Deliver a payload synchronously, retrying failures.

        Args:
            payload: Webhook payload

        Returns:
            True if delivered, False if dropped
        """
        body = self.render(payload)
        headers = self._headers()
        if payload.get("idempotency_key"):
            headers["Idempotency-Key"] = str(payload["idempotency_key"])

        attempts = 1 + max(0, self.settings.webhook_max_retries)
        with httpx.Client(timeout=self.settings.webhook_timeout, transport=self.transport) as client:
            for attempt in range(attempts):
                if attempt:
                    self._sleep(self.backoff(attempt))
                try:
                    response = client.post(self.url, json=body, headers=headers)
                    response.raise_for_status()
                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    logger.warning(f"Webhook returned HTTP {status} ({attempt + 1}/{attempts})")
                    if status < 500 and status not in RETRYABLE_STATUS:
                        break
                except httpx.HTTPError as e:
                    logger.warning(f"Webhook delivery failed ({attempt + 1}/{attempts}): {e}")
                else:
                    self.delivered += 1
                    logger.debug(f"Delivered webhook for rule {payload.get('rule_id')}")
                    return True

        self.dropped += 1
        logger.error(
            f"Dropping webhook for rule {payload.get('rule_id')} "
            f"(key {payload.get('idempotency_key')}) after {attempt + 1} attempts"
        )
        return False

    def backoff(self, attempt: int) -> float:
        """Delay before the given retry, capped at webhook_backoff_max."""
        delay = self.settings.webhook_backoff_base * (2 ** (attempt - 1))
        return min(delay, self.settings.webhook_backoff_max)

    def render(self, payload: Dict[str, Any]) -> Any:
        """Render the request body, falling back to the raw payload."""
        if not self.payload_template:
            return payload
        try:
            return json.loads(Template(self.payload_template).render(**payload))
        except (TemplateError, ValueError) as e:
            logger.warning(f"Failed to render webhook template: {e}")
            return payload

    def _headers(self) -> Dict[str, str]:
        headers = dict(self.extra_headers)
        headers["Content-Type"] = "application/json"

        auth_type = (self.settings.webhook_auth_type or "").lower()
        auth_value = self.settings.webhook_auth_value or ""
        if auth_type == "bearer":
            headers["Authorization"] = f"Bearer {auth_value}"
        elif auth_type == "basic":
            encoded = base64.b64encode(auth_value.encode()).decode()
            headers["Authorization"] = f"Basic {encoded}"
        return headers
