"""Unit tests for webhook delivery."""

import json

import httpx
import pytest

from policyguard.observe.webhook import WebhookSink

URL = "https://hooks.example.com/policyguard"
PAYLOAD = {"rule_id": 7, "violation_count": 2, "idempotency_key": "7-abc"}


class Receiver:
    """Mock webhook endpoint answering with a scripted list of status codes."""

    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status)


def _sink(settings, receiver, **kwargs):
    kwargs.setdefault("sleep", lambda delay: None)
    return WebhookSink(URL, settings, transport=httpx.MockTransport(receiver), **kwargs)


class TestDelivery:
    """Tests for deliver()."""

    def test_delivers_payload(self, settings):
        """Test the payload is POSTed as JSON with an idempotency key."""
        receiver = Receiver(200)
        with _sink(settings, receiver) as sink:
            assert sink.deliver(PAYLOAD) is True

        request = receiver.requests[0]
        assert request.method == "POST"
        assert json.loads(request.content) == PAYLOAD
        assert request.headers["Idempotency-Key"] == "7-abc"
        assert request.headers["Content-Type"] == "application/json"
        assert sink.delivered == 1

    def test_retries_server_errors(self, settings):
        """Test 5xx responses are retried."""
        receiver = Receiver(500, 502, 200)
        with _sink(settings, receiver) as sink:
            assert sink.deliver(PAYLOAD) is True

        assert len(receiver.requests) == 3

    def test_drops_after_retries(self, settings):
        """Test exhausted retries drop the payload."""
        receiver = Receiver(503, 503, 503, 503)
        with _sink(settings, receiver) as sink:
            assert sink.deliver(PAYLOAD) is False

        assert len(receiver.requests) == 3
        assert sink.dropped == 1

    def test_client_error_not_retried(self, settings):
        """Test 4xx responses other than throttling are final."""
        receiver = Receiver(400)
        with _sink(settings, receiver) as sink:
            assert sink.deliver(PAYLOAD) is False

        assert len(receiver.requests) == 1

    def test_throttling_retried(self, settings):
        """Test 429 responses are retried."""
        receiver = Receiver(429, 200)
        with _sink(settings, receiver) as sink:
            assert sink.deliver(PAYLOAD) is True

    def test_connection_errors_retried(self, settings):
        """Test transport failures are retried."""
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(204)

        with _sink(settings, handler) as sink:
            assert sink.deliver(PAYLOAD) is True

    def test_submit_runs_in_background(self, settings):
        """Test submit returns a future resolving to the delivery result."""
        receiver = Receiver(200)
        with _sink(settings, receiver) as sink:
            future = sink.submit(PAYLOAD)

            assert future.result(timeout=5) is True


class TestBackoffAndHeaders:
    """Tests for retry delays, templates and authentication."""

    def test_backoff_is_capped(self, settings):
        """Test delays double and stop at webhook_backoff_max."""
        settings = settings.model_copy(update={"webhook_backoff_base": 2.0, "webhook_backoff_max": 5.0})
        sink = WebhookSink(URL, settings)

        assert [sink.backoff(n) for n in range(1, 5)] == [2.0, 4.0, 5.0, 5.0]
        sink.close()

    def test_delays_used_between_attempts(self, settings):
        """Test the sleep function receives the backoff delays."""
        delays = []
        settings = settings.model_copy(update={"webhook_backoff_base": 1.0})
        receiver = Receiver(500, 500, 500)
        with _sink(settings, receiver, sleep=delays.append) as sink:
            sink.deliver(PAYLOAD)

        assert delays == [1.0, 2.0]

    def test_payload_template(self, settings):
        """Test a template reshapes the request body."""
        receiver = Receiver(200)
        template = '{"text": "Rule {{ rule_id }} has {{ violation_count }} new violations"}'
        with _sink(settings, receiver, payload_template=template) as sink:
            sink.deliver(PAYLOAD)

        assert json.loads(receiver.requests[0].content) == {"text": "Rule 7 has 2 new violations"}

    def test_broken_template_sends_payload(self, settings):
        """Test a template that does not produce JSON falls back to the payload."""
        receiver = Receiver(200)
        with _sink(settings, receiver, payload_template="not json {{ rule_id }}") as sink:
            sink.deliver(PAYLOAD)

        assert json.loads(receiver.requests[0].content) == PAYLOAD

    @pytest.mark.parametrize(
        "auth_type,auth_value,expected",
        [
            ("bearer", "tok", "Bearer tok"),
            ("basic", "user:pw", "Basic dXNlcjpwdw=="),
        ],
    )
    def test_auth_headers(self, settings, auth_type, auth_value, expected):
        """Test configured authentication headers are sent."""
        settings = settings.model_copy(
            update={"webhook_auth_type": auth_type, "webhook_auth_value": auth_value}
        )
        receiver = Receiver(200)
        with _sink(settings, receiver, headers={"X-Source": "ci"}) as sink:
            sink.deliver(PAYLOAD)

        assert receiver.requests[0].headers["Authorization"] == expected
        assert receiver.requests[0].headers["X-Source"] == "ci"
