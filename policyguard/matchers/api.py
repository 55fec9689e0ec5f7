"""Remote endpoint matcher for assure-api rules.

Issues one HTTP request per bound artifact (rules with a file pattern) or
one per rule. Endpoint and body are jinja2 templates. Credentials are read
from environment variables named by the rule, never from the policy itself.
"""

import json
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from jinja2 import StrictUndefined, Template, TemplateError

from ..common.config import Settings, get_settings
from ..common.logger import get_logger
from ..engine.walker import Artifact
from ..errors import MatchError, NetworkError
from ..policy.model import AuthMode, Rule, RuleType, Violation, ViolationKind
from .base import ArtifactSource, Matcher, make_violation

logger = get_logger("api_matcher")

# Longest response body kept in a trace
MAX_TRACE_BODY = 65536

# Upper bound for a single retry delay in seconds
MAX_BACKOFF = 30.0

REDACTED = "***"

# Response headers that change between identical requests
VOLATILE_HEADERS = frozenset(
    {"date", "age", "expires", "last-modified", "set-cookie", "etag", "server-timing", "cf-ray", "via"}
)
VOLATILE_HEADER_SUFFIXES = ("request-id", "requestid", "trace-id", "traceid", "correlation-id")


@dataclass
class ApiRequest:
    """A rendered outbound request."""

    method: str
    url: str
    body: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    auth: Optional[Tuple[str, str]] = None
    insecure: bool = False

    @property
    def label(self) -> str:
        return f"{self.method} {self.url}"

    def to_trace(self) -> Dict[str, Any]:
        headers = {
            key: (REDACTED if key.lower() == "authorization" else value)
            for key, value in self.headers.items()
        }
        return {
            "method": self.method,
            "url": self.url,
            "headers": headers,
            "body": self.body,
            "basic_auth": self.auth is not None,
        }


def response_trace(response: httpx.Response) -> Dict[str, Any]:
    body = response.text
    if len(body) > MAX_TRACE_BODY:
        body = body[:MAX_TRACE_BODY] + "..."
    return {
        "status_code": response.status_code,
        "reason": response.reason_phrase,
        "headers": {
            key: value
            for key, value in response.headers.items()
            if not is_volatile_header(key)
        },
        "body": body,
    }


def is_volatile_header(name: str) -> bool:
    name = name.lower()
    return name in VOLATILE_HEADERS or name.endswith(VOLATILE_HEADER_SUFFIXES)


def render_template(text: str, context: Dict[str, Any]) -> str:
    """Render an endpoint or body template.

    Raises:
        MatchError: If the template is invalid or references an unknown name
    """
    try:
        return Template(text, undefined=StrictUndefined).render(**context)
    except TemplateError as e:
        raise MatchError(f"Cannot render request template: {e}") from e


class ApiAssureMatcher(Matcher):
    """Checks that remote endpoints answer as a rule expects."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize matcher.

        Args:
            settings: Runtime settings (defaults to get_settings())
            transport: Optional httpx transport, used to mock the network
            sleep: Delay function used between retries
        """
        self.settings = settings or get_settings()
        self.transport = transport
        self._sleep = sleep

    @property
    def name(self) -> str:
        return "assure-api"

    @property
    def rule_types(self) -> Tuple[RuleType, ...]:
        return (RuleType.ASSURE_API,)

    def evaluate(self, rule: Rule, source: ArtifactSource) -> List[Violation]:
        if rule.file_pattern:
            return super().evaluate(rule, source)
        return self.check(rule, self.build_context(rule, environment=source.environment))

    def evaluate_artifact(self, rule: Rule, artifact: Artifact) -> List[Violation]:
        return self.check(rule, self.build_context(rule, artifact), artifact)

    def build_context(
        self,
        rule: Rule,
        artifact: Optional[Artifact] = None,
        environment: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build the template context for a request.

        Raises:
            WalkError: If the bound artifact cannot be read
        """
        context: Dict[str, Any] = {
            "env": self.template_env(),
            "environment": environment or self.settings.current_environment or "",
            "path": "",
            "name": "",
            "sha256": "",
            "captures": {},
            "groups": [],
        }
        if artifact is None:
            return context

        context.update(path=artifact.relpath, name=artifact.name, sha256=artifact.sha256())
        if rule.api.capture:
            match = re.search(rule.api.capture, artifact.read_text(), re.IGNORECASE | re.MULTILINE)
            if match:
                context["captures"] = match.groupdict()
                context["groups"] = list(match.groups())
        return context

    def check(
        self,
        rule: Rule,
        context: Dict[str, Any],
        artifact: Optional[Artifact] = None,
    ) -> List[Violation]:
        """Issue the rule's request and compare the response.

        Args:
            rule: assure-api rule
            context: Template context from build_context()
            artifact: Artifact the request is bound to, if any

        Returns:
            Violations for the exchange
        """
        try:
            request = self.prepare(rule, context)
        except MatchError as e:
            return [self._error(rule, artifact, "", str(e), "Cannot prepare request")]

        trace: Optional[Dict[str, Any]] = {"request": request.to_trace()} if rule.api.trace else None

        try:
            response = self.send(request)
        except NetworkError as e:
            return [self._error(rule, artifact, request.label, str(e), "Request failed", trace)]

        if trace is not None:
            trace["response"] = response_trace(response)

        violations = []
        if not response.is_success:
            violations.append(
                make_violation(
                    rule,
                    artifact,
                    logical=request.label,
                    content=f"HTTP {response.status_code} {response.reason_phrase}".strip(),
                    detail="Endpoint returned a non-success status",
                    trace=trace,
                )
            )

        body = response.text
        for pattern in rule.patterns:
            if not re.search(pattern, body, re.IGNORECASE | re.MULTILINE):
                violations.append(
                    make_violation(
                        rule,
                        artifact,
                        logical=request.label,
                        content=pattern,
                        detail=f"Response does not match pattern: {pattern}",
                        trace=trace,
                    )
                )
        return violations

    def prepare(self, rule: Rule, context: Dict[str, Any]) -> ApiRequest:
        """Render the request and resolve credentials.

        Raises:
            MatchError: If a template fails or a credential is missing
        """
        api = rule.api
        request = ApiRequest(
            method=api.method,
            url=render_template(api.endpoint, context),
            insecure=api.insecure,
        )

        if api.body is not None:
            request.body = render_template(api.body, context)
            try:
                json.loads(request.body)
                request.headers["Content-Type"] = "application/json"
            except ValueError:
                request.headers["Content-Type"] = "text/plain"

        if api.auth == AuthMode.BASIC:
            credential = self._credential(api.auth_basic)
            user, sep, password = credential.partition(":")
            if not sep:
                raise MatchError(f"Credential {self._variable(api.auth_basic)} must be user:password")
            request.auth = (user, password)
        elif api.auth == AuthMode.TOKEN:
            request.headers["Authorization"] = f"Bearer {self._credential(api.auth_token)}"

        return request

    def send(self, request: ApiRequest) -> httpx.Response:
        """Send a request, retrying network errors with exponential backoff.

        Raises:
            NetworkError: On timeout, or when every attempt failed
        """
        attempts = 1 + max(0, self.settings.api_max_retries)
        last_error: Optional[Exception] = None

        with httpx.Client(
            verify=not request.insecure,
            timeout=self.settings.api_timeout,
            transport=self.transport,
            follow_redirects=True,
        ) as client:
            for attempt in range(attempts):
                if attempt:
                    delay = min(self.settings.api_backoff_base * (2 ** (attempt - 1)), MAX_BACKOFF)
                    logger.debug(f"Retrying {request.label} in {delay:g}s")
                    self._sleep(delay)
                try:
                    return client.request(
                        request.method,
                        request.url,
                        content=request.body,
                        headers=request.headers,
                        auth=request.auth,
                    )
                except httpx.TimeoutException as e:
                    logger.warning(f"Request timed out: {request.label}")
                    raise NetworkError(f"Request timed out: {e}", attempts=attempt + 1) from e
                except httpx.TransportError as e:
                    logger.warning(f"Request failed ({attempt + 1}/{attempts}): {request.label}: {e}")
                    last_error = e

        raise NetworkError(
            f"Request failed after {attempts} attempts: {last_error}", attempts=attempts
        ) from last_error

    def fetch(self, rule: Rule, context: Dict[str, Any]) -> Tuple[ApiRequest, httpx.Response]:
        """Prepare and send a rule's request, for matchers consuming the response.

        Raises:
            MatchError: If the request cannot be prepared or sent
        """
        request = self.prepare(rule, context)
        try:
            return request, self.send(request)
        except NetworkError as e:
            raise MatchError(str(e)) from e

    def template_env(self) -> Dict[str, str]:
        """Environment variables visible to templates, keyed without the credential prefix."""
        prefix = self.settings.credential_prefix
        return {
            key[len(prefix):]: value
            for key, value in os.environ.items()
            if key.startswith(prefix) and len(key) > len(prefix)
        }

    def _variable(self, name: str) -> str:
        return f"{self.settings.credential_prefix}{name}"

    def _credential(self, name: str) -> str:
        variable = self._variable(name)
        value = os.environ.get(variable)
        if not value:
            raise MatchError(f"Credential variable {variable} is not set")
        return value

    def _error(
        self,
        rule: Rule,
        artifact: Optional[Artifact],
        logical: str,
        message: str,
        detail: str,
        trace: Optional[Dict[str, Any]] = None,
    ) -> Violation:
        logger.warning(f"Rule {rule.id}: {detail}: {message}")
        return make_violation(
            rule,
            artifact,
            logical=logical or rule.api.endpoint,
            content=message,
            kind=ViolationKind.EVALUATION_ERROR,
            detail=detail,
            trace=trace,
        )
