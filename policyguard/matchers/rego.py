"""Rego matcher for assure-rego rules.

Evaluates the rule's query with the external opa binary. The input
document is the parsed artifact or, when the rule carries an API
descriptor, the endpoint's response.
"""

import json
import subprocess
import tempfile
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..common.config import Settings, get_settings
from ..common.logger import get_logger
from ..engine.walker import Artifact
from ..errors import MatchError
from ..policy.model import Rule, RuleType, Violation, ViolationKind
from .api import ApiAssureMatcher
from .base import ArtifactSource, Matcher, make_violation

logger = get_logger("rego_matcher")


def load_input(artifact: Artifact) -> Any:
    """Build the Rego input document for an artifact.

    JSON, YAML and TOML files are parsed; any other file becomes
    {"path", "content", "lines"}.

    Raises:
        WalkError: If the artifact cannot be read
        MatchError: If a structured file cannot be parsed
    """
    text = artifact.read_text()
    suffix = artifact.path.suffix.lower()
    try:
        if suffix == ".json":
            return json.loads(text)
        if suffix in (".yaml", ".yml"):
            return yaml.safe_load(text)
        if suffix == ".toml":
            return tomllib.loads(text)
    except (ValueError, yaml.YAMLError) as e:
        raise MatchError(f"Cannot parse {artifact.relpath}: {e}") from e
    return {"path": artifact.relpath, "content": text, "lines": text.splitlines()}


def response_input(response) -> Any:
    """Build the Rego input document for an API response."""
    try:
        return response.json()
    except ValueError:
        text = response.text
        return {"status": response.status_code, "content": text, "lines": text.splitlines()}


def is_satisfied(value: Any) -> bool:
    """Whether a query result holds: false, null and empty results do not."""
    if value is None or value is False:
        return False
    if isinstance(value, (list, dict, str)) and not value:
        return False
    return True


class PolicyLangAssureMatcher(Matcher):
    """Evaluates Rego queries with the opa binary."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        api_matcher: Optional[ApiAssureMatcher] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize matcher.

        Args:
            settings: Runtime settings (defaults to get_settings())
            api_matcher: Matcher used to fetch API input documents
            timeout: opa timeout in seconds (defaults to the rule timeout)
        """
        self.settings = settings or get_settings()
        self.api_matcher = api_matcher or ApiAssureMatcher(self.settings)
        self.timeout = timeout or self.settings.rule_timeout

    @property
    def name(self) -> str:
        return "assure-rego"

    @property
    def rule_types(self) -> Tuple[RuleType, ...]:
        return (RuleType.ASSURE_REGO,)

    def file_patterns(self, rule: Rule) -> Optional[List[str]]:
        pattern = rule.rego.file_pattern or rule.file_pattern
        return [pattern] if pattern else None

    def evaluate(self, rule: Rule, source: ArtifactSource) -> List[Violation]:
        if rule.api is None:
            return super().evaluate(rule, source)

        context = self.api_matcher.build_context(rule, environment=source.environment)
        try:
            request, response = self.api_matcher.fetch(rule, context)
            logical = request.label
            result = self.query(rule, response_input(response))
        except MatchError as e:
            logger.warning(f"Rule {rule.id}: cannot evaluate {rule.api.endpoint}: {e}")
            return [
                make_violation(
                    rule,
                    logical=rule.api.endpoint,
                    content=str(e),
                    kind=ViolationKind.EVALUATION_ERROR,
                    detail="assure-rego evaluation failed",
                )
            ]
        return self._verdict(rule, result, logical=logical)

    def evaluate_artifact(self, rule: Rule, artifact: Artifact) -> List[Violation]:
        result = self.query(rule, load_input(artifact))
        return self._verdict(rule, result, artifact=artifact)

    def query(self, rule: Rule, input_data: Any) -> Any:
        """Evaluate the rule's query against an input document.

        Returns:
            Value of the first expression, or None if undefined

        Raises:
            MatchError: If opa is missing, fails or produces unreadable output
        """
        rego = rule.rego
        with tempfile.TemporaryDirectory(prefix="policyguard-") as tmp:
            policy_path = Path(tmp) / "policy.rego"
            data_path = Path(tmp) / "data.json"
            policy_path.write_text(rego.policy or "")
            data_path.write_text(json.dumps(rego.data, default=str))

            command = [
                self.settings.opa_binary,
                "eval",
                "--format",
                "json",
                "--data",
                str(policy_path),
                "--data",
                str(data_path),
                "--stdin-input",
                rego.query,
            ]
            try:
                result = subprocess.run(
                    command,
                    input=json.dumps(input_data, default=str).encode(),
                    capture_output=True,
                    timeout=self.timeout,
                    check=False,
                )
            except FileNotFoundError as e:
                raise MatchError(f"opa binary not found: {self.settings.opa_binary}") from e
            except subprocess.TimeoutExpired as e:
                raise MatchError(f"opa eval timed out after {self.timeout:g} seconds") from e

        if result.returncode != 0:
            error_msg = result.stderr.decode(errors="replace").strip()
            raise MatchError(f"opa eval failed ({result.returncode}): {error_msg}")

        return self._parse_output(result.stdout.decode(errors="replace"))

    def _parse_output(self, output: str) -> Any:
        try:
            document: Dict[str, Any] = json.loads(output)
        except ValueError as e:
            raise MatchError(f"Unreadable opa output: {e}") from e

        results = document.get("result") or []
        if not results:
            return None
        try:
            return results[0]["expressions"][0]["value"]
        except (KeyError, IndexError, TypeError) as e:
            raise MatchError(f"Unexpected opa output: {output[:200]}") from e

    def _verdict(
        self,
        rule: Rule,
        value: Any,
        artifact: Optional[Artifact] = None,
        logical: str = "",
    ) -> List[Violation]:
        if is_satisfied(value):
            return []
        return [
            make_violation(
                rule,
                artifact,
                logical=logical or rule.rego.query,
                content=json.dumps(value, default=str),
                detail=f"Query {rule.rego.query} did not hold",
            )
        ]
