"""Typed representation of a loaded policy document.

Pure data: parsing and invariant checks live in the loader, evaluation
lives in the matchers and the engine.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple


class RuleType(str, Enum):
    """Rule types, each routed to a matcher backend."""

    SCAN = "scan"                       # Presence of a pattern is the failure
    ASSURE_REGEX = "assure-regex"       # Absence of a pattern is the failure
    ASSURE_FILETYPE = "assure-filetype" # Structured file must satisfy a schema
    ASSURE_API = "assure-api"           # Remote endpoint must answer as expected
    ASSURE_REGO = "assure-rego"         # Rego query must hold
    COLLECT = "collect"                 # Informational findings only
    RUNTIME = "runtime"                 # Evaluated repeatedly by observe mode


class Confidence(str, Enum):
    """Certainty metadata carried through to verdicts."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return ["low", "medium", "high"].index(self.value)


class AuthMode(str, Enum):
    """Authentication modes for assure-api requests."""

    NONE = "none"
    BASIC = "basic"
    TOKEN = "token"


class StructureFormat(str, Enum):
    """Structured formats understood by assure-filetype rules."""

    YAML = "yaml"
    JSON = "json"
    TOML = "toml"
    INI = "ini"


@dataclass(frozen=True)
class StructurePayload:
    """File pattern and shape schema for one structured format."""

    format: StructureFormat
    file_pattern: str
    schema: Dict[str, Any]


@dataclass(frozen=True)
class ApiDescriptor:
    """Outbound request issued by an assure-api rule."""

    endpoint: str
    method: str = "GET"
    body: Optional[str] = None
    auth: AuthMode = AuthMode.NONE
    auth_basic: Optional[str] = None  # env var suffix holding user:password
    auth_token: Optional[str] = None  # env var suffix holding a bearer token
    insecure: bool = False
    trace: bool = False
    capture: Optional[str] = None  # regex whose named groups feed the template


@dataclass(frozen=True)
class RegoDescriptor:
    """Embedded Rego policy evaluated by an assure-rego rule."""

    query: str
    data: Any
    policy_file: Optional[str] = None
    policy: Optional[str] = None
    file_pattern: Optional[str] = None


@dataclass(frozen=True)
class Rule:
    """A single named check."""

    id: int
    name: str
    type: RuleType
    description: str = ""
    solution: str = ""
    error_message: str = ""
    environment: str = "all"
    enforcement: bool = True
    fatal: bool = False
    tags: FrozenSet[str] = frozenset()
    impact: str = ""
    confidence: Confidence = Confidence.MEDIUM
    patterns: Tuple[str, ...] = ()
    file_pattern: Optional[str] = None
    structure: Optional[StructurePayload] = None
    api: Optional[ApiDescriptor] = None
    rego: Optional[RegoDescriptor] = None

    @property
    def is_informational(self) -> bool:
        """Collect rules never escalate severity."""
        return self.type == RuleType.COLLECT

    def applies_to(self, environment: Optional[str]) -> bool:
        """Check whether the rule is enabled in an execution environment.

        Args:
            environment: Current environment tag, or None if unknown

        Returns:
            True if the rule targets all environments or lists this one
        """
        targets = [t.strip().lower() for t in self.environment.split(",") if t.strip()]
        if not targets or "all" in targets:
            return True
        if not environment:
            return False
        return environment.strip().lower() in targets

    def has_any_tag(self, tags) -> bool:
        wanted = {t.strip().lower() for t in tags if t.strip()}
        return bool(wanted & {t.lower() for t in self.tags})

    def has_all_tags(self, tags) -> bool:
        wanted = {t.strip().lower() for t in tags if t.strip()}
        return wanted <= {t.lower() for t in self.tags}


@dataclass(frozen=True)
class PolicyDocument:
    """A loaded rule set and its report templates."""

    rules: Tuple[Rule, ...]
    banner: str = ""
    exit_critical: str = "Critical policy violations found"
    exit_warning: str = "Policy violations found"
    exit_clean: str = "All policies passed"
    exceptions: FrozenSet[int] = frozenset()
    exception_message: str = "Rule waived by policy exception"
    exclude: Tuple[str, ...] = ()
    source: Optional[str] = None

    def get_rule(self, rule_id: int) -> Optional[Rule]:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    @property
    def rule_ids(self) -> Tuple[int, ...]:
        return tuple(rule.id for rule in self.rules)


@dataclass(frozen=True)
class Location:
    """Where a violation was found.

    A file location carries the root-relative path plus optional line and
    byte offset; non-file sources (API endpoints, key paths inside a
    structured document) use the logical component.
    """

    path: str = ""
    line: Optional[int] = None
    offset: Optional[int] = None
    logical: str = ""

    def sort_key(self) -> Tuple[str, int, int, str]:
        return (
            self.path,
            self.line if self.line is not None else -1,
            self.offset if self.offset is not None else -1,
            self.logical,
        )

    def __str__(self) -> str:
        text = self.path
        if self.line is not None:
            text = f"{text}:{self.line}"
        if self.logical:
            text = f"{text}#{self.logical}" if text else self.logical
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "line": self.line,
            "offset": self.offset,
            "logical": self.logical,
        }


class ViolationKind(str, Enum):
    """Distinguishes policy violations from evaluation failures."""

    VIOLATION = "violation"
    EVALUATION_ERROR = "evaluation-error"
    WALK_ERROR = "walk-error"


@dataclass(frozen=True)
class Violation:
    """One instance of a rule's failing condition."""

    rule_id: int
    location: Location
    content: str = ""
    kind: ViolationKind = ViolationKind.VIOLATION
    detail: str = ""
    sha256: Optional[str] = None
    trace: Optional[Dict[str, Any]] = field(default=None, compare=False)
    timestamp: str = field(default="", compare=False)

    @property
    def is_error(self) -> bool:
        return self.kind != ViolationKind.VIOLATION

    def sort_key(self) -> Tuple[Any, ...]:
        return (*self.location.sort_key(), self.kind.value, self.content, self.detail)

    def to_dict(self, include_timestamps: bool = True) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "rule_id": self.rule_id,
            "location": self.location.to_dict(),
            "content": self.content,
            "kind": self.kind.value,
            "detail": self.detail,
            "sha256": self.sha256,
        }
        if self.trace is not None:
            result["trace"] = self.trace
        if include_timestamps:
            result["timestamp"] = self.timestamp
        return result
