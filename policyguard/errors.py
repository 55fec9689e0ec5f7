"""Error taxonomy for policyguard.

Only ValidationError aborts a run. Every other error kind is raised at the
seam that detects it and converted into a Violation (or a logged, dropped
webhook event) by the matcher or dispatcher that owns the rule.
"""

from typing import Optional


class PolicyGuardError(Exception):
    """Base class for all policyguard errors."""


class ValidationError(PolicyGuardError):
    """Raised when a policy document violates a load-time invariant."""

    code = "invalid_policy"

    def __init__(
        self,
        message: str,
        rule_id: Optional[int] = None,
        field: Optional[str] = None,
    ):
        if rule_id is not None:
            message = f"Rule {rule_id}: {message}"
        super().__init__(message)
        self.rule_id = rule_id
        self.field = field


class DuplicateRuleIdError(ValidationError):
    """Two rules in one document share an ID."""

    code = "duplicate_id"


class MissingFieldError(ValidationError):
    """A field required by the rule's type is absent or empty."""

    code = "missing_field"


class InvalidPatternError(ValidationError):
    """A regex pattern does not compile."""

    code = "invalid_pattern"


class InvalidFieldError(ValidationError):
    """A field holds a value outside its domain."""

    code = "invalid_field"


class WalkError(PolicyGuardError):
    """Raised when an artifact under the target root cannot be accessed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot access {path}: {reason}")
        self.path = path
        self.reason = reason


class MatchError(PolicyGuardError):
    """Raised when a matcher cannot evaluate an artifact."""


class NetworkError(PolicyGuardError):
    """Raised when an outbound request fails after all retries."""

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class RuleTimeoutError(PolicyGuardError, TimeoutError):
    """Raised when a rule exceeds its evaluation deadline."""

    def __init__(self, rule_id: int, timeout: float):
        super().__init__(f"Rule {rule_id} exceeded its {timeout:g}s evaluation deadline")
        self.rule_id = rule_id
        self.timeout = timeout
