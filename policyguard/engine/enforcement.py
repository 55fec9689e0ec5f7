"""Enforcement evaluation: raw rule outcomes to severity verdicts.

Severity is a pure function of the rule's enforcement flags and whether it
produced violations:

- no violations: Clean
- collect rules: Clean (informational)
- not enforced: Clean (violations are recorded, not escalated)
- fatal: Critical
- otherwise: Warning

Confidence is carried as metadata and only drives content redaction.
"""

from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Tuple

from ..policy.model import Confidence, Rule, Violation, ViolationKind

REDACTED = "[REDACTED]"


class Severity(IntEnum):
    """Verdict severity, ordered so max() folds a run's outcome."""

    CLEAN = 0
    WARNING = 1
    CRITICAL = 2

    @property
    def label(self) -> str:
        return self.name.lower()


class RuleStatus(str, Enum):
    """How a rule's evaluation ended."""

    CLEAN = "clean"
    VIOLATIONS = "violations"
    ERROR = "error"
    SKIPPED = "skipped"
    EXCEPTED = "excepted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RuleOutcome:
    """Raw result of dispatching one rule.

    status is set only when the dispatcher decided the outcome without
    evaluating (skipped, excepted, cancelled).
    """

    rule: Rule
    violations: Tuple[Violation, ...] = ()
    status: Optional[RuleStatus] = None
    skipped_artifacts: Tuple[str, ...] = ()
    message: str = ""


@dataclass(frozen=True)
class Verdict:
    """Final severity for one rule in one run."""

    rule: Rule
    severity: Severity
    status: RuleStatus
    violations: Tuple[Violation, ...] = ()
    skipped_artifacts: Tuple[str, ...] = ()
    message: str = ""

    @property
    def rule_id(self) -> int:
        return self.rule.id

    @property
    def confidence(self) -> Confidence:
        return self.rule.confidence

    @property
    def informational(self) -> bool:
        return self.rule.is_informational or not self.rule.enforcement

    def to_dict(self, include_timestamps: bool = True) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        rule = self.rule
        return {
            "rule_id": rule.id,
            "rule_name": rule.name,
            "type": rule.type.value,
            "severity": self.severity.label,
            "status": self.status.value,
            "confidence": rule.confidence.value,
            "informational": self.informational,
            "enforcement": rule.enforcement,
            "fatal": rule.fatal,
            "tags": sorted(rule.tags),
            "message": self.message,
            "error_message": rule.error_message,
            "solution": rule.solution,
            "violation_count": len(self.violations),
            "violations": [v.to_dict(include_timestamps) for v in self.violations],
            "skipped_artifacts": list(self.skipped_artifacts),
        }


def compute_severity(rule: Rule, has_violations: bool) -> Severity:
    if not has_violations or rule.is_informational or not rule.enforcement:
        return Severity.CLEAN
    if rule.fatal:
        return Severity.CRITICAL
    return Severity.WARNING


def redact(violation: Violation) -> Violation:
    """Mask matched content, keeping evaluation diagnostics."""
    if violation.kind != ViolationKind.VIOLATION or not violation.content:
        return violation
    return replace(violation, content=REDACTED)


def evaluate_outcome(
    outcome: RuleOutcome,
    redact_confidence: Optional[Confidence] = None,
) -> Verdict:
    """Compute the verdict for a rule outcome.

    Args:
        outcome: Raw outcome from the dispatcher
        redact_confidence: Mask content of rules at or above this confidence

    Returns:
        Verdict with violations ordered by location
    """
    rule = outcome.rule
    violations = tuple(sorted(outcome.violations, key=lambda v: v.sort_key()))

    if redact_confidence is not None and rule.confidence.rank >= redact_confidence.rank:
        violations = tuple(redact(v) for v in violations)

    status = outcome.status
    if status is None:
        if any(v.is_error for v in violations):
            status = RuleStatus.ERROR
        elif violations:
            status = RuleStatus.VIOLATIONS
        else:
            status = RuleStatus.CLEAN

    return Verdict(
        rule=rule,
        severity=compute_severity(rule, bool(violations)),
        status=status,
        violations=violations,
        skipped_artifacts=outcome.skipped_artifacts,
        message=outcome.message,
    )
