"""Unit tests for enforcement evaluation."""

import pytest

from policyguard.engine.enforcement import REDACTED, RuleStatus, Severity, evaluate_outcome
from policyguard.policy.model import Confidence, RuleType, ViolationKind
from tests.factories import make_outcome, make_rule, make_violation


class TestSeverity:
    """Tests for the severity table."""

    def test_no_violations_is_clean(self):
        """Test a rule without violations is Clean."""
        verdict = evaluate_outcome(make_outcome(make_rule(fatal=True)))

        assert verdict.severity == Severity.CLEAN
        assert verdict.status == RuleStatus.CLEAN

    def test_fatal_is_critical(self):
        """Test fatal rules with violations are Critical."""
        rule = make_rule(id=1, fatal=True)
        verdict = evaluate_outcome(make_outcome(rule, [make_violation(rule_id=1)]))

        assert verdict.severity == Severity.CRITICAL
        assert verdict.status == RuleStatus.VIOLATIONS

    def test_enforced_is_warning(self):
        """Test non-fatal enforced rules with violations are Warning."""
        rule = make_rule(id=1)
        verdict = evaluate_outcome(make_outcome(rule, [make_violation(rule_id=1)]))

        assert verdict.severity == Severity.WARNING

    @pytest.mark.parametrize("fatal", [True, False])
    def test_not_enforced_is_clean(self, fatal):
        """Test unenforced rules never escalate, even when fatal."""
        rule = make_rule(id=1, enforcement=False, fatal=fatal)
        verdict = evaluate_outcome(make_outcome(rule, [make_violation(rule_id=1)]))

        assert verdict.severity == Severity.CLEAN
        assert verdict.informational
        assert len(verdict.violations) == 1

    def test_collect_is_clean(self):
        """Test collect rules are informational."""
        rule = make_rule(id=1, type=RuleType.COLLECT, fatal=True)
        violations = [make_violation(rule_id=1, line=n) for n in range(10)]
        verdict = evaluate_outcome(make_outcome(rule, violations))

        assert verdict.severity == Severity.CLEAN
        assert verdict.informational
        assert len(verdict.violations) == 10

    def test_confidence_does_not_change_severity(self):
        """Test confidence is metadata only."""
        severities = set()
        for confidence in Confidence:
            rule = make_rule(id=1, confidence=confidence)
            severities.add(evaluate_outcome(make_outcome(rule, [make_violation(rule_id=1)])).severity)

        assert severities == {Severity.WARNING}

    def test_evaluation_error_status(self):
        """Test evaluation errors are distinguished from violations."""
        rule = make_rule(id=1)
        error = make_violation(rule_id=1, kind=ViolationKind.EVALUATION_ERROR)
        verdict = evaluate_outcome(make_outcome(rule, [error]))

        assert verdict.status == RuleStatus.ERROR
        assert verdict.severity == Severity.WARNING

    def test_preset_status_kept(self):
        """Test dispatcher decided statuses pass through."""
        verdict = evaluate_outcome(make_outcome(make_rule(), status=RuleStatus.SKIPPED))

        assert verdict.status == RuleStatus.SKIPPED
        assert verdict.severity == Severity.CLEAN


class TestOrderingAndRedaction:
    """Tests for violation ordering and redaction."""

    def test_violations_sorted_by_location(self):
        """Test violations are ordered by path then line."""
        rule = make_rule(id=1)
        violations = [
            make_violation(rule_id=1, path="b.py", line=1),
            make_violation(rule_id=1, path="a.py", line=9),
            make_violation(rule_id=1, path="a.py", line=2),
        ]
        verdict = evaluate_outcome(make_outcome(rule, violations))

        assert [(v.location.path, v.location.line) for v in verdict.violations] == [
            ("a.py", 2),
            ("a.py", 9),
            ("b.py", 1),
        ]

    def test_redaction_threshold(self):
        """Test content is masked at or above the threshold only."""
        high = make_rule(id=1, confidence=Confidence.HIGH)
        low = make_rule(id=2, confidence=Confidence.LOW)

        masked = evaluate_outcome(make_outcome(high, [make_violation(rule_id=1)]), Confidence.MEDIUM)
        kept = evaluate_outcome(make_outcome(low, [make_violation(rule_id=2)]), Confidence.MEDIUM)

        assert masked.violations[0].content == REDACTED
        assert kept.violations[0].content == "secret"

    def test_redaction_keeps_errors(self):
        """Test evaluation error text is never masked."""
        rule = make_rule(id=1, confidence=Confidence.HIGH)
        error = make_violation(rule_id=1, content="opa missing", kind=ViolationKind.EVALUATION_ERROR)

        verdict = evaluate_outcome(make_outcome(rule, [error]), Confidence.LOW)

        assert verdict.violations[0].content == "opa missing"
