"""Unit tests for report aggregation."""

import itertools
import json
import random

import pytest

from policyguard.engine.enforcement import RuleStatus, Severity, evaluate_outcome
from policyguard.engine.report import ExitStatus, ReportAccumulator, fold_severity
from policyguard.policy.model import RuleType
from tests.factories import make_document, make_outcome, make_rule, make_violation


def _verdicts():
    clean = make_rule(id=3)
    warning = make_rule(id=1)
    critical = make_rule(id=2, fatal=True)
    return [
        evaluate_outcome(make_outcome(clean)),
        evaluate_outcome(make_outcome(warning, [make_violation(rule_id=1)])),
        evaluate_outcome(make_outcome(critical, [make_violation(rule_id=2, path="z.py")])),
    ]


def _build(verdicts, interrupted=False):
    accumulator = ReportAccumulator()
    for verdict in verdicts:
        accumulator.add(verdict)
    return accumulator.build(make_document([v.rule for v in verdicts]), interrupted=interrupted)


class TestExitStatus:
    """Tests for exit status folding."""

    def test_empty_run_is_clean(self):
        """Test a run without verdicts is Clean."""
        report = _build([])

        assert report.status == ExitStatus.CLEAN
        assert report.exit_code == 0

    def test_max_severity(self):
        """Test exit status is the maximum severity."""
        report = _build(_verdicts())

        assert report.status == ExitStatus.CRITICAL
        assert report.exit_code == 2

    def test_fold_is_order_independent(self):
        """Test every evaluation order gives the same fold."""
        verdicts = _verdicts()
        results = {fold_severity(order) for order in itertools.permutations(verdicts)}

        assert results == {Severity.CRITICAL}

    def test_monotonic(self):
        """Test adding a non-clean verdict never lowers the exit status."""
        verdicts = _verdicts()
        previous = Severity.CLEAN
        for n in range(1, len(verdicts) + 1):
            current = _build(verdicts[:n]).severity
            assert current >= previous
            previous = current

    def test_interrupted(self):
        """Test interrupted runs have their own status and at least Warning severity."""
        report = _build([evaluate_outcome(make_outcome(make_rule(id=1)))], interrupted=True)

        assert report.status == ExitStatus.INTERRUPTED
        assert report.severity == Severity.WARNING
        assert report.exit_code == 130

    def test_duplicate_verdict_rejected(self):
        """Test a rule can only be reported once."""
        accumulator = ReportAccumulator()
        verdict = evaluate_outcome(make_outcome(make_rule(id=1)))
        accumulator.add(verdict)

        with pytest.raises(ValueError):
            accumulator.add(verdict)


class TestReportContent:
    """Tests for report ordering, messages and serialization."""

    def test_verdicts_ordered_by_rule_id(self):
        """Test verdicts are sorted regardless of insertion order."""
        verdicts = _verdicts()
        random.Random(7).shuffle(verdicts)

        assert [v.rule_id for v in _build(verdicts).verdicts] == [1, 2, 3]

    def test_message_rendered_with_counters(self):
        """Test exit templates receive run counters."""
        report = _build(_verdicts())

        assert report.message == "Critical: 1 of 3 rules"
        assert report.counters["warning"] == 1
        assert report.counters["clean"] == 1
        assert report.counters["dirty"] == 2
        assert report.counters["violations"] == 2

    def test_broken_template_falls_back(self):
        """Test a template that does not render is used verbatim."""
        accumulator = ReportAccumulator()
        document = make_document([], exit_clean="All good {{ unclosed")

        assert accumulator.build(document).message == "All good {{ unclosed"

    def test_json_is_byte_stable(self):
        """Test identical inputs serialize identically without timestamps."""
        first = _build(_verdicts()).to_json()
        second = _build(_verdicts()).to_json()

        assert first == second
        assert "timestamp" not in first
        assert "generated_at" not in first

    def test_json_with_timestamps(self):
        """Test timestamps are included on request."""
        data = json.loads(_build(_verdicts()).to_json(include_timestamps=True))

        assert "generated_at" in data
        assert "timestamp" in data["verdicts"][0]["violations"][0]

    def test_counts_by_status(self):
        """Test skipped and excepted rules are counted."""
        skipped = evaluate_outcome(make_outcome(make_rule(id=1), status=RuleStatus.SKIPPED))
        excepted = evaluate_outcome(make_outcome(make_rule(id=2), status=RuleStatus.EXCEPTED))

        counters = _build([skipped, excepted]).counters

        assert counters["skipped"] == 1
        assert counters["excepted"] == 1
        assert counters["total"] == 2


class TestSarif:
    """Tests for SARIF export."""

    def test_sarif_structure(self):
        """Test results and rules are exported."""
        sarif = _build(_verdicts()).to_sarif()
        run = sarif["runs"][0]

        assert sarif["version"] == "2.1.0"
        assert [r["id"] for r in run["tool"]["driver"]["rules"]] == ["1", "2", "3"]
        assert len(run["results"]) == 2

        by_rule = {r["ruleId"]: r for r in run["results"]}
        assert by_rule["2"]["level"] == "error"
        assert by_rule["1"]["level"] == "warning"
        assert by_rule["2"]["locations"][0]["physicalLocation"]["artifactLocation"]["uri"] == "z.py"
        assert by_rule["2"]["locations"][0]["physicalLocation"]["region"]["startLine"] == 1

    def test_collect_results_are_notes(self):
        """Test informational rules export as notes."""
        rule = make_rule(id=5, type=RuleType.COLLECT)
        verdict = evaluate_outcome(make_outcome(rule, [make_violation(rule_id=5)]))

        result = _build([verdict]).to_sarif()["runs"][0]["results"][0]

        assert result["level"] == "note"

    def test_write_report(self, tmp_path):
        """Test reports are written in both formats."""
        report = _build(_verdicts())

        json_path = report.write_report(str(tmp_path / "out" / "report.json"))
        sarif_path = report.write_report(str(tmp_path / "out" / "report.sarif"), fmt="sarif")

        assert json.loads(json_path.read_text())["status"] == "critical"
        assert json.loads(sarif_path.read_text())["version"] == "2.1.0"

        with pytest.raises(ValueError):
            report.write_report(str(tmp_path / "x"), fmt="xml")
