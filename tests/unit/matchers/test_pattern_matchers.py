"""Unit tests for scan and assure-regex matchers."""

import threading

import pytest

from policyguard.matchers.pattern import (
    MAX_CONTENT_LENGTH,
    PatternAssureMatcher,
    PatternScanMatcher,
    iter_lines,
)
from policyguard.policy.model import RuleType
from tests.factories import make_rule, make_source, write_tree


def _run(matcher, walker, rule, **kwargs):
    return matcher.evaluate(rule, make_source(walker, matcher, rule, **kwargs))


class TestIterLines:
    """Tests for line and byte offset tracking."""

    def test_offsets_are_bytes(self):
        """Test offsets count UTF-8 bytes across line endings."""
        lines = list(iter_lines("é\r\nab\nc"))

        assert lines == [(1, 0, "é"), (2, 4, "ab"), (3, 7, "c")]


class TestPatternScanMatcher:
    """Tests for scan rules."""

    def test_reports_each_match(self, target, walker):
        """Test every match gets its own violation with line and offset."""
        write_tree(target, {"config.py": "ok\nkey = SECRET secret\n"})
        rule = make_rule(id=1, patterns=("secret",))

        violations = _run(PatternScanMatcher(), walker, rule)

        assert [(v.location.line, v.location.offset, v.content) for v in violations] == [
            (2, 9, "SECRET"),
            (2, 16, "secret"),
        ]
        assert violations[0].location.path == "config.py"
        assert violations[0].detail == "Matched pattern: secret"
        assert violations[0].sha256 is not None

    def test_no_match_is_clean(self, target, walker):
        """Test files without matches produce nothing."""
        write_tree(target, {"a.txt": "nothing here"})

        assert _run(PatternScanMatcher(), walker, make_rule(patterns=("secret",))) == []

    def test_file_pattern_limits_artifacts(self, target, walker):
        """Test the rule's file pattern selects artifacts."""
        write_tree(target, {"a.py": "secret", "a.md": "secret"})
        rule = make_rule(patterns=("secret",), file_pattern=r"\.py$")

        violations = _run(PatternScanMatcher(), walker, rule)

        assert [v.location.path for v in violations] == ["a.py"]

    def test_zero_width_pattern_once_per_line(self, target, walker):
        """Test zero-width matches are reported once per line."""
        write_tree(target, {"a.txt": "one\ntwo\n"})

        violations = _run(PatternScanMatcher(), walker, make_rule(patterns=("^",)))

        assert [v.location.line for v in violations] == [1, 2]

    def test_long_match_truncated(self, target, walker):
        """Test matched content is truncated."""
        write_tree(target, {"a.txt": "x" * (MAX_CONTENT_LENGTH + 10)})

        violations = _run(PatternScanMatcher(), walker, make_rule(patterns=("x+",)))

        assert violations[0].content == "x" * MAX_CONTENT_LENGTH + "..."

    def test_binary_files_skipped(self, target, walker):
        """Test binary artifacts are not scanned."""
        write_tree(target, {"blob.bin": b"secret\x00"})

        assert _run(PatternScanMatcher(), walker, make_rule(patterns=("secret",))) == []

    def test_cancelled_rule_skips_artifacts(self, target, walker):
        """Test a cancelled rule evaluates no further artifacts."""
        write_tree(target, {"a.txt": "secret"})
        cancel_event = threading.Event()
        cancel_event.set()

        violations = _run(
            PatternScanMatcher(), walker, make_rule(patterns=("secret",)), cancel_event=cancel_event
        )

        assert violations == []


class TestPatternAssureMatcher:
    """Tests for assure-regex rules."""

    def test_missing_pattern_reported(self, target, walker):
        """Test each missing pattern is one violation per artifact."""
        write_tree(target, {"LICENSE": "MIT License\n", "NOTICE": "nothing\n"})
        rule = make_rule(type=RuleType.ASSURE_REGEX, patterns=("license", "copyright"))

        violations = _run(PatternAssureMatcher(), walker, rule)

        assert [(v.location.path, v.content) for v in violations] == [
            ("LICENSE", "copyright"),
            ("NOTICE", "license"),
            ("NOTICE", "copyright"),
        ]
        assert violations[0].detail == "Required pattern not found: copyright"

    def test_no_artifacts_is_violation(self, target, walker):
        """Test nothing to check fails the requirement."""
        write_tree(target, {"a.txt": "x"})
        rule = make_rule(type=RuleType.ASSURE_REGEX, patterns=("license",), file_pattern=r"^LICENSE$")

        violations = _run(PatternAssureMatcher(), walker, rule)

        assert len(violations) == 1
        assert violations[0].location.logical == "NOT FOUND"

    @pytest.mark.parametrize(
        "content",
        ["token = abc", "no match", "TOKEN", ""],
    )
    def test_complements_scan(self, target, walker, content):
        """Test scan and assure-regex disagree on every single-pattern artifact."""
        write_tree(target, {"a.txt": content})
        scan = make_rule(type=RuleType.SCAN, patterns=("token",))
        assure = make_rule(type=RuleType.ASSURE_REGEX, patterns=("token",))

        scan_failed = bool(_run(PatternScanMatcher(), walker, scan))
        assure_failed = bool(_run(PatternAssureMatcher(), walker, assure))

        assert scan_failed != assure_failed
