"""Line-oriented regex matchers.

scan rules fail on presence, assure-regex rules fail on absence. Both use
the same case-insensitive, line-by-line matching, so for a single pattern
their outcomes on an artifact are complementary.
"""

import re
from functools import lru_cache
from typing import Iterator, List, Optional, Pattern, Sequence, Tuple

from ..engine.walker import Artifact
from ..policy.model import Rule, RuleType, Violation
from .base import ArtifactSource, Matcher, make_violation

# Longest matched text copied into a violation
MAX_CONTENT_LENGTH = 512


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> Pattern:
    return re.compile(pattern, re.IGNORECASE)


def compile_patterns(patterns: Sequence[str]) -> List[Pattern]:
    return [_compile(p) for p in patterns]


def iter_lines(text: str) -> Iterator[Tuple[int, int, str]]:
    """Yield (line number, byte offset of line start, line) without line endings."""
    offset = 0
    for number, raw in enumerate(text.splitlines(keepends=True), start=1):
        yield number, offset, raw.rstrip("\r\n")
        offset += len(raw.encode("utf-8"))


def _truncate(text: str) -> str:
    if len(text) <= MAX_CONTENT_LENGTH:
        return text
    return text[:MAX_CONTENT_LENGTH] + "..."


class PatternScanMatcher(Matcher):
    """Reports every pattern match as a violation."""

    text_only = True

    @property
    def name(self) -> str:
        return "scan"

    @property
    def rule_types(self) -> Tuple[RuleType, ...]:
        return (RuleType.SCAN,)

    def evaluate_artifact(self, rule: Rule, artifact: Artifact) -> List[Violation]:
        regexes = compile_patterns(rule.patterns)
        violations = []

        for number, line_offset, line in iter_lines(artifact.read_text()):
            for pattern, regex in zip(rule.patterns, regexes):
                empty_seen = False
                for match in regex.finditer(line):
                    # A zero-width pattern reports a line once
                    if match.start() == match.end():
                        if empty_seen:
                            continue
                        empty_seen = True
                    offset = line_offset + len(line[: match.start()].encode("utf-8"))
                    violations.append(
                        make_violation(
                            rule,
                            artifact,
                            line=number,
                            offset=offset,
                            content=_truncate(match.group(0)),
                            detail=f"Matched pattern: {pattern}",
                        )
                    )

        return violations


class PatternAssureMatcher(Matcher):
    """Reports each required pattern missing from an artifact."""

    text_only = True

    @property
    def name(self) -> str:
        return "assure-regex"

    @property
    def rule_types(self) -> Tuple[RuleType, ...]:
        return (RuleType.ASSURE_REGEX,)

    def evaluate(self, rule: Rule, source: ArtifactSource) -> List[Violation]:
        results = self.evaluate_each(rule, source)
        if not results and not source.cancelled:
            # Nothing to check means nothing satisfies the requirement
            pattern = f" matching {rule.file_pattern}" if rule.file_pattern else ""
            return [
                make_violation(
                    rule,
                    logical="NOT FOUND",
                    content=", ".join(rule.patterns),
                    detail=f"No file{pattern} found to check required patterns",
                )
            ]
        return [v for batch in results for v in batch]

    def evaluate_artifact(self, rule: Rule, artifact: Artifact) -> List[Violation]:
        regexes = compile_patterns(rule.patterns)
        found: List[Optional[int]] = [None] * len(regexes)

        for number, _, line in iter_lines(artifact.read_text()):
            for index, regex in enumerate(regexes):
                if found[index] is None and regex.search(line):
                    found[index] = number
            if all(n is not None for n in found):
                break

        return [
            make_violation(
                rule,
                artifact,
                content=pattern,
                detail=f"Required pattern not found: {pattern}",
            )
            for pattern, line in zip(rule.patterns, found)
            if line is None
        ]
