"""Report aggregation.

Folds verdicts into one run report: verdicts ordered by rule ID, an exit
status equal to the maximum severity (or interrupted), and an exit message
rendered from the policy's templates.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from jinja2 import Template, TemplateError

from .. import __version__
from ..common.logger import get_logger
from ..policy.model import Confidence, PolicyDocument
from .enforcement import RuleStatus, Severity, Verdict

logger = get_logger("report")

TOOL_NAME = "policyguard"

SARIF_SCHEMA = "https://json.schemastore.org/sarif-2.1.0.json"


class ExitStatus(str, Enum):
    """Outcome of a run."""

    CLEAN = "clean"
    WARNING = "warning"
    CRITICAL = "critical"
    INTERRUPTED = "interrupted"

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self]

    @classmethod
    def from_severity(cls, severity: Severity) -> "ExitStatus":
        return cls(severity.label)


EXIT_CODES = {
    ExitStatus.CLEAN: 0,
    ExitStatus.WARNING: 1,
    ExitStatus.CRITICAL: 2,
    ExitStatus.INTERRUPTED: 130,
}


def fold_severity(verdicts: Iterable[Verdict]) -> Severity:
    """Maximum severity over verdicts; Clean for none."""
    return max((v.severity for v in verdicts), default=Severity.CLEAN)


def render_message(template: str, counters: Dict[str, int]) -> str:
    """Render an exit message template with run counters.

    Falls back to the raw template when it does not render.
    """
    try:
        return Template(template).render(**counters)
    except TemplateError as e:
        logger.warning(f"Cannot render exit message template: {e}")
        return template


def sarif_level(verdict: Verdict) -> str:
    rule = verdict.rule
    if verdict.informational:
        return "note"
    if rule.fatal or rule.confidence == Confidence.HIGH:
        return "error"
    return "warning"


@dataclass
class Report:
    """Outcome of one audit run."""

    verdicts: Tuple[Verdict, ...]
    status: ExitStatus
    severity: Severity
    message: str = ""
    banner: str = ""
    counters: Dict[str, int] = field(default_factory=dict)
    policy: Optional[str] = None
    target: Optional[str] = None
    environment: Optional[str] = None
    generated_at: str = ""

    @property
    def interrupted(self) -> bool:
        return self.status == ExitStatus.INTERRUPTED

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    @property
    def violations(self) -> List:
        return [v for verdict in self.verdicts for v in verdict.violations]

    def get_verdict(self, rule_id: int) -> Optional[Verdict]:
        for verdict in self.verdicts:
            if verdict.rule_id == rule_id:
                return verdict
        return None

    def to_dict(self, include_timestamps: bool = True) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "tool": TOOL_NAME,
            "version": __version__,
            "policy": self.policy,
            "target": self.target,
            "environment": self.environment,
            "status": self.status.value,
            "severity": self.severity.label,
            "exit_code": self.exit_code,
            "message": self.message,
            "banner": self.banner,
            "counters": dict(self.counters),
            "verdicts": [v.to_dict(include_timestamps) for v in self.verdicts],
        }
        if include_timestamps:
            result["generated_at"] = self.generated_at
        return result

    def to_json(self, include_timestamps: bool = False, indent: Optional[int] = 2) -> str:
        """Serialize the report.

        Without timestamps the output is byte-identical across runs over
        unchanged inputs.
        """
        return json.dumps(self.to_dict(include_timestamps), indent=indent, sort_keys=True, default=str)

    def to_sarif(self) -> Dict[str, Any]:
        """Export the report as a SARIF 2.1.0 log."""
        rules = []
        results = []
        for verdict in self.verdicts:
            rule = verdict.rule
            rules.append(
                {
                    "id": str(rule.id),
                    "name": rule.name,
                    "shortDescription": {"text": rule.name},
                    "fullDescription": {"text": rule.description or rule.name},
                    "help": {"text": rule.solution or rule.error_message or rule.name},
                    "properties": {
                        "tags": sorted(rule.tags),
                        "confidence": rule.confidence.value,
                        "impact": rule.impact,
                    },
                }
            )
            for violation in verdict.violations:
                location = violation.location
                result = {
                    "ruleId": str(rule.id),
                    "level": sarif_level(verdict),
                    "kind": "fail",
                    "message": {"text": violation.detail or rule.error_message or rule.name},
                }
                if location.path:
                    physical: Dict[str, Any] = {"artifactLocation": {"uri": location.path}}
                    if location.line is not None:
                        physical["region"] = {"startLine": location.line}
                    result["locations"] = [{"physicalLocation": physical}]
                if location.logical:
                    result.setdefault("locations", [{}])[0]["logicalLocations"] = [
                        {"fullyQualifiedName": location.logical}
                    ]
                if violation.sha256:
                    result["partialFingerprints"] = {"sha256": violation.sha256}
                results.append(result)

        return {
            "$schema": SARIF_SCHEMA,
            "version": "2.1.0",
            "runs": [
                {
                    "tool": {"driver": {"name": TOOL_NAME, "version": __version__, "rules": rules}},
                    "results": results,
                    "invocations": [{"executionSuccessful": not self.interrupted}],
                }
            ],
        }

    def write_report(self, path: str, fmt: str = "json") -> Path:
        """Write the report to a file.

        Args:
            path: Output file path
            fmt: "json" or "sarif"

        Returns:
            Path written
        """
        output = Path(path)
        output.parent.mkdir(parents=True, exist_ok=True)
        if fmt == "sarif":
            content = json.dumps(self.to_sarif(), indent=2)
        elif fmt == "json":
            content = self.to_json(include_timestamps=True)
        else:
            raise ValueError(f"Unknown report format: {fmt}")
        output.write_text(content + "\n")
        logger.info(f"Report written to {output}")
        return output


class ReportAccumulator:
    """Collects verdicts for one run.

    Not thread-safe: only the coordinating thread adds verdicts.
    """

    def __init__(self) -> None:
        self._verdicts: Dict[int, Verdict] = {}

    def __len__(self) -> int:
        return len(self._verdicts)

    def add(self, verdict: Verdict) -> None:
        if verdict.rule_id in self._verdicts:
            raise ValueError(f"Duplicate verdict for rule {verdict.rule_id}")
        self._verdicts[verdict.rule_id] = verdict

    @property
    def severity(self) -> Severity:
        return fold_severity(self._verdicts.values())

    def counters(self) -> Dict[str, int]:
        verdicts = self._verdicts.values()
        by_severity = {s: sum(1 for v in verdicts if v.severity == s) for s in Severity}
        by_status = {s: sum(1 for v in verdicts if v.status == s) for s in RuleStatus}
        return {
            "total": len(self._verdicts),
            "clean": by_severity[Severity.CLEAN],
            "warning": by_severity[Severity.WARNING],
            "critical": by_severity[Severity.CRITICAL],
            "dirty": sum(1 for v in verdicts if v.violations),
            "errored": by_status[RuleStatus.ERROR],
            "skipped": by_status[RuleStatus.SKIPPED],
            "excepted": by_status[RuleStatus.EXCEPTED],
            "cancelled": by_status[RuleStatus.CANCELLED],
            "violations": sum(len(v.violations) for v in verdicts),
        }

    def build(
        self,
        document: PolicyDocument,
        interrupted: bool = False,
        target: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> Report:
        """Build the run report.

        Args:
            document: Policy the verdicts were produced from
            interrupted: Whether the run was cancelled before finishing
            target: Target root, for the report header
            environment: Execution environment, for the report header

        Returns:
            Report with verdicts ordered by rule ID
        """
        severity = self.severity
        if interrupted:
            severity = max(severity, Severity.WARNING)
            status = ExitStatus.INTERRUPTED
        else:
            status = ExitStatus.from_severity(severity)

        templates = {
            Severity.CLEAN: document.exit_clean,
            Severity.WARNING: document.exit_warning,
            Severity.CRITICAL: document.exit_critical,
        }
        counters = self.counters()

        return Report(
            verdicts=tuple(self._verdicts[rule_id] for rule_id in sorted(self._verdicts)),
            status=status,
            severity=severity,
            message=render_message(templates[severity], counters),
            banner=document.banner,
            counters=counters,
            policy=document.source,
            target=target,
            environment=environment,
            generated_at=datetime.now(timezone.utc).isoformat(),
        )
