"""Rule evaluation engine.

The walker enumerates artifacts, the dispatcher routes rules to matchers,
enforcement turns outcomes into verdicts and the report folds them into one
exit status. run_audit() in the pipeline module composes the stages.
"""

from .enforcement import RuleOutcome, RuleStatus, Severity, Verdict, evaluate_outcome
from .report import ExitStatus, Report, ReportAccumulator
from .walker import Artifact, FileFilter, TargetWalker

__all__ = [
    "Artifact",
    "ExitStatus",
    "FileFilter",
    "Report",
    "ReportAccumulator",
    "RuleOutcome",
    "RuleStatus",
    "Severity",
    "TargetWalker",
    "Verdict",
    "evaluate_outcome",
]
