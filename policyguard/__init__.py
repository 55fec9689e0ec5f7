"""policyguard: policy-as-code compliance engine.

Loads declarative rule sets, evaluates them against a target file tree or
live environment and folds the results into one pass/warn/fail verdict.
"""

__version__ = "1.0.0"

from .errors import PolicyGuardError, ValidationError
from .policy import PolicyDocument, Rule, RuleType, Violation, load_policy, parse_policy
from .engine import ExitStatus, Report, Severity, TargetWalker, Verdict
from .engine.pipeline import run_audit
from .observe import ObserveDaemon, WebhookSink

__all__ = [
    "ExitStatus",
    "ObserveDaemon",
    "PolicyDocument",
    "PolicyGuardError",
    "Report",
    "Rule",
    "RuleType",
    "Severity",
    "TargetWalker",
    "ValidationError",
    "Verdict",
    "Violation",
    "WebhookSink",
    "__version__",
    "load_policy",
    "parse_policy",
    "run_audit",
]
