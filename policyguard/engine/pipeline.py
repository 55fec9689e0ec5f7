"""One-shot audit pipeline.

PolicyDocument -> TargetWalker -> RuleDispatcher -> EnforcementEvaluator ->
ReportAccumulator -> Report.
"""

import threading
from typing import Optional, Sequence

from ..common.config import Settings, get_settings
from ..common.logger import get_logger
from ..matchers.registry import MatcherRegistry
from ..policy.model import Confidence, PolicyDocument
from .dispatcher import RuleDispatcher
from .enforcement import evaluate_outcome
from .report import Report, ReportAccumulator
from .walker import TargetWalker

logger = get_logger("pipeline")


def redaction_threshold(settings: Settings) -> Optional[Confidence]:
    """Parse the redact_confidence setting.

    Raises:
        ValueError: If the setting is not a confidence level
    """
    if not settings.redact_confidence:
        return None
    try:
        return Confidence(settings.redact_confidence.strip().lower())
    except ValueError as e:
        raise ValueError(
            f"redact_confidence must be one of low, medium, high; got {settings.redact_confidence!r}"
        ) from e


def build_walker(document: PolicyDocument, target: str, settings: Settings) -> TargetWalker:
    return TargetWalker(
        target,
        exclude=[*settings.walker_exclude, *document.exclude],
        max_text_size=settings.max_text_file_size,
    )


def run_audit(
    document: PolicyDocument,
    target: str,
    settings: Optional[Settings] = None,
    registry: Optional[MatcherRegistry] = None,
    environment: Optional[str] = None,
    tags: Optional[Sequence[str]] = None,
    tags_all: Optional[Sequence[str]] = None,
    honor_exceptions: bool = True,
    include_runtime: bool = False,
    stop_event: Optional[threading.Event] = None,
) -> Report:
    """Evaluate a policy against a target and build the run report.

    Args:
        document: Loaded policy
        target: Target root directory (or single file)
        settings: Runtime settings (defaults to get_settings())
        registry: Matcher dispatch table (defaults to get_registry())
        environment: Environment tag; defaults to the detected environment
        tags: Only evaluate rules carrying one of these tags
        tags_all: Only evaluate rules carrying every one of these tags
        honor_exceptions: Waive rules listed in the policy's exceptions
        include_runtime: Also evaluate runtime rules
        stop_event: Run-level cancellation flag

    Returns:
        Report for the run
    """
    settings = settings or get_settings()
    environment = environment or settings.current_environment
    threshold = redaction_threshold(settings)

    dispatcher = RuleDispatcher(
        build_walker(document, target, settings),
        registry=registry,
        settings=settings,
        environment=environment,
        tags=tags,
        tags_all=tags_all,
        exceptions=document.exceptions if honor_exceptions else frozenset(),
        exception_message=document.exception_message,
        include_runtime=include_runtime,
    )

    logger.info(
        f"Auditing {target} with {len(document.rules)} rules "
        f"(environment: {environment or 'unset'})"
    )

    accumulator = ReportAccumulator()
    for outcome in dispatcher.dispatch(document.rules, stop_event):
        verdict = evaluate_outcome(outcome, threshold)
        accumulator.add(verdict)
        logger.debug(
            f"Rule {verdict.rule_id}: {verdict.status.value}, {verdict.severity.label}, "
            f"{len(verdict.violations)} violations"
        )

    report = accumulator.build(
        document,
        interrupted=dispatcher.interrupted,
        target=str(target),
        environment=environment,
    )
    logger.info(
        f"Audit finished: {report.status.value} "
        f"({report.counters['violations']} violations in {report.counters['dirty']} rules)"
    )
    return report
