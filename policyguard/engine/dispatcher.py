"""Rule dispatch.

Routes every rule to its matcher backend and runs each rule on its own
daemon thread, at most max_workers at a time. A rule's thread starts as
soon as it takes a slot, so its deadline starts when it begins running.
Abandoned threads give up their slot and never keep the process alive.
Outcomes are yielded to the coordinating thread in completion order.
"""

import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence

from ..common.config import Settings, get_settings
from ..common.logger import get_logger
from ..errors import MatchError, RuleTimeoutError
from ..matchers.base import ArtifactSource, make_violation
from ..matchers.registry import MatcherRegistry, get_registry
from ..policy.model import Rule, RuleType, Violation, ViolationKind
from .enforcement import RuleOutcome, RuleStatus
from .walker import TargetWalker

logger = get_logger("dispatcher")

# How often the coordinator checks deadlines and the stop flag, in seconds
POLL_INTERVAL = 0.2


@dataclass
class _Running:
    rule: Rule
    deadline: float
    cancel_event: threading.Event


class RuleDispatcher:
    """Evaluates rules concurrently and yields one outcome per rule."""

    def __init__(
        self,
        walker: TargetWalker,
        registry: Optional[MatcherRegistry] = None,
        settings: Optional[Settings] = None,
        environment: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        tags_all: Optional[Sequence[str]] = None,
        exceptions: FrozenSet[int] = frozenset(),
        exception_message: str = "",
        include_runtime: bool = False,
    ):
        """Initialize dispatcher.

        Args:
            walker: Walker over the target root
            registry: Matcher dispatch table (defaults to get_registry())
            settings: Runtime settings (defaults to get_settings())
            environment: Current environment tag; None if unknown
            tags: Only evaluate rules carrying one of these tags
            tags_all: Only evaluate rules carrying every one of these tags
            exceptions: Rule IDs waived unless enforced
            exception_message: Message recorded on waived rules
            include_runtime: Evaluate runtime rules (observe mode only)
        """
        self.walker = walker
        self.registry = registry or get_registry()
        self.settings = settings or get_settings()
        self.environment = environment
        self.tags = [t for t in (tags or []) if t.strip()]
        self.tags_all = [t for t in (tags_all or []) if t.strip()]
        self.exceptions = exceptions
        self.exception_message = exception_message
        self.include_runtime = include_runtime
        self.interrupted = False

    def prefilter(self, rule: Rule) -> Optional[RuleOutcome]:
        """Decide a rule's outcome without evaluating it, if possible.

        Returns:
            Skipped or excepted outcome, or None if the rule must run
        """
        if rule.type == RuleType.RUNTIME and not self.include_runtime:
            return RuleOutcome(rule, status=RuleStatus.SKIPPED, message="Runtime rules run in observe mode")
        if not rule.applies_to(self.environment):
            return RuleOutcome(
                rule,
                status=RuleStatus.SKIPPED,
                message=f"Not enabled for environment {self.environment or '(unset)'}",
            )
        if self.tags and not rule.has_any_tag(self.tags):
            return RuleOutcome(rule, status=RuleStatus.SKIPPED, message="Filtered out by tags")
        if self.tags_all and not rule.has_all_tags(self.tags_all):
            return RuleOutcome(rule, status=RuleStatus.SKIPPED, message="Filtered out by tags")
        if rule.id in self.exceptions and not rule.enforcement:
            return RuleOutcome(rule, status=RuleStatus.EXCEPTED, message=self.exception_message)
        return None

    def evaluate_rule(self, rule: Rule, cancel_event: Optional[threading.Event] = None) -> RuleOutcome:
        """Evaluate a single rule synchronously.

        Args:
            rule: Rule to evaluate
            cancel_event: Set when the rule is abandoned

        Returns:
            RuleOutcome with the rule's raw violations
        """
        matcher = self.registry.get_matcher(rule)
        if matcher is None:
            return RuleOutcome(
                rule,
                violations=(self._error(rule, f"No matcher registered for {rule.type.value} rules"),),
            )

        source = ArtifactSource(
            walker=self.walker,
            include=matcher.file_patterns(rule),
            text_only=matcher.text_only,
            max_concurrency=self.settings.artifact_concurrency,
            environment=self.environment,
            cancel_event=cancel_event or threading.Event(),
        )

        logger.debug(f"Evaluating rule {rule.id} ({rule.name}) with {matcher.name}")
        try:
            violations: List[Violation] = matcher.evaluate(rule, source)
        except MatchError as e:
            logger.warning(f"Rule {rule.id}: {e}")
            violations = [self._error(rule, str(e))]
        except Exception as e:
            logger.exception(f"Rule {rule.id}: unexpected evaluation failure")
            violations = [self._error(rule, f"{type(e).__name__}: {e}")]

        skipped = tuple(str(error) for error in source.skipped)
        if rule.fatal:
            violations.extend(
                make_violation(
                    rule,
                    path=error.path,
                    content=error.reason,
                    kind=ViolationKind.WALK_ERROR,
                    detail="Artifact could not be read",
                )
                for error in source.skipped
            )

        return RuleOutcome(rule, violations=tuple(violations), skipped_artifacts=skipped)

    def dispatch(
        self,
        rules: Iterable[Rule],
        stop_event: Optional[threading.Event] = None,
    ) -> Iterator[RuleOutcome]:
        """Evaluate rules concurrently.

        Once stop_event is set no further rules start; rules still running
        get cancel_grace_period seconds to finish and are then abandoned,
        and the dispatcher is marked interrupted.

        Args:
            rules: Rules to evaluate
            stop_event: Run-level cancellation flag

        Yields:
            RuleOutcome per rule, in completion order
        """
        stop_event = stop_event or threading.Event()
        pending = deque(rules)
        running: Dict[Future, _Running] = {}
        grace_deadline: Optional[float] = None
        max_workers = max(1, self.settings.max_workers)
        self.interrupted = False

        try:
            while pending or running:
                if stop_event.is_set() and grace_deadline is None:
                    self.interrupted = True
                    grace_deadline = time.monotonic() + self.settings.cancel_grace_period
                    logger.warning(
                        f"Cancellation requested: {len(pending)} rules not started, "
                        f"{len(running)} running"
                    )
                    pending.clear()

                while pending and len(running) < max_workers:
                    rule = pending.popleft()
                    outcome = self.prefilter(rule)
                    if outcome is not None:
                        logger.debug(f"Rule {rule.id} {outcome.status.value}: {outcome.message}")
                        yield outcome
                        continue
                    cancel_event = threading.Event()
                    future = self._start(rule, cancel_event)
                    running[future] = _Running(
                        rule, time.monotonic() + self.settings.rule_timeout, cancel_event
                    )

                if not running:
                    continue

                next_deadline = min(r.deadline for r in running.values())
                if grace_deadline is not None:
                    next_deadline = min(next_deadline, grace_deadline)
                timeout = min(max(0.0, next_deadline - time.monotonic()), POLL_INTERVAL)

                done, _ = wait(list(running), timeout=timeout, return_when=FIRST_COMPLETED)
                for future in done:
                    yield self._collect(future, running.pop(future))

                now = time.monotonic()
                for future, entry in list(running.items()):
                    if now >= entry.deadline:
                        del running[future]
                        yield self._abandon(future, entry)

                if grace_deadline is not None and now >= grace_deadline:
                    for future, entry in list(running.items()):
                        del running[future]
                        entry.cancel_event.set()
                        logger.warning(f"Rule {entry.rule.id} abandoned after cancellation grace period")
                        yield RuleOutcome(
                            entry.rule,
                            status=RuleStatus.CANCELLED,
                            message="Abandoned after cancellation grace period",
                        )
        finally:
            for entry in running.values():
                entry.cancel_event.set()

    def _start(self, rule: Rule, cancel_event: threading.Event) -> Future:
        """Run evaluate_rule on a daemon thread, resolving the returned future."""
        future: Future = Future()
        future.set_running_or_notify_cancel()

        def work() -> None:
            try:
                future.set_result(self.evaluate_rule(rule, cancel_event))
            except Exception as e:
                future.set_exception(e)

        threading.Thread(target=work, name=f"policyguard-rule-{rule.id}", daemon=True).start()
        return future

    def _collect(self, future: Future, entry: _Running) -> RuleOutcome:
        try:
            return future.result()
        except Exception as e:
            logger.exception(f"Rule {entry.rule.id}: worker failed")
            return RuleOutcome(entry.rule, violations=(self._error(entry.rule, f"{type(e).__name__}: {e}"),))

    def _abandon(self, future: Future, entry: _Running) -> RuleOutcome:
        """Give up on a rule past its deadline; its late result is discarded."""
        entry.cancel_event.set()
        error = RuleTimeoutError(entry.rule.id, self.settings.rule_timeout)
        logger.warning(str(error))
        return RuleOutcome(
            entry.rule,
            violations=(self._error(entry.rule, str(error), detail="Rule evaluation timed out"),),
            message="timed out",
        )

    def _error(self, rule: Rule, message: str, detail: str = "Rule evaluation failed") -> Violation:
        return make_violation(
            rule,
            content=message,
            kind=ViolationKind.EVALUATION_ERROR,
            detail=detail,
        )
