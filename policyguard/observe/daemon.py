"""Observe mode: periodic re-evaluation with change notification.

Each tick runs the audit pipeline (runtime rules included), diffs the
report against the previously observed state and hands newly observed
violations to the webhook sink, grouped per rule.
"""

import hashlib
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from ..common.config import Settings, get_settings
from ..common.logger import get_logger
from ..engine.enforcement import RuleStatus
from ..engine.pipeline import run_audit
from ..engine.report import Report
from ..matchers.registry import MatcherRegistry
from ..policy.model import Location, PolicyDocument, Violation
from .webhook import WebhookSink

logger = get_logger("observe")

WEBHOOK_EVENT = "policyguard.violations"

StateKey = Tuple[int, str]
ObservedState = Dict[StateKey, str]


def location_key(location: Location) -> str:
    line = "" if location.line is None else location.line
    offset = "" if location.offset is None else location.offset
    return f"{location.path}:{line}:{offset}#{location.logical}"


def content_digest(violations: Sequence[Violation]) -> str:
    """Digest of everything reported at one location, order-independent."""
    parts = sorted(f"{v.kind.value}\0{v.detail}\0{v.content}" for v in violations)
    return hashlib.sha256("\n".join(parts).encode()).hexdigest()


def observe_delta(prior: ObservedState, report: Report) -> Tuple[ObservedState, List[Violation]]:
    """Diff a report against the previously observed state.

    A violation is new when its (rule, location) key was not observed
    before or its content changed. Keys that disappear are dropped, so a
    violation that comes back is new again. Rules the report did not
    finish (interrupted or cancelled) keep their prior state.

    Args:
        prior: State from the previous tick
        report: Report of the current tick

    Returns:
        (new state, newly observed violations in rule/location order)
    """
    grouped: Dict[StateKey, List[Violation]] = {}
    for verdict in report.verdicts:
        for violation in verdict.violations:
            key = (violation.rule_id, location_key(violation.location))
            grouped.setdefault(key, []).append(violation)

    state: ObservedState = {key: content_digest(vs) for key, vs in grouped.items()}

    finished = {v.rule_id for v in report.verdicts if v.status != RuleStatus.CANCELLED}
    for key, digest in prior.items():
        if key[0] not in finished and key not in state:
            state[key] = digest

    new = [
        violation
        for key in sorted(grouped)
        if prior.get(key) != state[key]
        for violation in grouped[key]
    ]
    return state, new


def build_webhook_payloads(report: Report, violations: Sequence[Violation]) -> List[Dict]:
    """Group new violations into one webhook payload per rule.

    Args:
        report: Report the violations come from
        violations: Newly observed violations

    Returns:
        Payloads ordered by rule ID
    """
    by_rule: Dict[int, List[Violation]] = {}
    for violation in violations:
        by_rule.setdefault(violation.rule_id, []).append(violation)

    timestamp = datetime.now(timezone.utc).isoformat()
    payloads = []
    for rule_id in sorted(by_rule):
        verdict = report.get_verdict(rule_id)
        locations = sorted(str(v.location) for v in by_rule[rule_id])
        digest = hashlib.sha256("\n".join(locations).encode()).hexdigest()
        payloads.append(
            {
                "event": WEBHOOK_EVENT,
                "rule_id": rule_id,
                "rule_name": verdict.rule.name if verdict else "",
                "severity": verdict.severity.label if verdict else "",
                "violation_count": len(by_rule[rule_id]),
                "locations": locations,
                "timestamp": timestamp,
                "idempotency_key": f"{rule_id}-{digest[:16]}",
            }
        )
    return payloads


class ObserveDaemon:
    """Re-runs a policy against a live target every interval."""

    def __init__(
        self,
        document: PolicyDocument,
        target: str,
        settings: Optional[Settings] = None,
        registry: Optional[MatcherRegistry] = None,
        sink: Optional[WebhookSink] = None,
        interval: Optional[float] = None,
        environment: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        tags_all: Optional[Sequence[str]] = None,
    ):
        """Initialize daemon.

        Args:
            document: Policy to evaluate
            target: Target root
            settings: Runtime settings (defaults to get_settings())
            registry: Matcher dispatch table
            sink: Webhook sink for new violations; None logs them only
            interval: Seconds between ticks (defaults to observe_interval)
            environment: Environment tag
            tags: Only evaluate rules carrying one of these tags
            tags_all: Only evaluate rules carrying every one of these tags
        """
        self.document = document
        self.target = target
        self.settings = settings or get_settings()
        self.registry = registry
        self.sink = sink
        self.interval = interval if interval is not None else self.settings.observe_interval
        self.environment = environment
        self.tags = tags
        self.tags_all = tags_all
        self.state: ObservedState = {}
        self.ticks = 0
        self._stop = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Request shutdown; honored at the next tick boundary."""
        logger.info("Observe mode stop requested")
        self._stop.set()

    def run_tick(self) -> Tuple[Report, List[Violation]]:
        """Run one observation tick.

        Returns:
            (tick report, newly observed violations)
        """
        report = run_audit(
            self.document,
            self.target,
            settings=self.settings,
            registry=self.registry,
            environment=self.environment,
            tags=self.tags,
            tags_all=self.tags_all,
            include_runtime=True,
        )
        self.state, new = observe_delta(self.state, report)
        self.ticks += 1

        payloads = build_webhook_payloads(report, new)
        for payload in payloads:
            logger.info(
                f"New violations for rule {payload['rule_id']}: "
                f"{payload['violation_count']} ({payload['severity']})"
            )
            if self.sink is not None:
                self.sink.submit(payload)

        logger.info(f"Tick {self.ticks}: {report.status.value}, {len(new)} new violations")
        return report, new

    def run(self, max_ticks: Optional[int] = None) -> int:
        """Run ticks until stopped.

        Args:
            max_ticks: Stop after this many ticks (None runs forever)

        Returns:
            Number of ticks run
        """
        logger.info(f"Observing {self.target} every {self.interval:g}s")
        ran = 0
        while not self._stop.is_set():
            try:
                self.run_tick()
            except Exception:
                logger.exception("Observation tick failed")
            ran += 1

            if max_ticks is not None and ran >= max_ticks:
                break
            if self._stop.wait(self.interval):
                break

        logger.info(f"Observe mode stopped after {ran} ticks")
        return ran
