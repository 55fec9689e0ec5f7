"""Unit tests for observe mode."""

from unittest.mock import MagicMock

from policyguard.engine.enforcement import RuleStatus, evaluate_outcome
from policyguard.engine.report import ReportAccumulator
from policyguard.observe.daemon import (
    WEBHOOK_EVENT,
    ObserveDaemon,
    build_webhook_payloads,
    observe_delta,
)
from policyguard.policy.model import RuleType
from tests.factories import make_document, make_outcome, make_rule, make_violation, write_tree


def _report(*outcomes):
    accumulator = ReportAccumulator()
    for outcome in outcomes:
        accumulator.add(evaluate_outcome(outcome))
    return accumulator.build(make_document([o.rule for o in outcomes]))


RULE = make_rule(id=1, name="No secrets")


class TestObserveDelta:
    """Tests for diffing ticks."""

    def test_first_tick_reports_everything(self):
        """Test every violation is new against an empty state."""
        report = _report(make_outcome(RULE, [make_violation(1, line=1), make_violation(1, line=2)]))

        state, new = observe_delta({}, report)

        assert len(new) == 2
        assert len(state) == 2

    def test_unchanged_violations_not_repeated(self):
        """Test a repeated violation is not reported again."""
        report = _report(make_outcome(RULE, [make_violation(1, line=1)]))
        state, _ = observe_delta({}, report)

        _, new = observe_delta(state, _report(make_outcome(RULE, [make_violation(1, line=1)])))

        assert new == []

    def test_changed_content_is_new(self):
        """Test different content at the same location is reported."""
        state, _ = observe_delta({}, _report(make_outcome(RULE, [make_violation(1, content="a")])))

        _, new = observe_delta(state, _report(make_outcome(RULE, [make_violation(1, content="b")])))

        assert [v.content for v in new] == ["b"]

    def test_resolved_then_reintroduced(self):
        """Test a violation that disappears and comes back is new again."""
        dirty = _report(make_outcome(RULE, [make_violation(1)]))
        clean = _report(make_outcome(RULE))

        state, _ = observe_delta({}, dirty)
        state, _ = observe_delta(state, clean)
        assert state == {}

        _, new = observe_delta(state, dirty)
        assert len(new) == 1

    def test_cancelled_rules_keep_state(self):
        """Test an unfinished rule does not forget what was observed."""
        state, _ = observe_delta({}, _report(make_outcome(RULE, [make_violation(1)])))

        cancelled = _report(make_outcome(RULE, status=RuleStatus.CANCELLED))
        state, new = observe_delta(state, cancelled)

        assert new == []
        _, new = observe_delta(state, _report(make_outcome(RULE, [make_violation(1)])))
        assert new == []


class TestWebhookPayloads:
    """Tests for payload grouping."""

    def test_one_payload_per_rule(self):
        """Test violations are grouped per rule with a stable key."""
        other = make_rule(id=2, fatal=True)
        violations = [make_violation(2, path="b.py"), make_violation(1, line=3), make_violation(1, line=1)]
        report = _report(make_outcome(RULE, violations[1:]), make_outcome(other, violations[:1]))

        payloads = build_webhook_payloads(report, violations)

        assert [p["rule_id"] for p in payloads] == [1, 2]
        assert payloads[0]["event"] == WEBHOOK_EVENT
        assert payloads[0]["rule_name"] == "No secrets"
        assert payloads[0]["locations"] == ["app.py:1", "app.py:3"]
        assert payloads[0]["violation_count"] == 2
        assert payloads[1]["severity"] == "critical"

        again = build_webhook_payloads(report, list(reversed(violations)))
        assert [p["idempotency_key"] for p in again] == [p["idempotency_key"] for p in payloads]


class TestObserveDaemon:
    """Tests for the observe loop."""

    def test_ticks_notify_new_violations(self, settings, registry, target):
        """Test only changes since the previous tick reach the sink."""
        write_tree(target, {"app.log": "ok\n"})
        rule = make_rule(id=1, type=RuleType.RUNTIME, patterns=("error",))
        sink = MagicMock()
        daemon = ObserveDaemon(make_document([rule]), str(target), settings, registry, sink=sink)

        _, new = daemon.run_tick()
        assert new == []

        (target / "app.log").write_text("ok\nerror: disk full\n")
        _, new = daemon.run_tick()
        assert len(new) == 1
        assert sink.submit.call_count == 1
        assert sink.submit.call_args[0][0]["locations"] == ["app.log:2"]

        _, new = daemon.run_tick()
        assert new == []
        assert sink.submit.call_count == 1
        assert daemon.ticks == 3

    def test_run_stops_after_max_ticks(self, settings, registry, target):
        """Test the loop honors max_ticks."""
        daemon = ObserveDaemon(make_document([make_rule(id=1)]), str(target), settings, registry)

        assert daemon.run(max_ticks=2) == 2
        assert daemon.ticks == 2

    def test_run_stops_when_requested(self, settings, registry, target):
        """Test stop() ends the loop before the next tick."""
        daemon = ObserveDaemon(make_document([make_rule(id=1)]), str(target), settings, registry)
        daemon.stop()

        assert daemon.run() == 0
        assert daemon.stopped

    def test_failed_tick_does_not_stop_loop(self, settings, registry, target, monkeypatch):
        """Test tick failures are logged and the loop continues."""
        daemon = ObserveDaemon(make_document([make_rule(id=1)]), str(target), settings, registry)
        monkeypatch.setattr(daemon, "run_tick", MagicMock(side_effect=RuntimeError("boom")))

        assert daemon.run(max_ticks=3) == 3
        assert daemon.run_tick.call_count == 3
