"""CLI interface for policyguard.

Usage:
    python -m policyguard validate <policy>
    python -m policyguard audit <policy> <target> [--env ENV] [--tags TAGS] [--tags-all TAGS] [--output FILE] [--sarif FILE]
    python -m policyguard observe <policy> <target> [--interval SECONDS] [--webhook URL]
"""

import argparse
import signal
import sys
import threading
from typing import List, Optional

from .common.config import load_settings
from .common.logger import setup_logger
from .engine.pipeline import run_audit
from .engine.report import Report
from .errors import ValidationError
from .observe.daemon import ObserveDaemon
from .observe.webhook import WebhookSink
from .policy.loader import load_policy

# Exit code for policies that fail to load
EXIT_INVALID_POLICY = 3


def _split_tags(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [tag.strip() for tag in value.split(",") if tag.strip()]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="policyguard", description="Policy-as-code compliance engine")
    p.add_argument("--config", help="Path to YAML configuration file")
    p.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")
    sub = p.add_subparsers(dest="cmd", required=True)

    validate_p = sub.add_parser("validate", help="Load a policy and report invariant violations.")
    validate_p.add_argument("policy", help="Policy file")

    audit_p = sub.add_parser("audit", help="Evaluate a policy against a target once.")
    audit_p.add_argument("policy", help="Policy file")
    audit_p.add_argument("target", help="Target directory or file")
    audit_p.add_argument("--env", help="Execution environment (defaults to detection)")
    audit_p.add_argument("--tags", help="Comma separated tags; only matching rules run")
    audit_p.add_argument("--tags-all", help="Comma separated tags; only rules carrying all of them run")
    audit_p.add_argument("--output", help="Write the JSON report to a file")
    audit_p.add_argument("--sarif", help="Write a SARIF report to a file")
    audit_p.add_argument("--no-exceptions", action="store_true", help="Ignore policy exceptions")
    audit_p.add_argument("--quiet", action="store_true", help="Print only the exit message")

    observe_p = sub.add_parser("observe", help="Re-evaluate a policy periodically.")
    observe_p.add_argument("policy", help="Policy file")
    observe_p.add_argument("target", help="Target directory or file")
    observe_p.add_argument("--env", help="Execution environment (defaults to detection)")
    observe_p.add_argument("--tags", help="Comma separated tags; only matching rules run")
    observe_p.add_argument("--tags-all", help="Comma separated tags; only rules carrying all of them run")
    observe_p.add_argument("--interval", type=float, help="Seconds between evaluations")
    observe_p.add_argument("--webhook", help="Webhook URL receiving new violations")
    observe_p.add_argument("--max-ticks", type=int, help="Stop after this many evaluations")

    return p


def print_report(report: Report, quiet: bool = False) -> None:
    """Print a plain-text summary of a report."""
    if not quiet:
        if report.banner:
            print(report.banner.rstrip())
            print()
        for verdict in report.verdicts:
            print(
                f"[{verdict.status.value:>10}] {verdict.rule_id}: {verdict.rule.name} "
                f"({verdict.severity.label}, {len(verdict.violations)} violations)"
            )
            for violation in verdict.violations:
                detail = f" - {violation.detail}" if violation.detail else ""
                print(f"    {violation.location}{detail}")
            if verdict.violations and verdict.rule.solution:
                print(f"    Solution: {verdict.rule.solution}")
        print()
        counters = report.counters
        print(
            f"Rules: {counters['total']}  Clean: {counters['clean']}  "
            f"Warning: {counters['warning']}  Critical: {counters['critical']}  "
            f"Skipped: {counters['skipped']}"
        )
    print(report.message)


def cmd_validate(args) -> int:
    document = load_policy(args.policy)
    print(f"Policy {args.policy} is valid: {len(document.rules)} rules")
    return 0


def cmd_audit(args, settings) -> int:
    document = load_policy(args.policy)

    stop_event = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: stop_event.set())
    try:
        report = run_audit(
            document,
            args.target,
            settings=settings,
            environment=args.env,
            tags=_split_tags(args.tags),
            tags_all=_split_tags(args.tags_all),
            honor_exceptions=not args.no_exceptions,
            stop_event=stop_event,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    if args.output:
        report.write_report(args.output, fmt="json")
    if args.sarif:
        report.write_report(args.sarif, fmt="sarif")

    print_report(report, quiet=args.quiet)
    return report.exit_code


def cmd_observe(args, settings) -> int:
    document = load_policy(args.policy)

    url = args.webhook or settings.webhook_url
    sink = WebhookSink(url, settings=settings) if url else None

    daemon = ObserveDaemon(
        document,
        args.target,
        settings=settings,
        sink=sink,
        interval=args.interval,
        environment=args.env,
        tags=_split_tags(args.tags),
        tags_all=_split_tags(args.tags_all),
    )

    def _stop(signum, frame):
        daemon.stop()

    previous = {sig: signal.signal(sig, _stop) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        daemon.run(max_ticks=args.max_ticks)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        if sink is not None:
            sink.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the policyguard CLI."""
    args = build_parser().parse_args(argv)

    settings = load_settings(args.config, log_level=args.log_level)
    setup_logger(
        log_dir=settings.log_dir,
        level=settings.log_level,
        file_logging=settings.file_logging,
    )

    try:
        if args.cmd == "validate":
            return cmd_validate(args)
        if args.cmd == "audit":
            return cmd_audit(args, settings)
        return cmd_observe(args, settings)
    except ValidationError as e:
        print(f"Invalid policy: {e}", file=sys.stderr)
        return EXIT_INVALID_POLICY


if __name__ == "__main__":
    sys.exit(main())
