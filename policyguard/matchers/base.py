"""Base classes for matcher backends.

Every matcher implements one capability: evaluate(rule, source) returning
the rule's raw violations. The ArtifactSource binds a rule to the target
walker, the rule's cancellation flag and the per-artifact concurrency cap.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ..common.logger import get_logger
from ..engine.walker import Artifact, TargetWalker
from ..errors import MatchError, WalkError
from ..policy.model import Location, Rule, RuleType, Violation, ViolationKind

logger = get_logger("matcher")


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ArtifactSource:
    """Artifacts a single rule is evaluated against."""

    walker: TargetWalker
    include: Optional[Sequence[str]] = None
    text_only: bool = False
    max_concurrency: int = 4
    environment: Optional[str] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    skipped: List[WalkError] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def root(self) -> str:
        return str(self.walker.root)

    def record_skip(self, error: WalkError) -> None:
        logger.warning(f"Skipping artifact: {error}")
        with self._lock:
            self.skipped.append(error)

    def artifacts(self) -> Iterator[Artifact]:
        """Start a fresh traversal filtered for this rule."""
        return self.walker.walk(
            self.walker.file_filter(self.include),
            on_error=self.record_skip,
            text_only=self.text_only,
        )

    def map(self, fn: Callable[[Artifact], List[Violation]]) -> List[List[Violation]]:
        """Apply fn to every artifact, in parallel up to the concurrency cap.

        Results keep traversal order. Once the rule is cancelled, remaining
        artifacts are skipped.
        """

        def guarded(artifact: Artifact) -> List[Violation]:
            if self.cancelled:
                return []
            return fn(artifact)

        if self.max_concurrency <= 1:
            return [guarded(artifact) for artifact in self.artifacts()]

        return _daemon_map(guarded, list(self.artifacts()), self.max_concurrency)


def _daemon_map(fn: Callable[[Any], Any], items: List[Any], workers: int) -> List[Any]:
    """Ordered parallel map on daemon threads.

    Daemon workers are not joined at interpreter exit, so an abandoned rule
    whose artifact evaluation never returns cannot hold the process open.
    The first exception raised by fn is re-raised once all workers finish.
    """
    results: List[Any] = [None] * len(items)
    errors: List[BaseException] = []
    indexes = iter(range(len(items)))
    lock = threading.Lock()

    def work() -> None:
        while True:
            with lock:
                index = next(indexes, None)
                if index is None or errors:
                    return
            try:
                results[index] = fn(items[index])
            except Exception as e:
                with lock:
                    errors.append(e)
                return

    threads = [
        threading.Thread(target=work, name="policyguard-artifact", daemon=True)
        for _ in range(min(workers, len(items)))
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    if errors:
        raise errors[0]
    return results


def make_violation(
    rule: Rule,
    artifact: Optional[Artifact] = None,
    *,
    line: Optional[int] = None,
    offset: Optional[int] = None,
    logical: str = "",
    path: Optional[str] = None,
    content: str = "",
    kind: ViolationKind = ViolationKind.VIOLATION,
    detail: str = "",
    trace: Optional[Dict[str, Any]] = None,
) -> Violation:
    """Build a Violation located at an artifact (or a logical location)."""
    sha256 = None
    if artifact is not None:
        path = artifact.relpath
        try:
            sha256 = artifact.sha256()
        except WalkError:
            sha256 = None

    return Violation(
        rule_id=rule.id,
        location=Location(path=path or "", line=line, offset=offset, logical=logical),
        content=content,
        kind=kind,
        detail=detail,
        sha256=sha256,
        trace=trace,
        timestamp=utc_timestamp(),
    )


class Matcher(ABC):
    """Abstract base class for matcher backends."""

    # Whether large and binary files are hidden from this matcher
    text_only: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the matcher identifier."""
        pass

    @property
    @abstractmethod
    def rule_types(self) -> Tuple[RuleType, ...]:
        """Return the rule types this matcher evaluates."""
        pass

    def file_patterns(self, rule: Rule) -> Optional[List[str]]:
        """Return include patterns selecting the rule's artifacts."""
        return [rule.file_pattern] if rule.file_pattern else None

    def evaluate(self, rule: Rule, source: ArtifactSource) -> List[Violation]:
        """Evaluate a rule against its artifacts.

        Args:
            rule: Rule to evaluate
            source: Artifacts bound to the rule

        Returns:
            Raw violations, in traversal order
        """
        return [v for batch in self.evaluate_each(rule, source) for v in batch]

    def evaluate_each(self, rule: Rule, source: ArtifactSource) -> List[List[Violation]]:
        """Evaluate every artifact, returning one violation list per artifact."""
        return source.map(lambda artifact: self._guarded(rule, artifact, source))

    @abstractmethod
    def evaluate_artifact(self, rule: Rule, artifact: Artifact) -> List[Violation]:
        """Evaluate a rule against a single artifact.

        Raises:
            WalkError: If the artifact cannot be read
            MatchError: If the artifact cannot be evaluated
        """
        pass

    def _guarded(self, rule: Rule, artifact: Artifact, source: ArtifactSource) -> List[Violation]:
        """Run evaluate_artifact, degrading errors so none is dropped silently."""
        try:
            return self.evaluate_artifact(rule, artifact)
        except WalkError as e:
            source.record_skip(e)
            return []
        except MatchError as e:
            logger.warning(f"Rule {rule.id}: cannot evaluate {artifact.relpath}: {e}")
            return [
                make_violation(
                    rule,
                    artifact,
                    content=str(e),
                    kind=ViolationKind.EVALUATION_ERROR,
                    detail=f"{self.name} evaluation failed",
                )
            ]
        except Exception as e:
            logger.exception(f"Rule {rule.id}: unexpected error evaluating {artifact.relpath}")
            return [
                make_violation(
                    rule,
                    artifact,
                    content=f"{type(e).__name__}: {e}",
                    kind=ViolationKind.EVALUATION_ERROR,
                    detail=f"{self.name} evaluation failed",
                )
            ]
