"""Matcher registry: the dispatch table from rule type to backend.

collect and runtime rules have no backend of their own. They are routed by
the payload they carry: rego, then api, then structure, then patterns.
"""

from typing import Dict, List, Optional

import httpx

from ..common.config import Settings
from ..common.logger import get_logger
from ..policy.model import Rule, RuleType
from .api import ApiAssureMatcher
from .base import Matcher
from .pattern import PatternAssureMatcher, PatternScanMatcher
from .rego import PolicyLangAssureMatcher
from .structured import StructuredAssureMatcher

logger = get_logger("matcher_registry")

# Rule types routed by payload instead of by type
PAYLOAD_ROUTED = (RuleType.COLLECT, RuleType.RUNTIME)


def effective_type(rule: Rule) -> RuleType:
    """Return the rule type whose backend evaluates a rule.

    Args:
        rule: Rule to route

    Returns:
        The rule's own type, or for collect/runtime rules the type implied
        by the populated payload
    """
    if rule.type not in PAYLOAD_ROUTED:
        return rule.type
    if rule.rego is not None:
        return RuleType.ASSURE_REGO
    if rule.api is not None:
        return RuleType.ASSURE_API
    if rule.structure is not None:
        return RuleType.ASSURE_FILETYPE
    return RuleType.SCAN


class MatcherRegistry:
    """Registry for matcher backends."""

    def __init__(self) -> None:
        self._matchers: Dict[RuleType, Matcher] = {}

    def register(self, matcher: Matcher) -> None:
        """Register a matcher for every rule type it evaluates.

        Args:
            matcher: Matcher instance to register
        """
        for rule_type in matcher.rule_types:
            if rule_type in PAYLOAD_ROUTED:
                raise ValueError(f"{rule_type.value} rules are routed by payload")
            if rule_type in self._matchers:
                logger.warning(f"Overwriting existing matcher for rule type: {rule_type.value}")
            self._matchers[rule_type] = matcher
            logger.debug(f"Registered matcher {matcher.name} for {rule_type.value}")

    def unregister(self, rule_type: RuleType) -> None:
        if rule_type in self._matchers:
            del self._matchers[rule_type]
            logger.debug(f"Unregistered matcher for rule type: {rule_type.value}")

    def get_matcher(self, rule: Rule) -> Optional[Matcher]:
        """Get the matcher evaluating a rule.

        Args:
            rule: Rule to route

        Returns:
            Matcher or None if no backend is registered for the rule
        """
        return self._matchers.get(effective_type(rule))

    def list_types(self) -> List[RuleType]:
        return list(self._matchers.keys())

    def clear(self) -> None:
        """Clear all registered matchers (mainly for testing)."""
        self._matchers.clear()


def create_registry(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> MatcherRegistry:
    """Build a registry holding every built-in matcher.

    Args:
        settings: Runtime settings passed to network and subprocess matchers
        transport: Optional httpx transport for API requests

    Returns:
        Populated MatcherRegistry
    """
    api_matcher = ApiAssureMatcher(settings, transport=transport)

    registry = MatcherRegistry()
    registry.register(PatternScanMatcher())
    registry.register(PatternAssureMatcher())
    registry.register(StructuredAssureMatcher())
    registry.register(api_matcher)
    registry.register(PolicyLangAssureMatcher(settings, api_matcher=api_matcher))
    return registry


_registry: Optional[MatcherRegistry] = None


def get_registry() -> MatcherRegistry:
    """Get the global matcher registry, built from get_settings() on first use.

    Returns:
        Global MatcherRegistry instance
    """
    global _registry
    if _registry is None:
        _registry = create_registry()
    return _registry
