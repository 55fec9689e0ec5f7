"""Matcher backends.

Each backend evaluates one family of rule types against the artifacts an
ArtifactSource binds to a rule.
"""

from .api import ApiAssureMatcher
from .base import ArtifactSource, Matcher, make_violation
from .pattern import PatternAssureMatcher, PatternScanMatcher
from .registry import MatcherRegistry, create_registry, effective_type, get_registry
from .rego import PolicyLangAssureMatcher
from .structured import StructuredAssureMatcher

__all__ = [
    "ApiAssureMatcher",
    "ArtifactSource",
    "Matcher",
    "MatcherRegistry",
    "PatternAssureMatcher",
    "PatternScanMatcher",
    "PolicyLangAssureMatcher",
    "StructuredAssureMatcher",
    "create_registry",
    "effective_type",
    "get_registry",
    "make_violation",
]
