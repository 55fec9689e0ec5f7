"""Policy model and loader.

A policy document is a banner, an ordered list of rules and three exit
message templates. Rules are typed by RuleType and carry only the payload
their type needs.
"""

from .model import (
    ApiDescriptor,
    AuthMode,
    Confidence,
    Location,
    PolicyDocument,
    RegoDescriptor,
    Rule,
    RuleType,
    StructureFormat,
    StructurePayload,
    Violation,
    ViolationKind,
)
from .loader import load_policy, parse_policy, parse_rule

__all__ = [
    "ApiDescriptor",
    "AuthMode",
    "Confidence",
    "Location",
    "PolicyDocument",
    "RegoDescriptor",
    "Rule",
    "RuleType",
    "StructureFormat",
    "StructurePayload",
    "Violation",
    "ViolationKind",
    "load_policy",
    "parse_policy",
    "parse_rule",
]
