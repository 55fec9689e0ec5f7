"""Structured file matcher for assure-filetype rules.

Parses YAML, JSON, TOML and INI artifacts and checks them against the
rule's shape schema. Each schema issue becomes one violation whose logical
location is the offending key path.
"""

import configparser
import json
import tomllib
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple, Type

import yaml
from pydantic import BaseModel

from ..engine.walker import Artifact
from ..errors import MatchError
from ..policy.model import Rule, RuleType, StructureFormat, Violation, ViolationKind
from ..policy.schema import check_structure, compile_schema
from .base import Matcher, make_violation


def parse_ini(text: str) -> Dict[str, Any]:
    """Parse INI text into {section: {key: value}}."""
    parser = configparser.ConfigParser(interpolation=None)
    parser.read_string(text)
    data: Dict[str, Any] = {}
    if parser.defaults():
        data[parser.default_section] = dict(parser.defaults())
    for section in parser.sections():
        data[section] = {key: parser.get(section, key, raw=True) for key in parser.options(section)}
    return data


PARSERS = {
    StructureFormat.YAML: yaml.safe_load,
    StructureFormat.JSON: json.loads,
    StructureFormat.TOML: tomllib.loads,
    StructureFormat.INI: parse_ini,
}

PARSE_ERRORS = (
    yaml.YAMLError,
    json.JSONDecodeError,
    tomllib.TOMLDecodeError,
    configparser.Error,
)


def parse_document(text: str, fmt: StructureFormat) -> Any:
    """Parse a structured document.

    Raises:
        MatchError: If the text is not valid in the given format
    """
    try:
        return PARSERS[fmt](text)
    except PARSE_ERRORS as e:
        raise MatchError(f"Invalid {fmt.value}: {e}") from e


@lru_cache(maxsize=256)
def _model(schema_json: str, strict: bool) -> Type[BaseModel]:
    return compile_schema(json.loads(schema_json), strict=strict)


class StructuredAssureMatcher(Matcher):
    """Validates structured artifacts against a shape schema."""

    @property
    def name(self) -> str:
        return "assure-filetype"

    @property
    def rule_types(self) -> Tuple[RuleType, ...]:
        return (RuleType.ASSURE_FILETYPE,)

    def file_patterns(self, rule: Rule) -> Optional[List[str]]:
        return [rule.structure.file_pattern]

    def model_for(self, rule: Rule) -> Type[BaseModel]:
        structure = rule.structure
        # INI values are always strings, so coercion stays on for them
        strict = structure.format != StructureFormat.INI
        return _model(json.dumps(structure.schema, sort_keys=True, default=str), strict)

    def evaluate_artifact(self, rule: Rule, artifact: Artifact) -> List[Violation]:
        structure = rule.structure
        text = artifact.read_text()

        try:
            data = parse_document(text, structure.format)
        except MatchError as e:
            return [
                make_violation(
                    rule,
                    artifact,
                    content=str(e),
                    kind=ViolationKind.EVALUATION_ERROR,
                    detail=f"Cannot parse {structure.format.value} file",
                )
            ]

        return [
            make_violation(
                rule,
                artifact,
                logical=issue.path,
                content=issue.message,
                detail=f"Schema {issue.issue_type}",
            )
            for issue in check_structure(self.model_for(rule), data)
        ]
