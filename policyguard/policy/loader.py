"""Policy loading and invariant enforcement.

Parses a declarative YAML (or JSON) policy document into a PolicyDocument.
Field names are case-insensitive and "_"/"-" separators are ignored, so
ErrorMessage, error_message and errormessage address the same field.
Any violated invariant raises a ValidationError subclass; loading never
returns a partial document.
"""

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..common.logger import get_logger
from ..errors import (
    DuplicateRuleIdError,
    InvalidFieldError,
    InvalidPatternError,
    MissingFieldError,
    ValidationError,
)
from .model import (
    ApiDescriptor,
    AuthMode,
    Confidence,
    PolicyDocument,
    RegoDescriptor,
    Rule,
    RuleType,
    StructureFormat,
    StructurePayload,
)
from .schema import SchemaError, compile_schema

logger = get_logger("policy_loader")

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD")

# Canonical (lowercase, separator-free) field name -> Rule attribute
RULE_FIELDS: Dict[str, str] = {
    "id": "id",
    "name": "name",
    "description": "description",
    "solution": "solution",
    "errormessage": "error_message",
    "error": "error_message",
    "type": "type",
    "environment": "environment",
    "enforcement": "enforcement",
    "fatal": "fatal",
    "tags": "tags",
    "impact": "impact",
    "confidence": "confidence",
    "patterns": "patterns",
    "filepattern": "file_pattern",
    "apiendpoint": "api_endpoint",
    "apirequest": "api_method",
    "apimethod": "api_method",
    "apibody": "api_body",
    "apiauth": "api_auth",
    "apiauthbasic": "api_auth_basic",
    "apiauthtoken": "api_auth_token",
    "apiinsecure": "api_insecure",
    "apitrace": "api_trace",
    "apicapture": "api_capture",
    "regofilepattern": "rego_file_pattern",
    "regopolicyfile": "rego_policy_file",
    "regopolicy": "rego_policy",
    "regopolicydata": "rego_policy_data",
    "regopolicyquery": "rego_policy_query",
}

# Structured format -> accepted field prefixes
STRUCTURE_PREFIXES: Dict[StructureFormat, Tuple[str, ...]] = {
    StructureFormat.YAML: ("yml", "yaml"),
    StructureFormat.JSON: ("json",),
    StructureFormat.TOML: ("toml",),
    StructureFormat.INI: ("ini",),
}

for _fmt, _prefixes in STRUCTURE_PREFIXES.items():
    for _prefix in _prefixes:
        RULE_FIELDS[f"{_prefix}filepattern"] = f"{_fmt.value}_file_pattern"
        RULE_FIELDS[f"{_prefix}structure"] = f"{_fmt.value}_structure"

DOCUMENT_FIELDS: Dict[str, str] = {
    "banner": "banner",
    "rules": "rules",
    "exitcritical": "exit_critical",
    "exitwarning": "exit_warning",
    "exitclean": "exit_clean",
    "exceptions": "exceptions",
    "exceptionmessage": "exception_message",
    "exclude": "exclude",
}

PAYLOAD_TYPES = (RuleType.COLLECT, RuleType.RUNTIME)


def canonical_key(key: Any) -> str:
    """Normalize a field name for case- and separator-insensitive lookup."""
    return re.sub(r"[\s_\-]", "", str(key)).lower()


def load_policy(path: str) -> PolicyDocument:
    """Load and validate a policy file.

    Args:
        path: Path to a YAML or JSON policy document

    Returns:
        Validated PolicyDocument

    Raises:
        ValidationError: If the file is unreadable or violates an invariant
    """
    policy_file = Path(path)
    try:
        text = policy_file.read_text(encoding="utf-8")
    except (IOError, OSError) as e:
        raise ValidationError(f"Cannot read policy file {path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValidationError(f"Policy file {path} is not valid YAML: {e}") from e

    document = parse_policy(data, base_dir=policy_file.parent, source=str(policy_file))
    logger.info(f"Loaded {len(document.rules)} rules from {path}")
    return document


def parse_policy(
    data: Any,
    base_dir: Optional[Path] = None,
    source: Optional[str] = None,
) -> PolicyDocument:
    """Build a PolicyDocument from an already-parsed mapping.

    Args:
        data: Parsed policy document
        base_dir: Directory relative file references are resolved against
        source: Where the document came from, for reporting

    Returns:
        Validated PolicyDocument

    Raises:
        ValidationError: On the first violated invariant
    """
    if not isinstance(data, dict):
        raise ValidationError("Policy document root must be a mapping")

    base_dir = base_dir or Path.cwd()
    fields = _canonicalize(data, DOCUMENT_FIELDS)

    raw_rules = fields.get("rules")
    if raw_rules is None:
        raw_rules = []
    if not isinstance(raw_rules, list):
        raise InvalidFieldError("rules must be a list", field="rules")

    rules: List[Rule] = []
    seen_ids = set()
    for index, raw_rule in enumerate(raw_rules):
        if not isinstance(raw_rule, dict):
            raise InvalidFieldError(f"Rule entry #{index} must be a mapping", field="rules")
        rule = parse_rule(raw_rule, base_dir)
        if rule.id in seen_ids:
            raise DuplicateRuleIdError("Duplicate rule ID", rule_id=rule.id, field="id")
        seen_ids.add(rule.id)
        rules.append(rule)

    exceptions = fields.get("exceptions") or []
    if not isinstance(exceptions, list):
        raise InvalidFieldError("exceptions must be a list of rule IDs", field="exceptions")

    exclude = fields.get("exclude") or []
    if isinstance(exclude, str):
        exclude = [exclude]
    if not isinstance(exclude, list):
        raise InvalidFieldError("exclude must be a pattern or a list of patterns", field="exclude")
    for pattern in exclude:
        _check_file_pattern(pattern, None, "exclude")

    kwargs: Dict[str, Any] = {}
    for name in ("banner", "exit_critical", "exit_warning", "exit_clean", "exception_message"):
        if fields.get(name) is not None:
            kwargs[name] = str(fields[name])

    return PolicyDocument(
        rules=tuple(rules),
        exceptions=frozenset(_parse_id(value, None) for value in exceptions),
        exclude=tuple(exclude),
        source=source,
        **kwargs,
    )


def parse_rule(data: Dict[str, Any], base_dir: Path) -> Rule:
    """Parse and validate a single rule mapping.

    Args:
        data: Raw rule mapping
        base_dir: Directory relative file references are resolved against

    Returns:
        Validated Rule

    Raises:
        ValidationError: If the rule violates an invariant
    """
    fields = _canonicalize(data, RULE_FIELDS)

    if fields.get("id") is None:
        raise MissingFieldError("Rule is missing its id", field="id")
    rule_id = _parse_id(fields["id"], None)

    raw_type = fields.get("type")
    if not raw_type:
        raise MissingFieldError("type is required", rule_id=rule_id, field="type")
    try:
        rule_type = RuleType(str(raw_type).strip().lower())
    except ValueError:
        raise InvalidFieldError(
            f"Unknown rule type {raw_type!r}", rule_id=rule_id, field="type"
        ) from None

    raw_confidence = fields.get("confidence") or Confidence.MEDIUM.value
    try:
        confidence = Confidence(str(raw_confidence).strip().lower())
    except ValueError:
        raise InvalidFieldError(
            f"Confidence must be low, medium or high, got {raw_confidence!r}",
            rule_id=rule_id,
            field="confidence",
        ) from None

    patterns = fields.get("patterns") or []
    if isinstance(patterns, str):
        patterns = [patterns]
    if not isinstance(patterns, list):
        raise InvalidFieldError("patterns must be a list", rule_id=rule_id, field="patterns")
    if any(isinstance(p, (dict, list)) for p in patterns):
        raise InvalidFieldError("patterns must be strings", rule_id=rule_id, field="patterns")
    patterns = tuple(str(p) for p in patterns)

    rule_kwargs: Dict[str, Any] = dict(
        id=rule_id,
        name=str(fields.get("name") or f"Rule {rule_id}"),
        type=rule_type,
        description=str(fields.get("description") or ""),
        solution=str(fields.get("solution") or ""),
        error_message=str(fields.get("error_message") or ""),
        environment=_parse_environment(fields.get("environment"), rule_id),
        enforcement=_parse_bool(fields.get("enforcement"), True, rule_id, "enforcement"),
        fatal=_parse_bool(fields.get("fatal"), False, rule_id, "fatal"),
        tags=_parse_tags(fields.get("tags"), rule_id),
        impact=str(fields.get("impact") or ""),
        confidence=confidence,
        patterns=patterns,
        file_pattern=_parse_file_pattern(fields.get("file_pattern"), rule_id, "filepattern"),
    )

    if rule_type in (RuleType.SCAN, RuleType.ASSURE_REGEX):
        if not patterns:
            raise MissingFieldError(
                f"patterns must not be empty for {rule_type.value} rules",
                rule_id=rule_id,
                field="patterns",
            )
        _check_patterns(patterns, rule_id)
        _check_file_pattern(rule_kwargs["file_pattern"], rule_id, "filepattern")

    elif rule_type == RuleType.ASSURE_FILETYPE:
        rule_kwargs["structure"] = _parse_structure(fields, rule_id, required=True)

    elif rule_type == RuleType.ASSURE_API:
        rule_kwargs["api"] = _parse_api(fields, rule_id, required=True)
        _check_patterns(patterns, rule_id)
        _check_file_pattern(rule_kwargs["file_pattern"], rule_id, "filepattern")

    elif rule_type == RuleType.ASSURE_REGO:
        rule_kwargs["rego"] = _parse_rego(fields, rule_id, base_dir, required=True)
        rule_kwargs["api"] = _parse_api(fields, rule_id, required=False)

    elif rule_type in PAYLOAD_TYPES:
        rule_kwargs["rego"] = _parse_rego(fields, rule_id, base_dir, required=False)
        rule_kwargs["api"] = _parse_api(fields, rule_id, required=False)
        rule_kwargs["structure"] = _parse_structure(fields, rule_id, required=False)
        _check_patterns(patterns, rule_id)
        _check_file_pattern(rule_kwargs["file_pattern"], rule_id, "filepattern")
        if not (
            patterns
            or rule_kwargs["rego"]
            or rule_kwargs["api"]
            or rule_kwargs["structure"]
        ):
            raise MissingFieldError(
                f"{rule_type.value} rules need patterns or a structure, api or rego payload",
                rule_id=rule_id,
                field="patterns",
            )

    return Rule(**rule_kwargs)


def _canonicalize(data: Dict[str, Any], known: Dict[str, str]) -> Dict[str, Any]:
    """Map raw keys to attribute names, dropping unknown keys."""
    fields: Dict[str, Any] = {}
    for key, value in data.items():
        attribute = known.get(canonical_key(key))
        if attribute is None:
            logger.debug(f"Ignoring unknown policy field: {key}")
            continue
        if attribute in fields and fields[attribute] is not None and value is None:
            continue
        fields[attribute] = value
    return fields


def _parse_id(value: Any, rule_id: Optional[int]) -> int:
    if isinstance(value, bool):
        raise InvalidFieldError(f"Rule ID must be an integer, got {value!r}", field="id")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and re.fullmatch(r"\s*-?\d+\s*", value):
        return int(value)
    raise InvalidFieldError(f"Rule ID must be an integer, got {value!r}", rule_id=rule_id, field="id")


def _parse_bool(value: Any, default: bool, rule_id: int, field: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "yes", "on", "1"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "no", "off", "0"):
        return False
    raise InvalidFieldError(f"{field} must be a boolean, got {value!r}", rule_id=rule_id, field=field)


def _string_list(value: Any, rule_id: int, field: str) -> List[str]:
    """Accept a comma separated string or a list of scalars."""
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list) or any(isinstance(item, (dict, list, bool)) for item in value):
        raise InvalidFieldError(
            f"{field} must be a comma separated string or a list of strings, got {value!r}",
            rule_id=rule_id,
            field=field,
        )
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _parse_tags(value: Any, rule_id: int) -> frozenset:
    if value is None or value == "":
        return frozenset()
    return frozenset(_string_list(value, rule_id, "tags"))


def _parse_environment(value: Any, rule_id: int) -> str:
    if value is None or value == "":
        return "all"
    return ",".join(_string_list(value, rule_id, "environment")) or "all"


def _parse_file_pattern(value: Any, rule_id: int, field: str) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidFieldError(
            f"{field} must be a single pattern string, got {value!r}", rule_id=rule_id, field=field
        )
    return value


def _check_patterns(patterns: Tuple[str, ...], rule_id: int) -> None:
    for pattern in patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            raise InvalidPatternError(
                f"Invalid regex {pattern!r}: {e}", rule_id=rule_id, field="patterns"
            ) from e


def _check_file_pattern(pattern: Any, rule_id: Optional[int], field: str) -> None:
    if pattern is not None and not isinstance(pattern, str):
        raise InvalidFieldError(
            f"{field} must be a pattern string, got {pattern!r}", rule_id=rule_id, field=field
        )
    if not pattern or pattern.startswith("glob:"):
        return
    try:
        re.compile(pattern)
    except re.error as e:
        raise InvalidPatternError(
            f"Invalid file pattern {pattern!r}: {e}", rule_id=rule_id, field=field
        ) from e


def _parse_structure(
    fields: Dict[str, Any], rule_id: int, required: bool
) -> Optional[StructurePayload]:
    populated = []
    for fmt in StructureFormat:
        file_pattern = fields.get(f"{fmt.value}_file_pattern")
        structure = fields.get(f"{fmt.value}_structure")
        if file_pattern or structure:
            populated.append((fmt, file_pattern, structure))

    if not populated:
        if required:
            raise MissingFieldError(
                "assure-filetype rules need one of yml, json, toml or ini "
                "filepattern/structure pairs",
                rule_id=rule_id,
                field="structure",
            )
        return None
    if len(populated) > 1:
        formats = ", ".join(fmt.value for fmt, _, _ in populated)
        raise InvalidFieldError(
            f"Exactly one structured format may be populated, found: {formats}",
            rule_id=rule_id,
            field="structure",
        )

    fmt, file_pattern, structure = populated[0]
    if not file_pattern:
        raise MissingFieldError(
            f"{fmt.value} structure requires a file pattern",
            rule_id=rule_id,
            field=f"{fmt.value}_filepattern",
        )
    if structure is None or structure == "":
        raise MissingFieldError(
            f"{fmt.value} file pattern requires a structure",
            rule_id=rule_id,
            field=f"{fmt.value}_structure",
        )
    _check_file_pattern(file_pattern, rule_id, f"{fmt.value}_filepattern")

    if isinstance(structure, str):
        try:
            structure = yaml.safe_load(structure)
        except yaml.YAMLError as e:
            raise InvalidFieldError(
                f"Structure is not valid YAML/JSON: {e}",
                rule_id=rule_id,
                field=f"{fmt.value}_structure",
            ) from e

    try:
        compile_schema(structure, strict=fmt != StructureFormat.INI)
    except SchemaError as e:
        raise InvalidFieldError(
            f"Invalid structure schema: {e}", rule_id=rule_id, field=f"{fmt.value}_structure"
        ) from e

    return StructurePayload(format=fmt, file_pattern=str(file_pattern), schema=structure)


def _parse_api(fields: Dict[str, Any], rule_id: int, required: bool) -> Optional[ApiDescriptor]:
    endpoint = fields.get("api_endpoint")
    if not endpoint:
        if required:
            raise MissingFieldError(
                "api_endpoint is required for assure-api rules",
                rule_id=rule_id,
                field="api_endpoint",
            )
        return None

    method = str(fields.get("api_method") or "").strip().upper()
    if not method:
        raise MissingFieldError("api_request is required", rule_id=rule_id, field="api_request")
    if method not in HTTP_METHODS:
        raise InvalidFieldError(
            f"Unsupported HTTP method {method}", rule_id=rule_id, field="api_request"
        )

    raw_auth = str(fields.get("api_auth") or AuthMode.NONE.value).strip().lower()
    try:
        auth = AuthMode(raw_auth)
    except ValueError:
        raise InvalidFieldError(
            f"api_auth must be none, basic or token, got {raw_auth!r}",
            rule_id=rule_id,
            field="api_auth",
        ) from None

    if auth == AuthMode.BASIC and not fields.get("api_auth_basic"):
        raise MissingFieldError(
            "api_auth_basic must name the credential variable for basic auth",
            rule_id=rule_id,
            field="api_auth_basic",
        )
    if auth == AuthMode.TOKEN and not fields.get("api_auth_token"):
        raise MissingFieldError(
            "api_auth_token must name the credential variable for token auth",
            rule_id=rule_id,
            field="api_auth_token",
        )

    capture = _parse_file_pattern(fields.get("api_capture"), rule_id, "api_capture")
    if capture:
        try:
            re.compile(capture)
        except re.error as e:
            raise InvalidPatternError(
                f"Invalid capture regex {capture!r}: {e}", rule_id=rule_id, field="api_capture"
            ) from e

    body = fields.get("api_body")
    if body is not None and not isinstance(body, str):
        body = json.dumps(body)

    return ApiDescriptor(
        endpoint=str(endpoint),
        method=method,
        body=body,
        auth=auth,
        auth_basic=fields.get("api_auth_basic") or None,
        auth_token=fields.get("api_auth_token") or None,
        insecure=_parse_bool(fields.get("api_insecure"), False, rule_id, "api_insecure"),
        trace=_parse_bool(fields.get("api_trace"), False, rule_id, "api_trace"),
        capture=capture,
    )


def _parse_rego(
    fields: Dict[str, Any], rule_id: int, base_dir: Path, required: bool
) -> Optional[RegoDescriptor]:
    policy_file = fields.get("rego_policy_file")
    policy = fields.get("rego_policy")
    query = fields.get("rego_policy_query")
    data = fields.get("rego_policy_data")
    for name, value in (("rego_policy_file", policy_file), ("rego_policy", policy)):
        if value is not None and not isinstance(value, str):
            raise InvalidFieldError(f"{name} must be a string", rule_id=rule_id, field=name)

    if not (policy_file or policy or query):
        if required:
            raise MissingFieldError(
                "rego_policy_file (or rego_policy) is required for assure-rego rules",
                rule_id=rule_id,
                field="rego_policy_file",
            )
        return None

    if policy_file and not policy:
        path = Path(policy_file)
        if not path.is_absolute():
            path = base_dir / path
        try:
            policy = path.read_text(encoding="utf-8")
        except (IOError, OSError) as e:
            raise InvalidFieldError(
                f"Cannot read Rego policy {path}: {e}", rule_id=rule_id, field="rego_policy_file"
            ) from e
    if not policy:
        raise MissingFieldError(
            "rego_policy_file (or rego_policy) is required",
            rule_id=rule_id,
            field="rego_policy_file",
        )

    if not query:
        raise MissingFieldError(
            "rego_policy_query is required", rule_id=rule_id, field="rego_policy_query"
        )
    query = str(query).strip()
    if not query.startswith("data."):
        raise InvalidFieldError(
            f"Rego query must start with 'data.', got {query!r}",
            rule_id=rule_id,
            field="rego_policy_query",
        )

    package = rego_package(policy)
    if package is None:
        raise InvalidFieldError(
            "Rego policy has no package declaration", rule_id=rule_id, field="rego_policy_file"
        )
    if not (query == f"data.{package}" or query.startswith(f"data.{package}.")):
        raise InvalidFieldError(
            f"Rego query {query!r} does not address package {package!r}",
            rule_id=rule_id,
            field="rego_policy_query",
        )

    if data is None:
        raise MissingFieldError(
            "rego_policy_data is required", rule_id=rule_id, field="rego_policy_data"
        )
    if isinstance(data, str):
        data = _load_data_file(data, base_dir, rule_id)
    if not isinstance(data, dict):
        raise InvalidFieldError(
            "rego_policy_data must be a mapping or a JSON/YAML file containing one",
            rule_id=rule_id,
            field="rego_policy_data",
        )

    file_pattern = fields.get("rego_file_pattern") or None
    _check_file_pattern(file_pattern, rule_id, "rego_filepattern")

    return RegoDescriptor(
        query=query,
        data=data,
        policy_file=str(policy_file) if policy_file else None,
        policy=policy,
        file_pattern=file_pattern,
    )


def _load_data_file(reference: str, base_dir: Path, rule_id: int) -> Any:
    path = Path(reference)
    if not path.is_absolute():
        path = base_dir / path
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except (IOError, OSError, yaml.YAMLError) as e:
        raise InvalidFieldError(
            f"Cannot load Rego data {path}: {e}", rule_id=rule_id, field="rego_policy_data"
        ) from e


def rego_package(source: str) -> Optional[str]:
    """Extract the package name declared by a Rego module."""
    match = re.search(r"^\s*package\s+([\w.]+)", source, re.MULTILINE)
    return match.group(1) if match else None
