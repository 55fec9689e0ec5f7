"""Shape schemas for assure-filetype rules.

A schema is a mapping of keys to sub-schemas. Leaves are type names
(str, int, float, bool, list, dict, any, null) or literal values that must
match exactly. A one-element list means "list of". Keys ending in "?" are
optional and "__closed__: true" forbids keys the schema does not declare.

Schemas are compiled into pydantic models once, at policy load time.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, create_model
from pydantic import ValidationError as PydanticValidationError

CLOSED_KEY = "__closed__"

TYPE_NAMES: Dict[str, Any] = {
    "str": str,
    "string": str,
    "int": int,
    "integer": int,
    "float": float,
    "number": float,
    "bool": bool,
    "boolean": bool,
    "list": list,
    "dict": dict,
    "map": dict,
    "any": Any,
    "null": type(None),
}


class SchemaError(ValueError):
    """Raised when a shape schema cannot be compiled."""


@dataclass(frozen=True)
class SchemaIssue:
    """One way a document fails its schema."""

    path: str
    issue_type: str  # missing, forbidden, mismatch
    message: str


def compile_schema(schema: Dict[str, Any], strict: bool = True) -> Type[BaseModel]:
    """Compile a shape schema into a pydantic model.

    Args:
        schema: Shape schema mapping
        strict: Disable type coercion (off for INI, where every value is a string)

    Returns:
        Model class validating documents against the schema

    Raises:
        SchemaError: If the schema is malformed
    """
    if not isinstance(schema, dict):
        raise SchemaError(f"Schema root must be a mapping, got {type(schema).__name__}")
    return _build_model(schema, "Structure", strict)


def _build_model(spec: Dict[str, Any], name: str, strict: bool) -> Type[BaseModel]:
    closed = spec.get(CLOSED_KEY, False)
    if not isinstance(closed, bool):
        raise SchemaError(f"{CLOSED_KEY} must be a boolean in {name}")

    fields: Dict[str, Any] = {}
    for index, (key, sub) in enumerate(spec.items()):
        if key == CLOSED_KEY:
            continue
        key = str(key)
        optional = key.endswith("?")
        alias = key[:-1] if optional else key
        if not alias:
            raise SchemaError(f"Empty key in {name}")

        annotation = _annotation(sub, f"{name}_{index}", strict)
        # Field names are synthetic so any document key works as an alias
        if optional:
            fields[f"field_{index}"] = (Optional[annotation], Field(default=None, alias=alias))
        else:
            fields[f"field_{index}"] = (annotation, Field(alias=alias))

    config = ConfigDict(strict=strict, extra="forbid" if closed else "allow")
    return create_model(name, __config__=config, **fields)


def _annotation(spec: Any, name: str, strict: bool) -> Any:
    if isinstance(spec, dict):
        return _build_model(spec, name, strict)
    if isinstance(spec, list):
        if len(spec) != 1:
            raise SchemaError(f"List schema in {name} must have exactly one element")
        return List[_annotation(spec[0], f"{name}_item", strict)]
    if isinstance(spec, str) and spec.lower() in TYPE_NAMES:
        return TYPE_NAMES[spec.lower()]
    if spec is None:
        return type(None)
    if isinstance(spec, (str, int, float, bool)):
        return Literal[spec]
    raise SchemaError(f"Unsupported schema value {spec!r} in {name}")


def check_structure(model: Type[BaseModel], data: Any) -> List[SchemaIssue]:
    """Validate a parsed document against a compiled schema.

    Args:
        model: Model from compile_schema()
        data: Parsed document

    Returns:
        Issues in a stable order, empty if the document conforms
    """
    if not isinstance(data, dict):
        return [
            SchemaIssue(
                path="",
                issue_type="mismatch",
                message=f"Document root must be a mapping, got {type(data).__name__}",
            )
        ]

    try:
        model.model_validate(data)
    except PydanticValidationError as e:
        issues = []
        for error in e.errors(include_url=False):
            path = ".".join(str(part) for part in error["loc"])
            if error["type"] == "missing":
                issue_type = "missing"
                message = f"Missing required key: {path}"
            elif error["type"] == "extra_forbidden":
                issue_type = "forbidden"
                message = f"Key not allowed: {path}"
            else:
                issue_type = "mismatch"
                message = f"{path}: {error['msg']}"
            issues.append(SchemaIssue(path=path, issue_type=issue_type, message=message))
        return sorted(set(issues), key=lambda i: (i.path, i.issue_type, i.message))
    return []
