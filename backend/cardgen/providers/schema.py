import json
from typing import Any, Dict, List

import structlog

from cardgen.errors import ErrorKind, GatewayError, SchemaViolation

logger = structlog.get_logger()


def validate_content(content: str, schema: Dict[str, Any], strict: bool) -> Any:
    """
    Check model output against the top level of a JSON schema.

    Only ``type`` (object/array), ``required`` and ``additionalProperties:
    false`` are looked at, and only on the outermost value; nested schemas
    are left to the caller. Returns the parsed value.
    """
    try:
        parsed = json.loads(content)
    except (TypeError, ValueError) as exc:
        raise GatewayError(ErrorKind.INVALID_JSON, f"Failed to parse response as JSON: {exc}") from exc

    expected = schema.get("type")
    if expected == "object" and not isinstance(parsed, dict):
        return _type_mismatch(parsed, "object", strict)
    if expected == "array" and not isinstance(parsed, list):
        return _type_mismatch(parsed, "array", strict)

    if not strict or expected != "object":
        return parsed

    required = schema.get("required")
    if isinstance(required, list):
        missing = [name for name in required if name not in parsed]
        if missing:
            raise GatewayError(
                ErrorKind.SCHEMA_VALIDATION,
                f"Missing required properties: {', '.join(missing)}",
                violations=[
                    SchemaViolation(path=name, message=f"Required property '{name}' is missing")
                    for name in missing
                ],
            )

    properties = schema.get("properties")
    if schema.get("additionalProperties") is False and isinstance(properties, dict):
        extra = [key for key in parsed if key not in properties]
        if extra:
            raise GatewayError(
                ErrorKind.SCHEMA_VALIDATION,
                f"Additional properties not allowed: {', '.join(extra)}",
                violations=[
                    SchemaViolation(path=key, message=f"Additional property '{key}' is not allowed")
                    for key in extra
                ],
            )

    return parsed


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _type_mismatch(parsed: Any, expected: str, strict: bool) -> Any:
    message = f"Response does not match schema: expected {expected}"
    if strict:
        violations: List[SchemaViolation] = [
            SchemaViolation(path="", message=f"Expected {expected}, got {_type_name(parsed)}")
        ]
        raise GatewayError(ErrorKind.SCHEMA_VALIDATION, message, violations=violations)
    logger.warning("schema_validation_warning", error=message, got=_type_name(parsed))
    return parsed
