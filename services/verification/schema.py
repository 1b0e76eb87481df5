"""Expected-output schema checks: {field: {type, minLength, minItems, value}}."""

from typing import Dict, List, Any
from shared.utils import resolve_path

TYPE_NAMES = ("string", "number", "integer", "boolean", "object", "array", "null")


def matches_type(value: Any, type_name: str) -> bool:
    if type_name == "string":
        return isinstance(value, str)
    if type_name == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if type_name == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if type_name == "boolean":
        return isinstance(value, bool)
    if type_name == "object":
        return isinstance(value, dict)
    if type_name == "array":
        return isinstance(value, list)
    if type_name == "null":
        return value is None
    return False


def check_schema(output: Any, schema: Dict[str, Any]) -> List[str]:
    """Returns one message per mismatch; an empty list means the output conforms"""
    errors = []
    for field, rules in schema.items():
        found, value = resolve_path(output, field)
        if not found:
            errors.append(f"{field}: missing")
            continue

        if not isinstance(rules, dict):
            if value != rules:
                errors.append(f"{field}: expected {rules!r}, got {value!r}")
            continue

        type_name = rules.get("type")
        if type_name is not None:
            if type_name not in TYPE_NAMES:
                errors.append(f"{field}: unknown type '{type_name}'")
                continue
            if not matches_type(value, type_name):
                errors.append(f"{field}: expected {type_name}, got {type(value).__name__}")
                continue

        min_length = rules.get("minLength")
        if min_length is not None and isinstance(value, str) and len(value) < min_length:
            errors.append(f"{field}: length {len(value)} is below minLength {min_length}")

        min_items = rules.get("minItems")
        if min_items is not None and isinstance(value, list) and len(value) < min_items:
            errors.append(f"{field}: {len(value)} items is below minItems {min_items}")

        if "value" in rules and value != rules["value"]:
            errors.append(f"{field}: expected {rules['value']!r}, got {value!r}")

    return errors
