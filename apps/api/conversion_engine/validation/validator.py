from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from email_validator import EmailNotValidError, validate_email

from conversion_engine.schema.base import ComposedSchema, FieldDefinition, FieldType
from conversion_engine.validation.values import (
    BoolValue,
    DateValue,
    FieldValue,
    JsonValue,
    NumberValue,
    SelectOptionValue,
    TextValue,
    parse_datetime,
    parse_json,
    parse_number,
)

_URL_RE = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)
_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_PHONE_RE = re.compile(r"^\+?[0-9\s\-().]{7,20}$")


@dataclass(frozen=True, slots=True)
class ValidationOutcome:
    is_valid: bool
    error: str | None = None
    value: FieldValue | None = None


@dataclass(slots=True)
class RecordValidation:
    is_valid: bool
    errors: list[str] = field(default_factory=list)


def is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def select_options(ui_config: Mapping[str, Any]) -> list[tuple[str, str | None]]:
    options: list[tuple[str, str | None]] = []
    raw_options = ui_config.get("options") if isinstance(ui_config, Mapping) else None
    if not isinstance(raw_options, list):
        return options
    for item in raw_options:
        if isinstance(item, Mapping) and "value" in item:
            label = item.get("label")
            options.append((str(item["value"]), str(label) if label is not None else None))
        elif isinstance(item, (str, int, float)) and not isinstance(item, bool):
            options.append((str(item), None))
    return options


def validate(definition: FieldDefinition, value: Any) -> ValidationOutcome:
    if is_missing(value):
        if definition.required:
            return ValidationOutcome(False, f"{definition.label} is required")
        return ValidationOutcome(True)

    rules = definition.validation_rules or {}
    if definition.field_type == FieldType.NUMBER:
        return _validate_number(definition, value, rules)
    if definition.field_type == FieldType.BOOLEAN:
        if not isinstance(value, bool):
            return ValidationOutcome(False, f"{definition.label} must be a boolean")
        return ValidationOutcome(True, value=BoolValue(value))
    if definition.field_type == FieldType.DATE:
        parsed = parse_datetime(value)
        if parsed is None:
            return ValidationOutcome(False, f"{definition.label} must be a valid date")
        return ValidationOutcome(True, value=DateValue(parsed))
    if definition.field_type == FieldType.TEXT:
        return _validate_text(definition, value, rules)
    if definition.field_type == FieldType.JSON:
        ok, parsed = parse_json(value)
        if not ok:
            return ValidationOutcome(False, f"{definition.label} must be valid JSON")
        return ValidationOutcome(True, value=JsonValue(parsed))
    if definition.field_type == FieldType.SELECT:
        return _validate_select(definition, value)
    return ValidationOutcome(False, f"{definition.label} has unsupported type {definition.field_type}")


def _validate_number(definition: FieldDefinition, value: Any, rules: Mapping[str, Any]) -> ValidationOutcome:
    number = parse_number(value)
    if number is None:
        return ValidationOutcome(False, f"{definition.label} must be a finite number")

    minimum = parse_number(rules.get("min"))
    if minimum is not None and number < minimum:
        return ValidationOutcome(False, f"{definition.label} must be at least {rules.get('min')}")
    maximum = parse_number(rules.get("max"))
    if maximum is not None and number > maximum:
        return ValidationOutcome(False, f"{definition.label} must be at most {rules.get('max')}")
    return ValidationOutcome(True, value=NumberValue(number))


def _validate_text(definition: FieldDefinition, value: Any, rules: Mapping[str, Any]) -> ValidationOutcome:
    if not isinstance(value, str):
        return ValidationOutcome(False, f"{definition.label} must be a string")

    min_length = rules.get("minLength", rules.get("min_length"))
    if isinstance(min_length, int) and len(value) < min_length:
        return ValidationOutcome(False, f"{definition.label} must be at least {min_length} characters")
    max_length = rules.get("maxLength", rules.get("max_length"))
    if isinstance(max_length, int) and len(value) > max_length:
        return ValidationOutcome(False, f"{definition.label} must be at most {max_length} characters")

    pattern = rules.get("pattern")
    if isinstance(pattern, str) and pattern:
        try:
            matched = re.search(pattern, value) is not None
        except re.error:
            return ValidationOutcome(False, f"{definition.label} has an invalid pattern rule")
        if not matched:
            message = rules.get("message")
            return ValidationOutcome(False, str(message) if message else f"{definition.label} has an invalid format")

    format_error = _check_format(definition, value, rules.get("format"))
    if format_error is not None:
        return ValidationOutcome(False, format_error)
    return ValidationOutcome(True, value=TextValue(value))


def _check_format(definition: FieldDefinition, value: str, format_name: Any) -> str | None:
    if not format_name:
        return None
    if format_name == "email":
        try:
            validate_email(value, check_deliverability=False)
        except EmailNotValidError:
            return f"{definition.label} must be a valid email address"
        return None
    if format_name == "url":
        return None if _URL_RE.match(value) else f"{definition.label} must be a valid URL"
    if format_name == "uuid":
        return None if _UUID_RE.match(value) else f"{definition.label} must be a valid UUID"
    if format_name == "phone":
        return None if _PHONE_RE.match(value) else f"{definition.label} must be a valid phone number"
    return None


def _validate_select(definition: FieldDefinition, value: Any) -> ValidationOutcome:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return ValidationOutcome(False, f"{definition.label} must be one of the configured options")
    options = select_options(definition.ui_config)
    candidate = str(value)
    for option_value, option_label in options:
        if option_value == candidate:
            return ValidationOutcome(True, value=SelectOptionValue(option_value, option_label))
    allowed = ", ".join(option for option, _ in options)
    return ValidationOutcome(False, f"{definition.label} must be one of: {allowed}")


def validate_record(
    schema: ComposedSchema,
    record: Mapping[str, Any],
    *,
    extensions: Mapping[str, Any] | None = None,
) -> RecordValidation:
    """Validate every present field, then check required fields over the whole schema.

    Extension values may be passed flat in ``record`` or nested in ``extensions``.
    """

    ext_values: Mapping[str, Any] = extensions if extensions is not None else _nested_extensions(record)
    errors: list[str] = []

    for definition in schema.fields:
        present, value = _lookup(definition, record, ext_values)
        if not present or is_missing(value):
            if definition.required:
                errors.append(f"{definition.name}: {definition.label} is required")
            continue
        outcome = validate(definition, value)
        if not outcome.is_valid:
            errors.append(f"{definition.name}: {outcome.error}")

    return RecordValidation(is_valid=not errors, errors=errors)


def missing_required_fields(schema: ComposedSchema, names: Iterable[str]) -> list[str]:
    populated = set(names)
    return [item.name for item in schema.fields if item.required and item.name not in populated]


def _nested_extensions(record: Mapping[str, Any]) -> Mapping[str, Any]:
    nested = record.get("extensions")
    return nested if isinstance(nested, Mapping) else {}


def _lookup(definition: FieldDefinition, record: Mapping[str, Any], extensions: Mapping[str, Any]) -> tuple[bool, Any]:
    if definition.name in record and definition.name != "extensions":
        return True, record[definition.name]
    if definition.name in extensions:
        return True, extensions[definition.name]
    return False, None
