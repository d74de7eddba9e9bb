from conversion_engine.validation.validator import (
    RecordValidation,
    ValidationOutcome,
    is_missing,
    missing_required_fields,
    select_options,
    validate,
    validate_record,
)
from conversion_engine.validation.values import (
    BoolValue,
    DateValue,
    FieldValue,
    JsonValue,
    NumberValue,
    SelectOptionValue,
    TextValue,
)

__all__ = [
    "RecordValidation",
    "ValidationOutcome",
    "is_missing",
    "missing_required_fields",
    "select_options",
    "validate",
    "validate_record",
    "BoolValue",
    "DateValue",
    "FieldValue",
    "JsonValue",
    "NumberValue",
    "SelectOptionValue",
    "TextValue",
]
