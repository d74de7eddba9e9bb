from __future__ import annotations

import pytest

from conversion_engine.conversion.conditions import (
    BooleanOp,
    ConditionEvaluator,
    ConditionGroup,
    ConditionLeaf,
    ConditionOperator,
    MAX_CONDITION_DEPTH,
    ConditionParseError,
    TriggerDiagnostic,
    condition_to_dict,
    parse_condition,
    validate_trigger_conditions,
)
from conversion_engine.schema.base import ComposedSchema, FieldDefinition, FieldSource, FieldType


@pytest.fixture()
def evaluator() -> ConditionEvaluator:
    return ConditionEvaluator()


@pytest.fixture()
def leads_schema() -> ComposedSchema:
    return ComposedSchema(
        tenant_id="tenant-a",
        entity_table="leads",
        fields=(
            FieldDefinition(name="name", field_type=FieldType.TEXT, required=True),
            FieldDefinition(name="status", field_type=FieldType.TEXT),
            FieldDefinition(name="estimated_value", field_type=FieldType.NUMBER),
            FieldDefinition(name="close_date", field_type=FieldType.DATE),
            FieldDefinition(name="priority", field_type=FieldType.SELECT, source=FieldSource.EXTENSION),
        ),
    )


def test_status_equality_trigger(evaluator: ConditionEvaluator) -> None:
    condition = {"field": "status", "operator": "eq", "value": "won"}

    assert evaluator.evaluate(condition, {"status": "won"}) is True
    assert evaluator.evaluate(condition, {"status": "open"}) is False


def test_empty_groups(evaluator: ConditionEvaluator) -> None:
    assert evaluator.evaluate({"op": "AND", "children": []}, {}) is True
    assert evaluator.evaluate({"op": "OR", "children": []}, {}) is False
    assert evaluator.evaluate({"and": []}, {}) is True
    assert evaluator.evaluate({"or": []}, {}) is False
    assert evaluator.evaluate({}, {}) is True
    assert evaluator.evaluate(None, {"status": "any"}) is True


def test_nested_groups_in_both_shapes(evaluator: ConditionEvaluator) -> None:
    record = {"status": "won", "estimated_value": 5000, "extensions": {"priority": "high"}}
    op_shape = {
        "op": "AND",
        "children": [
            {"field": "status", "operator": "eq", "value": "won"},
            {
                "op": "OR",
                "children": [
                    {"field": "estimated_value", "operator": "gte", "value": 10000},
                    {"field": "priority", "operator": "in", "value": ["high", "urgent"]},
                ],
            },
        ],
    }
    keyed_shape = {
        "and": [
            {"field": "status", "operator": "eq", "value": "won"},
            {
                "or": [
                    {"field": "estimated_value", "operator": "gte", "value": 10000},
                    {"field": "priority", "operator": "in", "value": ["high", "urgent"]},
                ]
            },
        ]
    }

    assert evaluator.evaluate(op_shape, record) is True
    assert evaluator.evaluate(keyed_shape, record) is True
    assert evaluator.evaluate(keyed_shape, {**record, "extensions": {"priority": "low"}}) is False


@pytest.mark.parametrize(
    ("operator", "value", "expected"),
    [
        ("ne", "lost", True),
        ("gt", 999, True),
        ("gt", 1000, False),
        ("gte", "1000", True),
        ("lt", 1000.5, True),
        ("lte", 999, False),
        ("in", [1, 1000], True),
        ("not_in", [1, 2], True),
    ],
)
def test_comparison_operators(evaluator: ConditionEvaluator, operator: str, value: object, expected: bool) -> None:
    field_name = "status" if operator == "ne" else "estimated_value"
    record = {"status": "won", "estimated_value": 1000}

    assert evaluator.evaluate({"field": field_name, "operator": operator, "value": value}, record) is expected


def test_like_is_case_insensitive_substring(evaluator: ConditionEvaluator) -> None:
    record = {"name": "Acme Holdings"}

    assert evaluator.evaluate({"field": "name", "operator": "like", "value": "HOLD"}, record) is True
    assert evaluator.evaluate({"field": "name", "operator": "like", "value": "corp"}, record) is False


def test_null_operators(evaluator: ConditionEvaluator, leads_schema: ComposedSchema) -> None:
    record = {"status": None}

    assert evaluator.evaluate({"field": "status", "operator": "is_null"}, record, leads_schema) is True
    assert evaluator.evaluate({"field": "status", "operator": "is_not_null"}, record, leads_schema) is False
    # known to the schema but absent from the record resolves to null
    assert evaluator.evaluate({"field": "close_date", "operator": "is_null"}, {}, leads_schema) is True


def test_dates_compare_chronologically(evaluator: ConditionEvaluator, leads_schema: ComposedSchema) -> None:
    record = {"close_date": "2026-05-01T00:00:00Z"}

    assert evaluator.evaluate({"field": "close_date", "operator": "gt", "value": "2026-04-30"}, record, leads_schema) is True
    assert evaluator.evaluate({"field": "close_date", "operator": "eq", "value": "2026-05-01"}, record, leads_schema) is True


def test_booleans_never_equal_numbers(evaluator: ConditionEvaluator) -> None:
    assert evaluator.evaluate({"field": "flag", "operator": "eq", "value": 1}, {"flag": True}) is False
    assert evaluator.evaluate({"field": "flag", "operator": "eq", "value": True}, {"flag": True}) is True


def test_unknown_field_is_false_with_diagnostic(evaluator: ConditionEvaluator, leads_schema: ComposedSchema) -> None:
    diagnostics: list[TriggerDiagnostic] = []

    result = evaluator.evaluate({"field": "missing", "operator": "eq", "value": 1}, {"status": "won"}, leads_schema, diagnostics)

    assert result is False
    assert [item.reason for item in diagnostics] == ["unknown_field"]
    assert diagnostics[0].field == "missing"


def test_non_comparable_operands_are_false_with_diagnostic(evaluator: ConditionEvaluator) -> None:
    diagnostics: list[TriggerDiagnostic] = []

    result = evaluator.evaluate({"field": "status", "operator": "gt", "value": 5}, {"status": "won"}, None, diagnostics)

    assert result is False
    assert [item.reason for item in diagnostics] == ["not_comparable"]


@pytest.mark.parametrize(
    "condition",
    [
        "status == won",
        {"field": "status"},
        {"field": "status", "operator": "matches", "value": "x"},
        {"field": "status", "operator": "in", "value": "won"},
        {"op": "XOR", "children": []},
        {"and": [{"field": "status", "operator": "eq", "value": "won"}], "or": []},
        {"op": "AND", "children": [{"op": "OR", "children": [42]}]},
    ],
)
def test_malformed_conditions_never_raise(evaluator: ConditionEvaluator, condition: object) -> None:
    diagnostics: list[TriggerDiagnostic] = []

    assert evaluator.evaluate(condition, {"status": "won"}, None, diagnostics) is False  # type: ignore[arg-type]
    assert diagnostics
    assert diagnostics[0].reason == "malformed_condition"


@pytest.mark.parametrize(
    "record",
    [
        {},
        {"status": None},
        {"status": 12},
        {"status": ["won"]},
        {"status": {"nested": True}},
        {"extensions": "not-a-map"},
    ],
)
def test_evaluation_is_total_for_odd_records(evaluator: ConditionEvaluator, record: dict) -> None:
    condition = {
        "or": [
            {"field": "status", "operator": "like", "value": "wo"},
            {"field": "status", "operator": "gte", "value": 3},
            {"field": "status", "operator": "in", "value": ["won"]},
        ]
    }

    assert isinstance(evaluator.evaluate(condition, record), bool)


def test_parse_condition_builds_typed_tree() -> None:
    node = parse_condition({"or": [{"field": "status", "operator": "eq", "value": "won"}]})

    assert node == ConditionGroup(
        op=BooleanOp.OR,
        children=(ConditionLeaf(field="status", operator=ConditionOperator.EQ, value="won"),),
    )
    assert condition_to_dict(node) == {
        "op": "OR",
        "children": [{"field": "status", "operator": "eq", "value": "won"}],
    }


def test_parse_condition_reports_path() -> None:
    with pytest.raises(ConditionParseError) as exc_info:
        parse_condition({"op": "AND", "children": [{"field": "status", "operator": "eq"}]})

    assert exc_info.value.path == "conditions.children[0].value"


def test_validate_trigger_conditions_against_schema(leads_schema: ComposedSchema) -> None:
    valid = validate_trigger_conditions(
        {"and": [{"field": "status", "operator": "eq", "value": "won"}, {"field": "priority", "operator": "is_not_null"}]},
        leads_schema,
    )
    assert valid.is_valid is True
    assert valid.errors == []

    invalid = validate_trigger_conditions(
        {
            "op": "AND",
            "children": [
                {"field": "stage", "operator": "eq", "value": "won"},
                {"field": "status", "operator": "gt", "value": 3},
                {"field": "name", "operator": "like", "value": 3},
                {"field": "estimated_value", "operator": "gte", "value": 100},
            ],
        },
        leads_schema,
    )
    assert invalid.is_valid is False
    assert invalid.errors == [
        "conditions.children[0].field: unknown field 'stage' for leads",
        "conditions.children[1].operator: gt requires a number or date field",
        "conditions.children[2].value: like requires a string value",
    ]

    malformed = validate_trigger_conditions({"field": "status", "operator": "nope", "value": 1}, leads_schema)
    assert malformed.is_valid is False
    assert malformed.errors[0].startswith("conditions.operator:")


def _nested(levels: int) -> dict:
    node: dict = {"field": "status", "operator": "eq", "value": "won"}
    for _ in range(levels):
        node = {"and": [node]}
    return node


def test_nesting_up_to_limit_is_accepted(evaluator: ConditionEvaluator, leads_schema: ComposedSchema) -> None:
    assert evaluator.evaluate(_nested(MAX_CONDITION_DEPTH), {"status": "won"}) is True
    assert validate_trigger_conditions(_nested(MAX_CONDITION_DEPTH), leads_schema).is_valid is True


def test_deeply_nested_conditions_are_rejected(evaluator: ConditionEvaluator, leads_schema: ComposedSchema) -> None:
    diagnostics: list[TriggerDiagnostic] = []

    assert evaluator.evaluate(_nested(3000), {"status": "won"}, None, diagnostics) is False
    assert diagnostics[0].reason == "malformed_condition"

    outcome = validate_trigger_conditions(_nested(MAX_CONDITION_DEPTH + 1), leads_schema)
    assert outcome.is_valid is False
    assert outcome.errors[0].endswith(f"nesting deeper than {MAX_CONDITION_DEPTH} levels")
