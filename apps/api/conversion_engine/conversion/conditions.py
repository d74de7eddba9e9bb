from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Union

from conversion_engine.metrics import observe_trigger_diagnostic
from conversion_engine.schema.base import ComposedSchema, FieldType
from conversion_engine.validation.values import parse_datetime, parse_number

logger = logging.getLogger("conversion_engine.conditions")


class ConditionOperator(StrEnum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"
    IN = "in"
    NOT_IN = "not_in"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


class BooleanOp(StrEnum):
    AND = "AND"
    OR = "OR"


_VALUELESS_OPERATORS = {ConditionOperator.IS_NULL, ConditionOperator.IS_NOT_NULL}
_LIST_OPERATORS = {ConditionOperator.IN, ConditionOperator.NOT_IN}
_ORDERING_OPERATORS = {ConditionOperator.GT, ConditionOperator.GTE, ConditionOperator.LT, ConditionOperator.LTE}
MAX_CONDITION_DEPTH = 32


@dataclass(frozen=True, slots=True)
class ConditionLeaf:
    field: str
    operator: ConditionOperator
    value: Any = None


@dataclass(frozen=True, slots=True)
class ConditionGroup:
    op: BooleanOp
    children: tuple["ConditionNode", ...] = ()


ConditionNode = Union[ConditionLeaf, ConditionGroup]


@dataclass(frozen=True, slots=True)
class TriggerDiagnostic:
    field: str | None
    reason: str
    message: str


@dataclass(slots=True)
class TriggerValidation:
    is_valid: bool
    errors: list[str] = field(default_factory=list)


class ConditionParseError(ValueError):
    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"{path}: {message}")


def parse_condition(payload: Any, path: str = "conditions", depth: int = 0) -> ConditionNode:
    """Parse either the ``{op, children}`` or the ``{and: [...]}``/``{or: [...]}`` shape.

    Groups may nest at most ``MAX_CONDITION_DEPTH`` levels.
    """

    if depth > MAX_CONDITION_DEPTH:
        raise ConditionParseError(path, f"nesting deeper than {MAX_CONDITION_DEPTH} levels")
    if isinstance(payload, (ConditionLeaf, ConditionGroup)):
        return payload
    if not isinstance(payload, Mapping):
        raise ConditionParseError(path, "condition must be an object")
    if not payload:
        return ConditionGroup(op=BooleanOp.AND, children=())

    if "children" in payload or ("op" in payload and "field" not in payload):
        raw_op = payload.get("op")
        if not isinstance(raw_op, str) or raw_op.upper() not in {BooleanOp.AND, BooleanOp.OR}:
            raise ConditionParseError(f"{path}.op", "must be AND or OR")
        children = payload.get("children", [])
        if not isinstance(children, list):
            raise ConditionParseError(f"{path}.children", "must be a list")
        return ConditionGroup(
            op=BooleanOp(raw_op.upper()),
            children=tuple(parse_condition(item, f"{path}.children[{index}]", depth + 1) for index, item in enumerate(children)),
        )

    for key, op in (("and", BooleanOp.AND), ("or", BooleanOp.OR)):
        if key in payload:
            if len(payload) != 1:
                raise ConditionParseError(path, f"'{key}' cannot be combined with other keys")
            children = payload[key]
            if not isinstance(children, list):
                raise ConditionParseError(f"{path}.{key}", "must be a list")
            return ConditionGroup(
                op=op,
                children=tuple(parse_condition(item, f"{path}.{key}[{index}]", depth + 1) for index, item in enumerate(children)),
            )

    raw_field = payload.get("field")
    if not isinstance(raw_field, str) or not raw_field.strip():
        raise ConditionParseError(f"{path}.field", "is required")
    raw_operator = payload.get("operator")
    try:
        operator = ConditionOperator(raw_operator)
    except ValueError:
        raise ConditionParseError(f"{path}.operator", f"unsupported operator {raw_operator!r}") from None

    value = payload.get("value")
    if operator in _LIST_OPERATORS and not isinstance(value, list):
        raise ConditionParseError(f"{path}.value", f"operator {operator.value} requires a list value")
    if operator not in _VALUELESS_OPERATORS and "value" not in payload:
        raise ConditionParseError(f"{path}.value", "is required")
    return ConditionLeaf(field=raw_field.strip(), operator=operator, value=value)


def condition_to_dict(node: ConditionNode) -> dict[str, Any]:
    if isinstance(node, ConditionGroup):
        return {"op": node.op.value, "children": [condition_to_dict(child) for child in node.children]}
    payload: dict[str, Any] = {"field": node.field, "operator": node.operator.value}
    if node.operator not in _VALUELESS_OPERATORS:
        payload["value"] = node.value
    return payload


def iter_leaves(node: ConditionNode, path: str = "conditions"):
    if isinstance(node, ConditionLeaf):
        yield path, node
        return
    for index, child in enumerate(node.children):
        yield from iter_leaves(child, f"{path}.children[{index}]")


def validate_trigger_conditions(payload: Any, schema: ComposedSchema) -> TriggerValidation:
    if payload is None:
        return TriggerValidation(is_valid=True)
    try:
        node = parse_condition(payload)
    except ConditionParseError as exc:
        return TriggerValidation(is_valid=False, errors=[str(exc)])

    errors: list[str] = []
    for path, leaf in iter_leaves(node):
        definition = schema.get(leaf.field)
        if definition is None:
            errors.append(f"{path}.field: unknown field '{leaf.field}' for {schema.entity_table}")
            continue
        if leaf.operator in _ORDERING_OPERATORS and definition.field_type not in {FieldType.NUMBER, FieldType.DATE}:
            errors.append(f"{path}.operator: {leaf.operator.value} requires a number or date field")
        if leaf.operator == ConditionOperator.LIKE and not isinstance(leaf.value, str):
            errors.append(f"{path}.value: like requires a string value")
    return TriggerValidation(is_valid=not errors, errors=errors)


class ConditionEvaluator:
    """Total evaluator: every failure becomes ``False`` plus a diagnostic."""

    def evaluate(
        self,
        condition: ConditionNode | Mapping[str, Any] | None,
        record: Mapping[str, Any],
        schema: ComposedSchema | None = None,
        diagnostics: list[TriggerDiagnostic] | None = None,
    ) -> bool:
        sink = diagnostics if diagnostics is not None else []
        if condition is None:
            return True
        try:
            node = parse_condition(condition)
        except (ConditionParseError, RecursionError) as exc:
            self._diagnose(sink, None, "malformed_condition", str(exc))
            return False
        try:
            return self._eval(node, record, schema, sink)
        except Exception as exc:
            self._diagnose(sink, None, "evaluation_error", str(exc))
            return False

    def _eval(
        self,
        node: ConditionNode,
        record: Mapping[str, Any],
        schema: ComposedSchema | None,
        sink: list[TriggerDiagnostic],
    ) -> bool:
        if isinstance(node, ConditionGroup):
            if node.op == BooleanOp.AND:
                return all(self._eval(child, record, schema, sink) for child in node.children)
            return any(self._eval(child, record, schema, sink) for child in node.children)
        try:
            return self._eval_leaf(node, record, schema, sink)
        except Exception as exc:
            self._diagnose(sink, node.field, "evaluation_error", str(exc))
            return False

    def _eval_leaf(
        self,
        leaf: ConditionLeaf,
        record: Mapping[str, Any],
        schema: ComposedSchema | None,
        sink: list[TriggerDiagnostic],
    ) -> bool:
        resolved, current = resolve_field(record, leaf.field)
        if not resolved and (schema is None or not schema.has(leaf.field)):
            self._diagnose(sink, leaf.field, "unknown_field", f"field '{leaf.field}' cannot be resolved")
            return False

        operator = leaf.operator
        target = leaf.value
        if operator == ConditionOperator.IS_NULL:
            return current is None
        if operator == ConditionOperator.IS_NOT_NULL:
            return current is not None

        field_type = None
        if schema is not None:
            definition = schema.get(leaf.field)
            field_type = definition.field_type if definition is not None else None

        if operator == ConditionOperator.EQ:
            return values_equal(current, target, field_type)
        if operator == ConditionOperator.NE:
            return not values_equal(current, target, field_type)
        if operator == ConditionOperator.LIKE:
            if isinstance(current, str) and isinstance(target, str):
                return target.lower() in current.lower()
            return False
        if operator in _LIST_OPERATORS:
            if not isinstance(target, (list, tuple)):
                self._diagnose(sink, leaf.field, "invalid_value", f"{operator.value} requires a list value")
                return False
            contained = any(values_equal(current, item, field_type) for item in target)
            return contained if operator == ConditionOperator.IN else not contained

        left, right = comparable_pair(current, target)
        if left is None or right is None:
            if current is not None:
                self._diagnose(sink, leaf.field, "not_comparable", f"{operator.value} operands are not comparable")
            return False
        if operator == ConditionOperator.GT:
            return left > right
        if operator == ConditionOperator.GTE:
            return left >= right
        if operator == ConditionOperator.LT:
            return left < right
        if operator == ConditionOperator.LTE:
            return left <= right
        self._diagnose(sink, leaf.field, "unsupported_operator", f"unsupported operator {operator!r}")
        return False

    def _diagnose(self, sink: list[TriggerDiagnostic], field_name: str | None, reason: str, message: str) -> None:
        sink.append(TriggerDiagnostic(field=field_name, reason=reason, message=message))
        observe_trigger_diagnostic(reason)
        logger.warning("trigger.diagnostic", extra={"diagnostic": reason, "field_name": field_name, "error": message})


def resolve_field(record: Mapping[str, Any], name: str) -> tuple[bool, Any]:
    if name != "extensions" and name in record:
        return True, record[name]
    extensions = record.get("extensions")
    if isinstance(extensions, Mapping) and name in extensions:
        return True, extensions[name]
    return False, None


def _strict_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return left == right


def values_equal(left: Any, right: Any, field_type: FieldType | None = None) -> bool:
    left_number = parse_number(left)
    right_number = parse_number(right)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    if field_type == FieldType.DATE:
        left_date = parse_datetime(left)
        right_date = parse_datetime(right)
        if left_date is not None and right_date is not None:
            return left_date == right_date
    return _strict_equal(left, right)


def comparable_pair(left: Any, right: Any) -> tuple[Any, Any]:
    left_number = parse_number(left)
    right_number = parse_number(right)
    if left_number is not None and right_number is not None:
        return left_number, right_number
    left_date = parse_datetime(left)
    right_date = parse_datetime(right)
    if left_date is not None and right_date is not None:
        return left_date, right_date
    return None, None


condition_evaluator = ConditionEvaluator()
