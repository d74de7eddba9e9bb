"""Typed field values produced at the validator boundary.

Raw record values are untyped; once a value passes validation it is carried
as one of these variants so mapping and condition code never guess at types.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Union


@dataclass(frozen=True, slots=True)
class NumberValue:
    value: float

    def to_raw(self) -> int | float:
        if self.value.is_integer() and abs(self.value) < 2**53:
            return int(self.value)
        return self.value


@dataclass(frozen=True, slots=True)
class TextValue:
    value: str

    def to_raw(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class BoolValue:
    value: bool

    def to_raw(self) -> bool:
        return self.value


@dataclass(frozen=True, slots=True)
class DateValue:
    value: datetime

    def to_raw(self) -> str:
        return self.value.isoformat()


@dataclass(frozen=True, slots=True)
class JsonValue:
    value: Any

    def to_raw(self) -> Any:
        return self.value


@dataclass(frozen=True, slots=True)
class SelectOptionValue:
    value: str
    label: str | None = None

    def to_raw(self) -> str:
        return self.value


FieldValue = Union[NumberValue, TextValue, BoolValue, DateValue, JsonValue, SelectOptionValue]


def parse_number(raw: Any) -> float | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        number = float(raw)
    elif isinstance(raw, str) and raw.strip():
        try:
            number = float(raw.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def parse_datetime(raw: Any) -> datetime | None:
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, date):
        parsed = datetime.combine(raw, time.min)
    elif isinstance(raw, str) and raw.strip():
        text = raw.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_json(raw: Any) -> tuple[bool, Any]:
    if isinstance(raw, (dict, list)):
        return True, raw
    if isinstance(raw, str):
        try:
            return True, json.loads(raw)
        except ValueError:
            return False, None
    return False, None
