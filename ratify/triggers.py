"""Trigger conditions deciding whether a business action starts a workflow."""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ConditionValue = Union[str, int, float, bool, List[Union[str, int, float]]]


def _as_number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _compare(operator: str, actual: Any, expected: Any) -> bool:
    if operator in ("gt", "gte", "lt", "lte"):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return {
            "gt": left > right,
            "gte": left >= right,
            "lt": left < right,
            "lte": left <= right,
        }[operator]
    if operator == "eq":
        left, right = _as_number(actual), _as_number(expected)
        if left is not None and right is not None:
            return left == right
        return actual == expected
    if operator == "ne":
        return not _compare("eq", actual, expected)
    if operator == "contains":
        try:
            return expected in actual
        except TypeError:
            return False
    if operator == "not_contains":
        return not _compare("contains", actual, expected)
    if operator == "in":
        return isinstance(expected, list) and actual in expected
    if operator == "not_in":
        return isinstance(expected, list) and actual not in expected
    raise ValueError(f"Unsupported operator: {operator}")


class ThresholdCondition(BaseModel):
    """Numeric threshold, e.g. ``amount > 5000``."""

    field: str = "amount"
    operator: Literal["gt", "gte", "lt", "lte", "eq"]
    value: float = Field(ge=0)
    currency: Optional[str] = None

    def matches(self, data: dict[str, Any]) -> bool:
        # Threshold only applies when the business object reports the field.
        if data.get(self.field) is None:
            return True
        return _compare(self.operator, data[self.field], self.value)


class FieldCondition(BaseModel):
    """Comparison against a single field of the business object."""

    field: str = Field(min_length=1)
    operator: Literal[
        "eq", "ne", "gt", "gte", "lt", "lte", "contains", "not_contains", "in", "not_in"
    ]
    value: ConditionValue
    description: Optional[str] = None

    def matches(self, data: dict[str, Any]) -> bool:
        return _compare(self.operator, data.get(self.field), self.value)


class TriggerConditions(BaseModel):
    """All present conditions must hold for the workflow to start."""

    threshold: Optional[ThresholdCondition] = None
    field_conditions: List[FieldCondition] = Field(default_factory=list)

    def matches(self, data: dict[str, Any]) -> bool:
        if self.threshold is not None and not self.threshold.matches(data):
            logger.debug(f"Threshold condition on '{self.threshold.field}' not met")
            return False
        for condition in self.field_conditions:
            if not condition.matches(data):
                logger.debug(f"Field condition on '{condition.field}' not met")
                return False
        return True
