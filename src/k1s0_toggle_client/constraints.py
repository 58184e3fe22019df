"""制約評価

コンテキストに該当フィールドが無い場合や値が解析できない場合は、例外にせず不一致とする。
未知のオペレーターだけは UnsupportedOperatorError を送出し、呼び出し側で診断を出す。
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

import semver

from .context import Context
from .models import Constraint, Operator


class UnsupportedOperatorError(ValueError):
    """未知の制約オペレーター。"""

    def __init__(self, operator: str) -> None:
        super().__init__(f"Unsupported constraint operator: {operator}")
        self.operator = operator


def _to_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _to_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _to_semver(value: str | None) -> semver.Version | None:
    if not value:
        return None
    try:
        return semver.Version.parse(value)
    except ValueError:
        return None


def _single_value(constraint: Constraint) -> str | None:
    if constraint.value is not None:
        return constraint.value
    return constraint.values[0] if constraint.values else None


def _string_match(
    operator: Operator, field_value: str, candidates: Iterable[str], case_insensitive: bool
) -> bool:
    if case_insensitive:
        field_value = field_value.lower()
        candidates = [c.lower() for c in candidates]
    if operator == Operator.STR_CONTAINS:
        return any(c in field_value for c in candidates)
    if operator == Operator.STR_STARTS_WITH:
        return any(field_value.startswith(c) for c in candidates)
    return any(field_value.endswith(c) for c in candidates)


def _compare(operator: Operator, left: object, right: object) -> bool:
    if operator in (Operator.NUM_EQ, Operator.SEMVER_EQ):
        return left == right
    if operator in (Operator.NUM_GT, Operator.SEMVER_GT, Operator.DATE_AFTER):
        return left > right  # type: ignore[operator]
    if operator == Operator.NUM_GTE:
        return left >= right  # type: ignore[operator]
    if operator in (Operator.NUM_LT, Operator.SEMVER_LT, Operator.DATE_BEFORE):
        return left < right  # type: ignore[operator]
    return left <= right  # type: ignore[operator]


def _evaluate(operator: Operator, constraint: Constraint, field_value: str) -> bool:
    if operator in (Operator.IN, Operator.NOT_IN):
        candidates: Iterable[str] = constraint.values
        needle = field_value
        if constraint.case_insensitive:
            needle = needle.lower()
            candidates = [c.lower() for c in constraint.values]
        found = needle in candidates
        return found if operator == Operator.IN else not found

    if operator in (Operator.STR_CONTAINS, Operator.STR_STARTS_WITH, Operator.STR_ENDS_WITH):
        return _string_match(
            operator, field_value, constraint.values, constraint.case_insensitive
        )

    parse = {
        "NUM": _to_float,
        "DATE": _to_datetime,
        "SEMVER": _to_semver,
    }[operator.value.split("_", 1)[0]]
    left = parse(field_value)
    right = parse(_single_value(constraint))
    if left is None or right is None:
        return False
    return _compare(operator, left, right)


def constraint_matches(constraint: Constraint, context: Context) -> bool:
    """単一の制約がコンテキストに対して成立するか判定する。

    Raises:
        UnsupportedOperatorError: オペレーターが未知の場合
    """
    try:
        operator = Operator(constraint.operator)
    except ValueError as e:
        raise UnsupportedOperatorError(constraint.operator) from e

    field_value = context.get_field(constraint.context_name)
    if field_value is None:
        return False
    return _evaluate(operator, constraint, field_value) != constraint.inverted


def all_constraints_match(constraints: Iterable[Constraint], context: Context) -> bool:
    """全ての制約が成立するか（AND）判定する。制約が無ければ True。"""
    return all(constraint_matches(c, context) for c in constraints)
