"""Conditional expressions: ``<variable> (==|!=|contains) <literal>``."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

_CONDITION = re.compile(
    r"^\s*(?P<var>[A-Za-z_][A-Za-z0-9_.]*)\s*(?P<op>==|!=|\bcontains\b)\s*(?P<lit>.*?)\s*$",
    re.IGNORECASE,
)


class ConditionSyntaxError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class Condition:
    variable: str
    operator: str
    literal: str

    def evaluate(self, context: Mapping[str, str]) -> bool:
        left = str(context.get(self.variable, "")).strip().lower()
        right = self.literal.strip().lower()
        if self.operator == "==":
            return left == right
        if self.operator == "!=":
            return left != right
        return right in left


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def parse_condition(expression: str) -> Condition:
    match = _CONDITION.match(expression)
    if match is None or not match.group("lit"):
        raise ConditionSyntaxError(f"Invalid condition: {expression!r}")
    return Condition(
        variable=match.group("var"),
        operator=match.group("op").lower(),
        literal=_unquote(match.group("lit")),
    )


def evaluate_condition(expression: str, context: Mapping[str, str]) -> bool:
    """Evaluate ``expression``; a missing variable compares as the empty string.

    Raises:
        ConditionSyntaxError: If the expression does not parse.
    """

    return parse_condition(expression).evaluate(context)
