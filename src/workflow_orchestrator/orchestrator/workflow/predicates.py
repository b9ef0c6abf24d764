"""Guard and validation predicates.

Guards and validations are small, inspectable objects rather than closures so
a state graph can be described, logged and tested without executing it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"
    CONTAINS = "contains"
    IN = "in"


def get_nested_value(data: Mapping[str, object], path: str) -> object | None:
    """Resolve a dotted path (``"a.b.c"``) against nested mappings.

    Missing keys and non-mapping intermediates resolve to ``None``.
    """

    current: object = data
    for key in path.split("."):
        if not isinstance(current, Mapping) or key not in current:
            return None
        current = current[key]
    return current


def compare(actual: object, operator: Operator, expected: object) -> bool:
    """Apply a comparison operator; incomparable operands compare false."""

    try:
        if operator is Operator.EQUALS:
            return actual == expected
        if operator is Operator.NOT_EQUALS:
            return actual != expected
        if operator is Operator.GREATER_THAN:
            return actual > expected  # type: ignore[operator]
        if operator is Operator.LESS_THAN:
            return actual < expected  # type: ignore[operator]
        if operator is Operator.GREATER_EQUAL:
            return actual >= expected  # type: ignore[operator]
        if operator is Operator.LESS_EQUAL:
            return actual <= expected  # type: ignore[operator]
        if operator is Operator.CONTAINS:
            return bool(actual) and expected in actual  # type: ignore[operator]
        if operator is Operator.IN:
            return isinstance(expected, (list, tuple, set, frozenset)) and actual in expected
    except TypeError:
        return False
    return False


class Predicate(Protocol):
    """A side-effect free condition over a workflow context."""

    def evaluate(self, context: Mapping[str, object]) -> bool: ...

    def describe(self) -> str: ...


@dataclass(frozen=True, slots=True)
class FieldCompare:
    path: str
    operator: Operator
    value: object

    def evaluate(self, context: Mapping[str, object]) -> bool:
        return compare(get_nested_value(context, self.path), self.operator, self.value)

    def describe(self) -> str:
        return f"{self.path} {self.operator.value} {self.value!r}"


@dataclass(frozen=True, slots=True)
class FieldPresent:
    """Holds when the value at ``path`` is truthy."""

    path: str

    def evaluate(self, context: Mapping[str, object]) -> bool:
        return bool(get_nested_value(context, self.path))

    def describe(self) -> str:
        return f"{self.path} is set"


@dataclass(frozen=True, slots=True)
class AllOf:
    predicates: tuple[Predicate, ...]

    def evaluate(self, context: Mapping[str, object]) -> bool:
        return all(p.evaluate(context) for p in self.predicates)

    def describe(self) -> str:
        return "(" + " and ".join(p.describe() for p in self.predicates) + ")"


@dataclass(frozen=True, slots=True)
class AnyOf:
    predicates: tuple[Predicate, ...]

    def evaluate(self, context: Mapping[str, object]) -> bool:
        return any(p.evaluate(context) for p in self.predicates)

    def describe(self) -> str:
        return "(" + " or ".join(p.describe() for p in self.predicates) + ")"


@dataclass(frozen=True, slots=True)
class Not:
    predicate: Predicate

    def evaluate(self, context: Mapping[str, object]) -> bool:
        return not self.predicate.evaluate(context)

    def describe(self) -> str:
        return f"not {self.predicate.describe()}"


@dataclass(frozen=True, slots=True)
class Check:
    """A named predicate function.

    The name is what shows up in graph descriptions; the function must be pure.
    A function that raises is treated as not satisfied.
    """

    name: str
    fn: Callable[[Mapping[str, object]], bool]

    def evaluate(self, context: Mapping[str, object]) -> bool:
        try:
            return bool(self.fn(context))
        except Exception:
            logger.warning(
                "Guard check raised; treating as unsatisfied",
                exc_info=True,
                extra={"check": self.name},
            )
            return False

    def describe(self) -> str:
        return self.name


class Validation(Protocol):
    """Returns ``None`` when the context is acceptable, else a message."""

    def validate(self, context: Mapping[str, object]) -> str | None: ...

    def describe(self) -> str: ...


@dataclass(frozen=True, slots=True)
class Require:
    predicate: Predicate
    message: str

    def validate(self, context: Mapping[str, object]) -> str | None:
        return None if self.predicate.evaluate(context) else self.message

    def describe(self) -> str:
        return f"require {self.predicate.describe()}"


@dataclass(frozen=True, slots=True)
class Rule:
    """A named validation function returning ``None`` or a failure message."""

    name: str
    fn: Callable[[Mapping[str, object]], str | None]

    def validate(self, context: Mapping[str, object]) -> str | None:
        try:
            return self.fn(context)
        except Exception as e:
            return str(e) or f"Validation error in {self.name}"

    def describe(self) -> str:
        return self.name
