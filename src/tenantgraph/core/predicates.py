"""
Predicate AST and typed builder.

A ``where`` argument is either a Prisma-style dict or a tree built from the
nodes below. Both forms are validated by ``FilterCompiler.normalize`` into
the same AST before anything is rendered.

Usage:
    from tenantgraph.core.predicates import F, and_, or_, not_

    where = and_(
        F("first_name").starts_with("an", mode="insensitive"),
        or_(F("is_active").equals(True), F("email").is_null()),
        F("fees").some(F("status").equals("OVERDUE")),
    )
    # operators work too
    where = F("grade").equals("5") & ~F("section").in_(["A", "B"])
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Optional, Union


SCALAR_OPS = frozenset({
    "equals", "not", "in", "not_in", "lt", "lte", "gt", "gte",
    "contains", "starts_with", "ends_with",
})
STRING_OPS = frozenset({"contains", "starts_with", "ends_with"})
RANGE_OPS = frozenset({"lt", "lte", "gt", "gte"})
LIST_OPS = frozenset({"has", "has_every", "has_some", "is_empty"})

MANY_QUANTIFIERS = frozenset({"some", "every", "none"})
ONE_QUANTIFIERS = frozenset({"is", "is_not"})

Quantifier = Literal["some", "every", "none", "is", "is_not"]


class PredicateNode:
    """Base class giving every node ``&``, ``|`` and ``~``."""

    def __and__(self, other: Any) -> "And":
        return And((self, other))

    def __or__(self, other: Any) -> "Or":
        return Or((self, other))

    def __invert__(self) -> "Not":
        return Not(self)


@dataclass(frozen=True)
class FieldPredicate(PredicateNode):
    """Comparison of one scalar field against a value."""
    field: str
    op: str
    value: Any = None
    mode: Optional[Literal["default", "insensitive"]] = None


@dataclass(frozen=True)
class RelationPredicate(PredicateNode):
    """
    Filter on related records.

    ``where`` is a dict or a predicate on the target entity; ``None`` means
    any related record.
    """
    relation: str
    quantifier: Quantifier
    where: Any = None


@dataclass(frozen=True)
class And(PredicateNode):
    items: tuple = ()


@dataclass(frozen=True)
class Or(PredicateNode):
    items: tuple = ()


@dataclass(frozen=True)
class Not(PredicateNode):
    item: Any = None


Predicate = Union[FieldPredicate, RelationPredicate, And, Or, Not]


def and_(*items: Any) -> And:
    return And(tuple(items))


def or_(*items: Any) -> Or:
    return Or(tuple(items))


def not_(item: Any) -> Not:
    return Not(item)


def combine(*items: Optional[Predicate]) -> Optional[Predicate]:
    """AND together the non-empty predicates, or return None if there are none."""
    present = [item for item in items if item is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return And(tuple(present))


class F:
    """
    Typed builder for a single field or relation.

    Scalar methods return ``FieldPredicate``; relation methods return
    ``RelationPredicate``. Names are checked against the schema when the
    predicate is compiled.
    """

    __slots__ = ("name",)

    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return f"F({self.name!r})"

    def _op(self, op: str, value: Any, mode: Optional[str] = None) -> FieldPredicate:
        return FieldPredicate(self.name, op, value, mode)

    # Scalars
    def equals(self, value: Any, mode: Optional[str] = None) -> FieldPredicate:
        return self._op("equals", value, mode)

    def not_equals(self, value: Any, mode: Optional[str] = None) -> FieldPredicate:
        return self._op("not", value, mode)

    def is_null(self) -> FieldPredicate:
        return self._op("equals", None)

    def is_not_null(self) -> FieldPredicate:
        return self._op("not", None)

    def in_(self, values: list) -> FieldPredicate:
        return self._op("in", list(values))

    def not_in(self, values: list) -> FieldPredicate:
        return self._op("not_in", list(values))

    def lt(self, value: Any) -> FieldPredicate:
        return self._op("lt", value)

    def lte(self, value: Any) -> FieldPredicate:
        return self._op("lte", value)

    def gt(self, value: Any) -> FieldPredicate:
        return self._op("gt", value)

    def gte(self, value: Any) -> FieldPredicate:
        return self._op("gte", value)

    def contains(self, value: str, mode: Optional[str] = None) -> FieldPredicate:
        return self._op("contains", value, mode)

    def starts_with(self, value: str, mode: Optional[str] = None) -> FieldPredicate:
        return self._op("starts_with", value, mode)

    def ends_with(self, value: str, mode: Optional[str] = None) -> FieldPredicate:
        return self._op("ends_with", value, mode)

    # List fields
    def has(self, value: Any) -> FieldPredicate:
        return self._op("has", value)

    def has_every(self, values: list) -> FieldPredicate:
        return self._op("has_every", list(values))

    def has_some(self, values: list) -> FieldPredicate:
        return self._op("has_some", list(values))

    def is_empty(self, value: bool = True) -> FieldPredicate:
        return self._op("is_empty", value)

    # Relations
    def some(self, where: Any = None) -> RelationPredicate:
        return RelationPredicate(self.name, "some", where)

    def every(self, where: Any = None) -> RelationPredicate:
        return RelationPredicate(self.name, "every", where)

    def none(self, where: Any = None) -> RelationPredicate:
        return RelationPredicate(self.name, "none", where)

    def is_(self, where: Any = None) -> RelationPredicate:
        return RelationPredicate(self.name, "is", where)

    def is_not(self, where: Any = None) -> RelationPredicate:
        return RelationPredicate(self.name, "is_not", where)
