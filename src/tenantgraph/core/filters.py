"""
Filter compiler - validates predicate trees and renders them to SQL.

Accepts a Prisma-style ``where`` dict or a tree built with
``tenantgraph.core.predicates`` and produces a validated predicate AST:
names are resolved against the schema, operators are checked against the
field's type, and values are coerced. The AST is then rendered to an
SQLAlchemy boolean expression.

Usage:
    compiler = FilterCompiler(registry, dialect="sqlite")
    predicate = compiler.normalize("Student", {"first_name": {"startsWith": "An"}})
    stmt = select(table).where(compiler.to_sql("Student", predicate, table))

Relation filters become correlated EXISTS subqueries. Every nested level
gets its own anonymous alias, so cyclic paths (Staff -> classes -> teacher)
never collide.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from sqlalchemy import and_, false, func, not_, or_, select, true, type_coerce
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql.elements import ColumnElement

from .defs import FieldDef
from .errors import UnknownFieldError, ValidationError
from .predicates import (
    LIST_OPS,
    MANY_QUANTIFIERS,
    ONE_QUANTIFIERS,
    RANGE_OPS,
    SCALAR_OPS,
    STRING_OPS,
    And,
    FieldPredicate,
    Not,
    Or,
    Predicate,
    RelationPredicate,
    combine,
)
from .registry import SchemaRegistry
from .utils import coerce_value, to_snake_case

COMBINATORS = ("AND", "OR", "NOT")
MODES = ("default", "insensitive")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class FilterCompiler:
    """
    Compiles ``where`` arguments for one schema.

    Args:
        registry: Compiled schema
        dialect: Name of the store dialect (``sqlite``, ``postgresql``);
            string and list operators render differently per dialect
        max_depth: Maximum nesting of relation filters
    """

    def __init__(self, registry: SchemaRegistry, dialect: str = "postgresql", max_depth: int = 8):
        self.registry = registry
        self.dialect = dialect
        self.max_depth = max_depth

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def resolve_name(self, entity: str, name: str, path: Optional[str] = None) -> str:
        """Resolve a field or relation name, accepting camelCase spellings."""
        registry = self.registry
        if registry.has_field(entity, name) or registry.has_relation(entity, name):
            return name
        snake = to_snake_case(name)
        if registry.has_field(entity, snake) or registry.has_relation(entity, snake):
            return snake
        raise UnknownFieldError(entity, name, path)

    def normalize(
        self,
        entity: str,
        where: Any,
        path: Optional[str] = None,
        depth: int = 0,
    ) -> Optional[Predicate]:
        """
        Validate a ``where`` argument and return its predicate AST.

        Returns None when nothing is specified (``None``, ``{}`` or only
        ``None`` branches).
        """
        path = path or entity
        if where is None:
            return None
        if isinstance(where, dict):
            return self._parse_dict(entity, where, path, depth)
        if isinstance(where, FieldPredicate):
            return self._check_field(entity, where, path, depth)
        if isinstance(where, RelationPredicate):
            return self._check_relation(entity, where, path, depth)
        if isinstance(where, And):
            items = [self.normalize(entity, item, path, depth) for item in where.items]
            return And(tuple(item for item in items if item is not None))
        if isinstance(where, Or):
            items = [self.normalize(entity, item, path, depth) for item in where.items]
            kept = tuple(item for item in items if item is not None)
            if where.items and not kept:
                return None
            return Or(kept)
        if isinstance(where, Not):
            inner = self.normalize(entity, where.item, path, depth)
            return Not(inner) if inner is not None else None
        raise ValidationError(f"{path}: expected a filter object, got {type(where).__name__}")

    def _parse_dict(self, entity: str, where: dict, path: str, depth: int) -> Optional[Predicate]:
        items: list[Predicate] = []
        for key, value in where.items():
            if key in COMBINATORS:
                node = self._parse_combinator(entity, key, value, path, depth)
            else:
                name = self.resolve_name(entity, key, path)
                if self.registry.has_relation(entity, name):
                    node = self._parse_relation(entity, name, value, path, depth)
                else:
                    node = self.parse_field(entity, name, value, path)
            if node is not None:
                items.append(node)
        return combine(*items)

    def _parse_combinator(self, entity: str, key: str, value: Any, path: str, depth: int) -> Optional[Predicate]:
        if value is None:
            return None
        if isinstance(value, (list, tuple)):
            raw = list(value)
        else:
            raw = [value]
        parsed = [
            self.normalize(entity, item, f"{path}.{key}[{i}]", depth)
            for i, item in enumerate(raw)
        ]
        parsed = [item for item in parsed if item is not None]

        if key == "AND":
            return And(tuple(parsed)) if parsed else None
        if key == "OR":
            if not raw:
                return Or(())
            return Or(tuple(parsed)) if parsed else None
        # NOT: [a, b] excludes rows matching a and rows matching b
        if not parsed:
            return None
        if len(parsed) == 1:
            return Not(parsed[0])
        return And(tuple(Not(item) for item in parsed))

    def parse_field(
        self,
        entity: str,
        name: str,
        value: Any,
        path: str,
        field_def: Optional[FieldDef] = None,
    ) -> Optional[Predicate]:
        """
        Parse the filter for one field.

        ``value`` is a shorthand (``"Ann"`` means ``{"equals": "Ann"}``) or an
        operator object. ``field_def`` overrides the schema lookup, which the
        aggregation engine uses for aggregate outputs.
        """
        field_def = field_def or self.registry.field(entity, name, path)
        fpath = f"{path}.{name}"
        if value is None:
            return None
        if not isinstance(value, dict):
            return self._check_operator(field_def, FieldPredicate(name, "equals", value), fpath)

        mode = value.get("mode")
        if mode is not None and mode not in MODES:
            raise ValidationError(f"{fpath}: unknown mode '{mode}' (use 'default' or 'insensitive')")

        items: list[Predicate] = []
        for raw_op, operand in value.items():
            if raw_op == "mode":
                continue
            op = to_snake_case(raw_op)
            if op == "not" and isinstance(operand, dict):
                if mode is not None and "mode" not in operand:
                    operand = {**operand, "mode": mode}
                inner = self.parse_field(entity, name, operand, path, field_def)
                if inner is not None:
                    items.append(Not(inner))
                continue
            if op not in SCALAR_OPS and op not in LIST_OPS:
                raise ValidationError(f"{fpath}: unknown filter operator '{raw_op}'")
            if operand is None and op not in ("equals", "not"):
                continue
            items.append(self._check_operator(field_def, FieldPredicate(name, op, operand, mode), fpath))
        return combine(*items)

    def _parse_relation(self, entity: str, name: str, value: Any, path: str, depth: int) -> Optional[Predicate]:
        if value is None:
            return None
        rel = self.registry.relation(entity, name, path)
        rpath = f"{path}.{name}"
        if not isinstance(value, dict):
            raise ValidationError(f"{rpath}: relation filters take an object")

        allowed = MANY_QUANTIFIERS if rel.cardinality == "many" else ONE_QUANTIFIERS
        keyed = {to_snake_case(k): v for k, v in value.items()}

        # {"teacher": {"name": ...}} is shorthand for {"teacher": {"is": {...}}}
        if rel.cardinality == "one" and not set(keyed) & ONE_QUANTIFIERS:
            return self._check_relation(entity, RelationPredicate(name, "is", value), path, depth)

        items: list[Predicate] = []
        for quantifier, sub in keyed.items():
            if quantifier not in allowed:
                raise ValidationError(
                    f"{rpath}: '{quantifier}' is not valid on a to-{rel.cardinality} relation "
                    f"(use {', '.join(sorted(allowed))})"
                )
            if sub is None:
                continue
            items.append(self._check_relation(entity, RelationPredicate(name, quantifier, sub), path, depth))
        return combine(*items)

    def _check_field(self, entity: str, pred: FieldPredicate, path: str, depth: int) -> Optional[Predicate]:
        name = self.resolve_name(entity, pred.field, path)
        if self.registry.has_relation(entity, name):
            rel = self.registry.relation(entity, name, path)
            if pred.op in ("equals", "not") and pred.value is None and rel.cardinality == "one":
                quantifier = "is_not" if pred.op == "equals" else "is"
                return self._check_relation(entity, RelationPredicate(name, quantifier), path, depth)
            raise ValidationError(f"{path}.{name}: '{name}' is a relation; filter it with a relation quantifier")
        field_def = self.registry.field(entity, name, path)
        if pred.op not in SCALAR_OPS and pred.op not in LIST_OPS:
            raise ValidationError(f"{path}.{name}: unknown filter operator '{pred.op}'")
        if pred.mode is not None and pred.mode not in MODES:
            raise ValidationError(f"{path}.{name}: unknown mode '{pred.mode}' (use 'default' or 'insensitive')")
        if pred.value is None and pred.op not in ("equals", "not"):
            return None
        return self._check_operator(field_def, replace(pred, field=name), f"{path}.{name}")

    def _check_relation(self, entity: str, pred: RelationPredicate, path: str, depth: int) -> RelationPredicate:
        name = self.resolve_name(entity, pred.relation, path)
        if self.registry.has_field(entity, name):
            raise ValidationError(f"{path}.{name}: '{name}' is a scalar field, not a relation")
        rel = self.registry.relation(entity, name, path)
        allowed = MANY_QUANTIFIERS if rel.cardinality == "many" else ONE_QUANTIFIERS
        if pred.quantifier not in allowed:
            raise ValidationError(
                f"{path}.{name}: '{pred.quantifier}' is not valid on a to-{rel.cardinality} relation "
                f"(use {', '.join(sorted(allowed))})"
            )
        if depth + 1 > self.max_depth:
            raise ValidationError(f"{path}.{name}: relation filters are nested deeper than {self.max_depth} levels")
        where = self.normalize(rel.target, pred.where, f"{path}.{name}", depth + 1)
        return RelationPredicate(name, pred.quantifier, where)

    def _check_operator(self, field_def: FieldDef, pred: FieldPredicate, path: str) -> FieldPredicate:
        """Check that the operator applies to the field and coerce its operand."""
        op = pred.op
        name = field_def.name

        if field_def.is_list:
            if op not in LIST_OPS:
                raise ValidationError(
                    f"{path}: operator '{op}' is not supported on list field '{name}' "
                    f"(use has, has_every, has_some or is_empty)"
                )
            if op == "is_empty":
                if not isinstance(pred.value, bool):
                    raise ValidationError(f"{path}: 'is_empty' takes a boolean")
                return pred
            element = replace(field_def, is_list=False)
            if op == "has":
                return replace(pred, value=coerce_value(element, pred.value, path))
            if not isinstance(pred.value, (list, tuple)):
                raise ValidationError(f"{path}: '{op}' takes a list")
            return replace(pred, value=[coerce_value(element, v, path) for v in pred.value])

        if op in LIST_OPS:
            raise ValidationError(f"{path}: operator '{op}' requires a list field; '{name}' is scalar")

        if field_def.type == "json":
            if op in ("equals", "not") and pred.value is None:
                return pred
            raise ValidationError(f"{path}: JSON field '{name}' only supports null checks")

        if pred.mode == "insensitive" and field_def.type not in ("string", "text"):
            raise ValidationError(f"{path}: mode 'insensitive' requires a string field")
        if op in STRING_OPS:
            if field_def.type not in ("string", "text"):
                raise ValidationError(f"{path}: operator '{op}' requires a string field")
            if not isinstance(pred.value, str):
                raise ValidationError(f"{path}: '{op}' takes a string")
            return pred
        if op in RANGE_OPS and field_def.type == "bool":
            raise ValidationError(f"{path}: operator '{op}' is not supported on boolean field '{name}'")

        if op in ("in", "not_in"):
            if not isinstance(pred.value, (list, tuple)):
                raise ValidationError(f"{path}: '{op}' takes a list")
            values = [coerce_value(field_def, v, path) for v in pred.value]
            if any(v is None for v in values):
                raise ValidationError(f"{path}: '{op}' cannot contain null")
            return replace(pred, value=values)

        value = coerce_value(field_def, pred.value, path)
        if value is None and op in ("equals", "not"):
            return replace(pred, value=None)
        if pred.mode == "insensitive" and not isinstance(value, str):
            raise ValidationError(f"{path}: mode 'insensitive' requires a string operand")
        return replace(pred, value=value)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def to_sql(self, entity: str, predicate: Optional[Predicate], table) -> ColumnElement:
        """Render a normalized predicate against ``table`` (a Table or alias)."""
        if predicate is None:
            return true()

        def leaf(pred: FieldPredicate) -> ColumnElement:
            return self.compare(table.c[pred.field], pred, self.registry.field(entity, pred.field))

        def relation(pred: RelationPredicate) -> ColumnElement:
            return self._render_relation(entity, pred, table)

        return self._render(predicate, leaf, relation)

    def render_on(self, expr: ColumnElement, predicate: Predicate, field_def: FieldDef) -> ColumnElement:
        """Render a single-field predicate tree against an arbitrary expression."""
        return self._render(predicate, lambda pred: self.compare(expr, pred, field_def), None)

    def _render(
        self,
        predicate: Predicate,
        leaf: Callable[[FieldPredicate], ColumnElement],
        relation: Optional[Callable[[RelationPredicate], ColumnElement]],
    ) -> ColumnElement:
        if isinstance(predicate, FieldPredicate):
            return leaf(predicate)
        if isinstance(predicate, RelationPredicate):
            if relation is None:
                raise ValidationError(f"relation filter '{predicate.relation}' is not allowed here")
            return relation(predicate)
        if isinstance(predicate, And):
            parts = [self._render(item, leaf, relation) for item in predicate.items]
            return and_(*parts) if parts else true()
        if isinstance(predicate, Or):
            parts = [self._render(item, leaf, relation) for item in predicate.items]
            return or_(*parts) if parts else false()
        if isinstance(predicate, Not):
            return not_(self._render(predicate.item, leaf, relation))
        raise ValidationError(f"cannot render filter node {type(predicate).__name__}")

    def _render_relation(self, entity: str, pred: RelationPredicate, table) -> ColumnElement:
        rel = self.registry.relation(entity, pred.relation)
        target = self.registry.table(rel.target).alias()
        link = target.c[rel.remote_key] == table.c[rel.local_key]
        match = self.to_sql(rel.target, pred.where, target) if pred.where is not None else None

        if pred.quantifier == "every":
            if match is None:
                return true()
            return not_(select(target.c[rel.remote_key]).where(link, not_(match)).exists())

        criteria = [link] if match is None else [link, match]
        found = select(target.c[rel.remote_key]).where(*criteria).exists()
        if pred.quantifier in ("some", "is"):
            return found
        return not_(found)

    def compare(self, expr: ColumnElement, pred: FieldPredicate, field_def: FieldDef) -> ColumnElement:
        """Render one comparison."""
        op, value = pred.op, pred.value
        insensitive = pred.mode == "insensitive"

        if field_def.is_list:
            return self._compare_list(expr, op, value)

        if op == "equals":
            if value is None:
                return expr.is_(None)
            if insensitive:
                return func.lower(expr) == value.lower()
            return expr == value
        if op == "not":
            if value is None:
                return expr.is_not(None)
            if insensitive:
                return func.lower(expr) != value.lower()
            return expr != value
        if op == "in":
            return expr.in_(value)
        if op == "not_in":
            return expr.not_in(value)
        if op == "lt":
            return expr < value
        if op == "lte":
            return expr <= value
        if op == "gt":
            return expr > value
        if op == "gte":
            return expr >= value
        if op in STRING_OPS:
            return self._compare_string(expr, op, value, insensitive)
        raise ValidationError(f"unsupported operator '{op}'")

    def _compare_string(self, expr: ColumnElement, op: str, value: str, insensitive: bool) -> ColumnElement:
        if self.dialect == "sqlite":
            # LIKE is case-insensitive on SQLite, so match by position instead
            if insensitive:
                expr, value = func.lower(expr), value.lower()
            size = len(value)
            if op == "contains":
                return func.instr(expr, value) > 0
            if op == "starts_with":
                return func.substr(expr, 1, size) == value
            return func.substr(expr, -size, size) == value

        escaped = _escape_like(value)
        if op == "contains":
            pattern = f"%{escaped}%"
        elif op == "starts_with":
            pattern = f"{escaped}%"
        else:
            pattern = f"%{escaped}"
        if insensitive:
            return expr.ilike(pattern, escape="\\")
        return expr.like(pattern, escape="\\")

    def _compare_list(self, expr: ColumnElement, op: str, value: Any) -> ColumnElement:
        if op == "is_empty":
            length = self._json_length(expr)
            return length == 0 if value else length > 0
        if op == "has":
            return self._json_has(expr, value)
        if op == "has_some":
            return or_(*[self._json_has(expr, v) for v in value]) if value else false()
        if op == "has_every":
            return and_(*[self._json_has(expr, v) for v in value]) if value else true()
        raise ValidationError(f"operator '{op}' is not supported on list fields")

    def _json_has(self, expr: ColumnElement, value: Any) -> ColumnElement:
        if self.dialect == "sqlite":
            elements = func.json_each(expr).table_valued("value")
            return select(elements.c.value).where(elements.c.value == value).exists()
        if self.dialect == "postgresql":
            return type_coerce(expr, JSONB).contains([value])
        raise ValidationError(f"list filters are not supported on the '{self.dialect}' dialect")

    def _json_length(self, expr: ColumnElement) -> ColumnElement:
        if self.dialect == "sqlite":
            return func.json_array_length(expr)
        if self.dialect == "postgresql":
            return func.jsonb_array_length(type_coerce(expr, JSONB))
        raise ValidationError(f"list filters are not supported on the '{self.dialect}' dialect")

    # ------------------------------------------------------------------
    # Unique filters
    # ------------------------------------------------------------------

    def parse_unique(self, entity: str, where: Any, path: Optional[str] = None) -> "UniqueWhere":
        """
        Parse a ``where`` that must identify at most one row.

        The top level has to pin the primary key, a unique field, or a
        compound key object named after its fields
        (``{"staff_code_tenant_id": {"staff_code": ..., "tenant_id": ...}}``).
        Any other keys are extra filters.
        """
        path = path or entity
        if not isinstance(where, dict) or not where:
            raise ValidationError(f"{path}: a unique 'where' object is required")

        keys = self.registry.unique_keys(entity)
        values: dict[str, Any] = {}
        rest: dict[str, Any] = {}

        for key, value in where.items():
            name = key if key in keys else to_snake_case(key)
            if key in COMBINATORS or name not in keys:
                rest[key] = value
                continue
            fields = keys[name]
            if fields == (name,):
                if value is None or isinstance(value, dict):
                    rest[key] = value
                    continue
                values[name] = coerce_value(self.registry.field(entity, name), value, f"{path}.{name}")
                continue
            if not isinstance(value, dict):
                raise ValidationError(f"{path}.{name}: compound key takes an object with {', '.join(fields)}")
            given = {self.resolve_name(entity, k, f"{path}.{name}"): v for k, v in value.items()}
            if set(given) != set(fields) or any(v is None for v in given.values()):
                raise ValidationError(f"{path}.{name}: compound key requires exactly {', '.join(fields)}")
            for field_name in fields:
                field_def = self.registry.field(entity, field_name)
                values[field_name] = coerce_value(field_def, given[field_name], f"{path}.{name}.{field_name}")

        if not values:
            raise ValidationError(f"{path}: where must specify a unique key (one of: {', '.join(keys)})")

        pinned = [FieldPredicate(name, "equals", value) for name, value in values.items()]
        return UniqueWhere(values=values, predicate=combine(*pinned, self.normalize(entity, rest, path)))


@dataclass(frozen=True)
class UniqueWhere:
    """A unique filter: the pinned key values plus the full predicate."""
    values: dict[str, Any]
    predicate: Predicate
