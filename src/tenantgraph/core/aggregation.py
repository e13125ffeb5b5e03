"""
Aggregation engine - compiles aggregate, count and group_by requests.

Usage:
    engine = AggregationEngine(registry, filters)
    query = engine.plan_group_by("Fee", parse_args(GroupByArgs, {
        "by": ["status"],
        "_sum": {"amount": True},
        "having": {"amount": {"_sum": {"gt": 100}}},
    }))
    stmt = engine.group_by_statement(query, guard=None)

group_by is validated in a fixed order and the first failure wins:
1. empty ``by``
2. an ``order_by`` field that is neither in ``by`` nor an aggregate bucket
3. a ``having`` field filtered as a scalar that is not in ``by``
4. ``take`` / ``skip`` without ``order_by``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Union

from sqlalchemy import Float, and_, false, func, not_, or_, select, true, type_coerce
from sqlalchemy.sql.elements import ColumnElement

from .defs import FieldDef
from .errors import ValidationError
from .filters import COMBINATORS, FilterCompiler
from .predicates import Predicate, combine
from .query_types import AggregateArgs, CountArgs, GroupByArgs
from .registry import SchemaRegistry
from .selection import OrderSpec, parse_order_by

logger = logging.getLogger(__name__)

BUCKETS = ("_count", "_sum", "_avg", "_min", "_max")


@dataclass
class Buckets:
    """Requested aggregates. ``count`` is True (plain count) or a list of fields / ``_all``."""
    count: Union[bool, list[str], None] = None
    sum: list[str] = field(default_factory=list)
    avg: list[str] = field(default_factory=list)
    min: list[str] = field(default_factory=list)
    max: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.count or self.sum or self.avg or self.min or self.max)


@dataclass
class AggregateQuery:
    """aggregate() or count() over a window of rows."""
    entity: str
    buckets: Buckets
    where: Optional[Predicate] = None
    order_by: list[OrderSpec] = field(default_factory=list)
    cursor: Optional[dict[str, Any]] = None
    take: Optional[int] = None
    skip: Optional[int] = None
    scalar_count: bool = False  # count() without select returns a bare int


@dataclass
class GroupOrder:
    bucket: Optional[str]
    field: str
    direction: str
    nulls: Optional[str] = None


@dataclass
class GroupByQuery:
    entity: str
    by: list[str]
    buckets: Buckets
    where: Optional[Predicate] = None
    having: Optional[ColumnElement] = None
    order_by: list[GroupOrder] = field(default_factory=list)
    take: Optional[int] = None
    skip: Optional[int] = None


class AggregationEngine:
    """Validates aggregation arguments and builds their statements."""

    def __init__(self, registry: SchemaRegistry, filters: FilterCompiler):
        self.registry = registry
        self.filters = filters

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan_aggregate(self, entity: str, args: AggregateArgs) -> AggregateQuery:
        path = f"{entity}.aggregate"
        return AggregateQuery(
            entity=entity,
            buckets=self._parse_buckets(entity, args, path),
            where=self.filters.normalize(entity, args.where, path),
            order_by=parse_order_by(self.registry, self.filters, entity, args.order_by, path),
            cursor=self._cursor(entity, args.cursor, path),
            take=args.take,
            skip=args.skip,
        )

    def plan_count(self, entity: str, args: CountArgs) -> AggregateQuery:
        path = f"{entity}.count"
        if args.select is None or args.select is False:
            buckets, scalar = Buckets(count=True), True
        elif args.select is True:
            buckets, scalar = Buckets(count=["_all"]), False
        else:
            buckets, scalar = Buckets(count=self._count_fields(entity, args.select, f"{path}.select")), False
        return AggregateQuery(
            entity=entity,
            buckets=buckets,
            where=self.filters.normalize(entity, args.where, path),
            order_by=parse_order_by(self.registry, self.filters, entity, args.order_by, path),
            cursor=self._cursor(entity, args.cursor, path),
            take=args.take,
            skip=args.skip,
            scalar_count=scalar,
        )

    def plan_group_by(self, entity: str, args: GroupByArgs) -> GroupByQuery:
        path = f"{entity}.groupBy"
        raw_by = [args.by] if isinstance(args.by, str) else list(args.by or [])

        if not raw_by:
            raise ValidationError("groupBy: 'by' must not be empty")
        by = []
        for key in raw_by:
            name = self.filters.resolve_name(entity, key, path)
            if self.registry.has_relation(entity, name):
                raise ValidationError(f"{path}.by: cannot group by relation '{name}'")
            field_def = self.registry.field(entity, name, path)
            if field_def.is_list or field_def.type == "json":
                raise ValidationError(f"{path}.by: cannot group by '{name}'")
            if name not in by:
                by.append(name)

        order_items = args.order_by if isinstance(args.order_by, list) else ([args.order_by] if args.order_by else [])
        missing = []
        for item in order_items:
            if not isinstance(item, dict):
                raise ValidationError(f"{path}.order_by: expected an object like {{'field': 'asc'}}")
            for key in item:
                if key in BUCKETS:
                    continue
                name = self.filters.resolve_name(entity, key, path)
                if name not in by and name not in missing:
                    missing.append(name)
        if missing:
            raise ValidationError(
                f"groupBy: every field used in orderBy must be included in 'by' (missing: {', '.join(missing)})"
            )

        missing = [name for name in self._having_scalar_fields(entity, args.having, path) if name not in by]
        if missing:
            raise ValidationError(
                f"groupBy: every field used in having must be included in 'by' (missing: {', '.join(missing)})"
            )

        if (args.take is not None or args.skip is not None) and not order_items:
            raise ValidationError("groupBy: orderBy is required when take or skip is used")

        if args.cursor is not None:
            raise ValidationError("groupBy: cursor is not supported")
        if args.take is not None and args.take < 0:
            raise ValidationError("groupBy: take must not be negative")

        table = self.registry.table(entity)
        having = self._having_sql(entity, args.having, table, f"{path}.having") if args.having else None

        return GroupByQuery(
            entity=entity,
            by=by,
            buckets=self._parse_buckets(entity, args, path),
            where=self.filters.normalize(entity, args.where, path),
            having=having,
            order_by=self._group_order(entity, order_items, path),
            take=args.take,
            skip=args.skip,
        )

    def _cursor(self, entity: str, cursor: Optional[dict], path: str) -> Optional[dict[str, Any]]:
        if cursor is None:
            return None
        return self.filters.parse_unique(entity, cursor, f"{path}.cursor").values

    def _parse_buckets(self, entity: str, args: AggregateArgs, path: str) -> Buckets:
        buckets = Buckets()
        if args.count_ is True:
            buckets.count = True
        elif isinstance(args.count_, dict):
            buckets.count = self._count_fields(entity, args.count_, f"{path}._count")
        buckets.sum = self._bucket_fields(entity, "_sum", args.sum_, path)
        buckets.avg = self._bucket_fields(entity, "_avg", args.avg_, path)
        buckets.min = self._bucket_fields(entity, "_min", args.min_, path)
        buckets.max = self._bucket_fields(entity, "_max", args.max_, path)
        return buckets

    def _count_fields(self, entity: str, selected: dict, path: str) -> list[str]:
        names = []
        for key, enabled in selected.items():
            if not enabled:
                continue
            if key == "_all":
                names.append("_all")
                continue
            name = self.filters.resolve_name(entity, key, path)
            if self.registry.has_relation(entity, name):
                raise ValidationError(f"{path}: cannot count relation '{name}' here")
            names.append(name)
        return names

    def _bucket_fields(self, entity: str, bucket: str, selected: Optional[dict], path: str) -> list[str]:
        if not selected:
            return []
        names = []
        for key, enabled in selected.items():
            if not enabled:
                continue
            name = self.filters.resolve_name(entity, key, path)
            if self.registry.has_relation(entity, name):
                raise ValidationError(f"{path}.{bucket}: '{name}' is a relation")
            self._check_bucket(bucket, self.registry.field(entity, name, path), f"{path}.{bucket}")
            names.append(name)
        return names

    def _check_bucket(self, bucket: str, field_def: FieldDef, path: str):
        if bucket in ("_sum", "_avg") and not field_def.is_numeric:
            raise ValidationError(f"{path}: '{field_def.name}' is not a numeric field")
        if bucket in ("_min", "_max") and (field_def.is_list or field_def.type in ("json", "bool")):
            raise ValidationError(f"{path}: cannot compute {bucket} of '{field_def.name}'")

    def _having_scalar_fields(self, entity: str, having: Any, path: str) -> list[str]:
        """Fields that ``having`` filters as plain scalars (not through an aggregate)."""
        if not having:
            return []
        if not isinstance(having, dict):
            raise ValidationError(f"{path}.having: expected an object")
        names: list[str] = []
        for key, value in having.items():
            if value is None:
                continue
            if key in COMBINATORS:
                for item in value if isinstance(value, list) else [value]:
                    for name in self._having_scalar_fields(entity, item, path):
                        if name not in names:
                            names.append(name)
                continue
            name = self.filters.resolve_name(entity, key, path)
            if isinstance(value, dict) and value and all(k in BUCKETS for k in value):
                continue
            if name not in names:
                names.append(name)
        return names

    def _having_sql(self, entity: str, having: Any, table, path: str) -> ColumnElement:
        if not isinstance(having, dict):
            raise ValidationError(f"{path}: expected an object")
        parts: list[ColumnElement] = []
        for key, value in having.items():
            if value is None:
                continue
            if key in COMBINATORS:
                items = [item for item in (value if isinstance(value, list) else [value]) if item is not None]
                rendered = [self._having_sql(entity, item, table, f"{path}.{key}") for item in items]
                if key == "AND":
                    parts.append(and_(*rendered) if rendered else true())
                elif key == "OR":
                    parts.append(or_(*rendered) if rendered else false())
                else:
                    parts.append(and_(*[not_(item) for item in rendered]) if rendered else true())
                continue

            name = self.filters.resolve_name(entity, key, path)
            field_def = self.registry.field(entity, name, path)
            if isinstance(value, dict):
                aggregates = {k: v for k, v in value.items() if k in BUCKETS}
                scalar = {k: v for k, v in value.items() if k not in BUCKETS}
            else:
                aggregates, scalar = {}, value

            pred = self.filters.parse_field(entity, name, scalar, path)
            if pred is not None:
                parts.append(self.filters.render_on(table.c[name], pred, field_def))
            for bucket, ops in aggregates.items():
                expr, value_def = self._aggregate_expr(bucket, table.c[name], field_def, f"{path}.{name}")
                pred = self.filters.parse_field(entity, name, ops, f"{path}.{bucket}", field_def=value_def)
                if pred is not None:
                    parts.append(self.filters.render_on(expr, pred, value_def))
        return and_(*parts) if parts else true()

    def _aggregate_expr(self, bucket: str, column, field_def: FieldDef, path: str) -> tuple[ColumnElement, FieldDef]:
        self._check_bucket(bucket, field_def, path)
        if bucket == "_count":
            return func.count(column), FieldDef(field_def.name, "int")
        if bucket == "_sum":
            return func.sum(column), FieldDef(field_def.name, field_def.type)
        if bucket == "_avg":
            return type_coerce(func.avg(column), Float), FieldDef(field_def.name, "float")
        if bucket == "_min":
            return func.min(column), field_def
        return func.max(column), field_def

    def _group_order(self, entity: str, items: list[dict], path: str) -> list[GroupOrder]:
        orders: list[GroupOrder] = []
        for item in items:
            for key, spec in item.items():
                if key not in BUCKETS:
                    parsed = parse_order_by(self.registry, self.filters, entity, {key: spec}, path)[0]
                    orders.append(GroupOrder(None, parsed.field, parsed.direction, parsed.nulls))
                    continue
                if not isinstance(spec, dict):
                    raise ValidationError(f"{path}.order_by.{key}: expected {{'field': 'asc' | 'desc'}}")
                for field_key, direction in spec.items():
                    if field_key == "_all" and key == "_count":
                        name = "_all"
                    else:
                        name = self.filters.resolve_name(entity, field_key, path)
                        self._check_bucket(key, self.registry.field(entity, name, path), f"{path}.order_by.{key}")
                    if direction not in ("asc", "desc"):
                        raise ValidationError(f"{path}.order_by.{key}.{name}: sort must be 'asc' or 'desc'")
                    orders.append(GroupOrder(key, name, direction))
        return orders

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def aggregate_columns(self, entity: str, buckets: Buckets, source) -> list[ColumnElement]:
        """Labelled aggregate columns over ``source`` (a table or subquery)."""
        columns: list[ColumnElement] = []
        if buckets.count is True:
            columns.append(func.count().label("_count"))
        elif buckets.count:
            for name in buckets.count:
                expr = func.count() if name == "_all" else func.count(source.c[name])
                columns.append(expr.label(f"_count__{name}"))
        for bucket, names in (("_sum", buckets.sum), ("_avg", buckets.avg), ("_min", buckets.min), ("_max", buckets.max)):
            for name in names:
                expr, _ = self._aggregate_expr(bucket, source.c[name], self.registry.field(entity, name), bucket)
                columns.append(expr.label(f"{bucket}__{name}"))
        return columns

    def aggregate_statement(self, query: AggregateQuery, source):
        """SELECT of the requested aggregates over an already-windowed source."""
        return select(*self.aggregate_columns(query.entity, query.buckets, source)).select_from(source)

    def group_by_statement(self, query: GroupByQuery, guard: Optional[Predicate] = None):
        table = self.registry.table(query.entity)
        by_columns = [table.c[name] for name in query.by]
        stmt = (
            select(*by_columns, *self.aggregate_columns(query.entity, query.buckets, table))
            .where(self.filters.to_sql(query.entity, combine(query.where, guard), table))
            .group_by(*by_columns)
        )
        if query.having is not None:
            stmt = stmt.having(query.having)
        for order in query.order_by:
            if order.bucket is None:
                expr = table.c[order.field]
            elif order.field == "_all":
                expr = func.count()
            else:
                field_def = self.registry.field(query.entity, order.field)
                expr, _ = self._aggregate_expr(order.bucket, table.c[order.field], field_def, "order_by")
            expr = expr.desc() if order.direction == "desc" else expr.asc()
            if order.nulls == "first":
                expr = expr.nulls_first()
            elif order.nulls == "last":
                expr = expr.nulls_last()
            stmt = stmt.order_by(expr)
        if query.skip:
            stmt = stmt.offset(query.skip)
        if query.take is not None:
            stmt = stmt.limit(query.take)
        logger.debug(f"groupBy {query.entity} by {query.by}")
        return stmt

    # ------------------------------------------------------------------
    # Shaping
    # ------------------------------------------------------------------

    def shape(self, entity: str, buckets: Buckets, row: dict[str, Any]) -> dict[str, Any]:
        """Turn labelled aggregate columns into ``{"_count": ..., "_sum": {...}}``."""
        result: dict[str, Any] = {}
        if buckets.count is True:
            result["_count"] = int(row["_count"] or 0)
        elif buckets.count:
            result["_count"] = {name: int(row[f"_count__{name}"] or 0) for name in buckets.count}
        for bucket, names in (("_sum", buckets.sum), ("_avg", buckets.avg), ("_min", buckets.min), ("_max", buckets.max)):
            if not names:
                continue
            values = {}
            for name in names:
                value = row[f"{bucket}__{name}"]
                field_def = self.registry.field(entity, name)
                if bucket == "_avg":
                    value = float(value) if value is not None else None
                elif isinstance(value, Decimal):
                    value = int(value) if field_def.type == "int" else float(value)
                values[name] = value
            result[bucket] = values
        return result

    def shape_groups(self, query: GroupByQuery, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        groups = []
        for row in rows:
            group = {name: row[name] for name in query.by}
            group.update(self.shape(query.entity, query.buckets, row))
            groups.append(group)
        return groups

