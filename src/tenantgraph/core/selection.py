"""
Selection planner - resolves select / include / omit into a fetch plan.

A ``SelectionPlan`` lists the scalars to return (in output order), the
columns to fetch (scalars plus hidden join keys), relation sub-plans and
relation counts. The read executor follows the plan; the result assembler
uses it to shape the output.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from .errors import ValidationError
from .filters import FilterCompiler
from .predicates import Predicate
from .query_types import RelationArgs, parse_args
from .registry import RelationIR, SchemaRegistry


@dataclass(frozen=True)
class OrderSpec:
    """One ``order_by`` entry."""
    field: str
    direction: Literal["asc", "desc"] = "asc"
    nulls: Optional[Literal["first", "last"]] = None

    def reversed(self) -> "OrderSpec":
        flipped = "desc" if self.direction == "asc" else "asc"
        nulls = {"first": "last", "last": "first"}.get(self.nulls) if self.nulls else None
        return OrderSpec(self.field, flipped, nulls)


@dataclass
class SelectionPlan:
    """What to fetch for one entity and how to shape it."""
    entity: str
    scalars: list[str] = field(default_factory=list)
    fetch: list[str] = field(default_factory=list)
    relations: dict[str, "RelationPlan"] = field(default_factory=dict)
    counts: dict[str, Optional[Predicate]] = field(default_factory=dict)

    def require(self, name: str):
        """Fetch a column without returning it."""
        if name not in self.fetch:
            self.fetch.append(name)

    @property
    def hidden(self) -> list[str]:
        return [name for name in self.fetch if name not in self.scalars]


@dataclass
class RelationPlan:
    """Sub-fetch of one relation, with its own filter and window."""
    relation: RelationIR
    plan: SelectionPlan
    where: Optional[Predicate] = None
    order_by: list[OrderSpec] = field(default_factory=list)
    cursor: Optional[dict[str, Any]] = None
    take: Optional[int] = None
    skip: Optional[int] = None
    distinct: list[str] = field(default_factory=list)


def parse_order_by(
    registry: SchemaRegistry,
    filters: FilterCompiler,
    entity: str,
    order_by: Any,
    path: str,
) -> list[OrderSpec]:
    """
    Parse ``order_by`` into OrderSpecs.

    Accepts ``{"field": "asc"}``, ``{"field": {"sort": "desc", "nulls": "last"}}``
    or a list of such objects.
    """
    if order_by is None:
        return []
    items = order_by if isinstance(order_by, list) else [order_by]
    specs: list[OrderSpec] = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError(f"{path}.order_by: expected an object like {{'field': 'asc'}}")
        for key, spec in item.items():
            name = filters.resolve_name(entity, key, path)
            if registry.has_relation(entity, name):
                raise ValidationError(f"{path}.order_by: ordering by relation '{name}' is not supported")
            field_def = registry.field(entity, name, path)
            if field_def.is_list or field_def.type == "json":
                raise ValidationError(f"{path}.order_by: cannot order by '{name}'")
            if isinstance(spec, dict):
                direction, nulls = spec.get("sort"), spec.get("nulls")
                extra = set(spec) - {"sort", "nulls"}
                if extra:
                    raise ValidationError(f"{path}.order_by.{name}: unknown option(s) {sorted(extra)}")
            else:
                direction, nulls = spec, None
            if direction not in ("asc", "desc"):
                raise ValidationError(f"{path}.order_by.{name}: sort must be 'asc' or 'desc'")
            if nulls not in (None, "first", "last"):
                raise ValidationError(f"{path}.order_by.{name}: nulls must be 'first' or 'last'")
            specs.append(OrderSpec(name, direction, nulls))
    return specs


class SelectionPlanner:
    """
    Builds SelectionPlans from select / include / omit arguments.

    Usage:
        planner = SelectionPlanner(registry, filters)
        plan = planner.plan("Student", include={"fees": {"take": 3}})
    """

    def __init__(self, registry: SchemaRegistry, filters: FilterCompiler, max_depth: int = 8):
        self.registry = registry
        self.filters = filters
        self.max_depth = max_depth

    def plan(
        self,
        entity: str,
        select: Optional[dict] = None,
        include: Optional[dict] = None,
        omit: Optional[dict] = None,
        path: Optional[str] = None,
        depth: int = 0,
    ) -> SelectionPlan:
        path = path or entity
        if select is not None and omit is not None:
            raise ValidationError(f"{path}: 'select' and 'omit' cannot be used together")
        if select is not None and include is not None:
            raise ValidationError(f"{path}: 'select' and 'include' cannot be used together")

        entity_def = self.registry.entity(entity)
        plan = SelectionPlan(entity=entity)

        if select is not None:
            self._require_object(select, "select", path)
            for key, value in select.items():
                if key == "_count":
                    self._plan_counts(plan, value, path)
                    continue
                if value is None or value is False:
                    continue
                name = self.filters.resolve_name(entity, key, path)
                if self.registry.has_relation(entity, name):
                    plan.relations[name] = self._plan_relation(entity, name, value, path, depth)
                elif value is True:
                    plan.scalars.append(name)
                else:
                    raise ValidationError(f"{path}.{name}: scalar fields are selected with true")
        else:
            omitted = self._omitted(entity, omit, path)
            plan.scalars = [name for name in entity_def.fields if name not in omitted]
            if include is not None:
                self._require_object(include, "include", path)
                for key, value in include.items():
                    if key == "_count":
                        self._plan_counts(plan, value, path)
                        continue
                    if value is None or value is False:
                        continue
                    name = self.filters.resolve_name(entity, key, path)
                    if not self.registry.has_relation(entity, name):
                        raise ValidationError(f"{path}.{name}: only relations can be included")
                    plan.relations[name] = self._plan_relation(entity, name, value, path, depth)

        plan.fetch = list(plan.scalars)
        plan.require(entity_def.key)
        for relation_plan in plan.relations.values():
            plan.require(relation_plan.relation.local_key)
        for name in plan.counts:
            plan.require(self.registry.relation(entity, name).local_key)
        return plan

    def parse_distinct(self, entity: str, distinct: Any, path: str) -> list[str]:
        if distinct is None:
            return []
        names = [distinct] if isinstance(distinct, str) else list(distinct)
        resolved = []
        for key in names:
            name = self.filters.resolve_name(entity, key, path)
            if self.registry.has_relation(entity, name):
                raise ValidationError(f"{path}.distinct: '{name}' is a relation")
            resolved.append(name)
        return resolved

    def _require_object(self, value: Any, option: str, path: str):
        if not isinstance(value, dict):
            raise ValidationError(f"{path}: '{option}' must be an object")

    def _omitted(self, entity: str, omit: Optional[dict], path: str) -> set[str]:
        if omit is None:
            return set()
        self._require_object(omit, "omit", path)
        omitted = set()
        for key, value in omit.items():
            name = self.filters.resolve_name(entity, key, path)
            if self.registry.has_relation(entity, name):
                raise ValidationError(f"{path}.omit: only scalar fields can be omitted ('{name}' is a relation)")
            if value is None:
                continue
            if not isinstance(value, bool):
                raise ValidationError(f"{path}.omit.{name}: expected true or false")
            if value:
                omitted.add(name)
        return omitted

    def _plan_relation(self, entity: str, name: str, value: Any, path: str, depth: int) -> RelationPlan:
        rel = self.registry.relation(entity, name, path)
        rpath = f"{path}.{name}"
        if depth + 1 > self.max_depth:
            raise ValidationError(f"{rpath}: relation selections are nested deeper than {self.max_depth} levels")

        if value is True:
            args = RelationArgs()
        elif isinstance(value, dict):
            args = parse_args(RelationArgs, value, rpath)
        else:
            raise ValidationError(f"{rpath}: expected true or an object")

        if rel.cardinality == "one":
            for option in ("where", "order_by", "cursor", "take", "skip", "distinct"):
                if getattr(args, option) is not None:
                    raise ValidationError(f"{rpath}: '{option}' is only allowed on to-many relations")

        child = self.plan(rel.target, args.select, args.include, args.omit, rpath, depth + 1)
        child.require(rel.remote_key)

        cursor = None
        if args.cursor is not None:
            cursor = self.filters.parse_unique(rel.target, args.cursor, f"{rpath}.cursor").values
            for field_name in cursor:
                child.require(field_name)
        distinct = self.parse_distinct(rel.target, args.distinct, rpath)
        for field_name in distinct:
            child.require(field_name)

        return RelationPlan(
            relation=rel,
            plan=child,
            where=self.filters.normalize(rel.target, args.where, rpath),
            order_by=parse_order_by(self.registry, self.filters, rel.target, args.order_by, rpath),
            cursor=cursor,
            take=args.take,
            skip=args.skip,
            distinct=distinct,
        )

    def _plan_counts(self, plan: SelectionPlan, value: Any, path: str):
        """Plan ``_count``: true counts every to-many relation."""
        entity = plan.entity
        cpath = f"{path}._count"
        if value is None or value is False:
            return
        if value is True:
            for name, rel in self.registry.relations(entity).items():
                if rel.cardinality == "many":
                    plan.counts[name] = None
            return
        if not isinstance(value, dict) or set(value) - {"select"}:
            raise ValidationError(f"{cpath}: expected true or {{'select': {{...}}}}")
        selected = value.get("select") or {}
        self._require_object(selected, "select", cpath)
        for key, option in selected.items():
            if option is None or option is False:
                continue
            name = self.filters.resolve_name(entity, key, cpath)
            if not self.registry.has_relation(entity, name):
                raise ValidationError(f"{cpath}.{name}: only relations can be counted")
            rel = self.registry.relation(entity, name, cpath)
            if rel.cardinality != "many":
                raise ValidationError(f"{cpath}.{name}: only to-many relations can be counted")
            if option is True:
                plan.counts[name] = None
            elif isinstance(option, dict) and set(option) <= {"where"}:
                plan.counts[name] = self.filters.normalize(rel.target, option.get("where"), f"{cpath}.{name}")
            else:
                raise ValidationError(f"{cpath}.{name}: expected true or {{'where': {{...}}}}")
