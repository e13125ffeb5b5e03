"""
Query planner - turns validated read arguments into ReadQuery plans.

All validation happens here, when the operation is built; the executor
only runs what the planner produced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from ..core.filters import FilterCompiler
from ..core.predicates import Predicate
from ..core.query_types import FindManyArgs, FindUniqueArgs, Projection
from ..core.registry import SchemaRegistry
from ..core.selection import OrderSpec, SelectionPlan, SelectionPlanner, parse_order_by


@dataclass
class ReadQuery:
    """
    A root read: filter, window and selection for one entity.

    ``take`` may be negative, which reads backwards from the cursor (or
    from the end) and returns rows in the requested order.
    """
    entity: str
    plan: SelectionPlan
    where: Optional[Predicate] = None
    order_by: list[OrderSpec] = field(default_factory=list)
    cursor: Optional[dict[str, Any]] = None
    take: Optional[int] = None
    skip: Optional[int] = None
    distinct: list[str] = field(default_factory=list)


class QueryPlanner:
    """
    Builds ReadQuery plans.

    Usage:
        planner = QueryPlanner(registry, filters, selection)
        query = planner.plan_find_many("Student", parse_args(FindManyArgs, {...}))
    """

    def __init__(self, registry: SchemaRegistry, filters: FilterCompiler, selection: SelectionPlanner):
        self.registry = registry
        self.filters = filters
        self.selection = selection

    def plan_selection(self, entity: str, args: Projection, path: Optional[str] = None) -> SelectionPlan:
        return self.selection.plan(entity, args.select, args.include, args.omit, path or entity)

    def plan_find_many(self, entity: str, args: FindManyArgs) -> ReadQuery:
        plan = self.plan_selection(entity, args)
        cursor = None
        if args.cursor is not None:
            cursor = self.filters.parse_unique(entity, args.cursor, f"{entity}.cursor").values
        distinct = self.selection.parse_distinct(entity, args.distinct, entity)
        for name in distinct:
            plan.require(name)
        return ReadQuery(
            entity=entity,
            plan=plan,
            where=self.filters.normalize(entity, args.where),
            order_by=parse_order_by(self.registry, self.filters, entity, args.order_by, entity),
            cursor=cursor,
            take=args.take,
            skip=args.skip,
            distinct=distinct,
        )

    def plan_find_first(self, entity: str, args: FindManyArgs) -> ReadQuery:
        query = self.plan_find_many(entity, args)
        query.take = -1 if args.take is not None and args.take < 0 else 1
        return query

    def plan_find_unique(self, entity: str, args: FindUniqueArgs) -> ReadQuery:
        unique = self.filters.parse_unique(entity, args.where)
        return ReadQuery(
            entity=entity,
            plan=self.plan_selection(entity, args),
            where=unique.predicate,
            take=1,
        )
