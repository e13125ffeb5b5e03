"""
Read executor - runs ReadQuery plans against the store.

Handles:
- Root reads with filter, ordering, cursor, skip/take and distinct
- Relation sub-fetches, one IN query per relation and level
- Relation counts (``_count``)
- Tenant guards on every statement

Rows come back as a raw result tree of ``RawNode`` objects that the
result assembler shapes into output.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncConnection

from ..core.filters import FilterCompiler
from ..core.predicates import FieldPredicate, Predicate, combine
from ..core.registry import SchemaRegistry
from ..core.selection import OrderSpec, RelationPlan, SelectionPlan
from .context import ExecutionContext
from .planner import ReadQuery

logger = logging.getLogger(__name__)

IN_CHUNK_SIZE = 500


@dataclass
class RawNode:
    """One fetched row with its fetched relations and counts."""
    row: dict[str, Any]
    relations: dict[str, Any] = field(default_factory=dict)
    counts: dict[str, int] = field(default_factory=dict)


def chunked(values: list, size: int = IN_CHUNK_SIZE):
    for start in range(0, len(values), size):
        yield values[start:start + size]


def _unique_values(nodes: list[RawNode], name: str) -> list[Any]:
    """Extract unique non-null values of a column from nodes."""
    values = []
    seen = set()
    for node in nodes:
        value = node.row.get(name)
        if value is not None and value not in seen:
            values.append(value)
            seen.add(value)
    return values


def _distinct(rows: list[dict], fields: list[str]) -> list[dict]:
    seen = set()
    kept = []
    for row in rows:
        marker = tuple(row[name] for name in fields)
        if marker in seen:
            continue
        seen.add(marker)
        kept.append(row)
    return kept


class QueryExecutor:
    """
    Executes reads on an open connection.

    Usage:
        executor = QueryExecutor(registry, filters)
        nodes = await executor.fetch(conn, context, query)
    """

    def __init__(self, registry: SchemaRegistry, filters: FilterCompiler):
        self.registry = registry
        self.filters = filters

    async def fetch(self, conn: AsyncConnection, context: ExecutionContext, query: ReadQuery) -> list[RawNode]:
        rows = await self.select_window(
            conn,
            context,
            query.entity,
            query.plan.fetch,
            where=query.where,
            order_by=query.order_by,
            cursor=query.cursor,
            take=query.take,
            skip=query.skip,
            distinct=query.distinct,
        )
        nodes = [RawNode(row) for row in rows]
        await self.load_relations(conn, context, query.plan, nodes)
        return nodes

    async def fetch_one(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        entity: str,
        where: Optional[Predicate],
        plan: SelectionPlan,
    ) -> Optional[RawNode]:
        rows = await self.select_window(conn, context, entity, plan.fetch, where=where, take=1)
        if not rows:
            return None
        node = RawNode(rows[0])
        await self.load_relations(conn, context, plan, [node])
        return node

    async def fetch_by_key(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        entity: str,
        key: Any,
        plan: SelectionPlan,
    ) -> Optional[RawNode]:
        key_field = self.registry.entity(entity).key
        return await self.fetch_one(conn, context, entity, FieldPredicate(key_field, "equals", key), plan)

    # ------------------------------------------------------------------
    # Windows
    # ------------------------------------------------------------------

    async def select_window(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        entity: str,
        columns: list[str],
        where: Optional[Predicate] = None,
        order_by: Optional[list[OrderSpec]] = None,
        cursor: Optional[dict[str, Any]] = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        distinct: Optional[list[str]] = None,
    ) -> list[dict[str, Any]]:
        """
        Select ``columns`` of the rows in a window, in window order.

        The cursor is applied in SQL when every ordering column is
        non-nullable; otherwise the window is cut in memory. ``distinct``
        is always applied in memory before skip/take.
        """
        table = self.registry.table(entity)
        key = self.registry.entity(entity).key
        orders = self._with_tiebreak(order_by or [], key)
        backwards = take is not None and take < 0
        if backwards:
            orders = [order.reversed() for order in orders]

        fetch = list(columns)
        if key not in fetch:
            fetch.append(key)

        criteria = [self.filters.to_sql(entity, combine(where, context.guard(entity)), table)]
        in_memory = bool(distinct)
        memory_cursor = False
        position = None
        if cursor is not None:
            position = await self._cursor_position(conn, context, entity, cursor, orders)
            if position is None:
                return []
            if all(not self.registry.field(entity, order.field).nullable for order in orders):
                criteria.append(self._after(table, orders, position))
            else:
                in_memory = memory_cursor = True

        stmt = select(*[table.c[name] for name in fetch]).where(*criteria).order_by(*self._order_clauses(table, orders))
        if not in_memory:
            if skip:
                stmt = stmt.offset(skip)
            if take is not None:
                stmt = stmt.limit(abs(take))

        logger.debug(f"Fetching {entity} window (take={take}, skip={skip}, cursor={cursor is not None})")
        result = await conn.execute(stmt)
        rows = [dict(row._mapping) for row in result]

        if in_memory:
            if memory_cursor:
                index = next((i for i, row in enumerate(rows) if row[key] == position[key]), None)
                rows = rows[index:] if index is not None else []
            if distinct:
                rows = _distinct(rows, distinct)
            rows = rows[skip or 0:]
            if take is not None:
                rows = rows[:abs(take)]

        if backwards:
            rows.reverse()
        if key not in columns:
            for row in rows:
                row.pop(key, None)
        return rows

    async def window_keys(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        entity: str,
        where: Optional[Predicate] = None,
        order_by: Optional[list[OrderSpec]] = None,
        cursor: Optional[dict[str, Any]] = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> list[Any]:
        key = self.registry.entity(entity).key
        rows = await self.select_window(
            conn, context, entity, [key], where=where, order_by=order_by, cursor=cursor, take=take, skip=skip,
        )
        return [row[key] for row in rows]

    async def window_source(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        entity: str,
        where: Optional[Predicate] = None,
        order_by: Optional[list[OrderSpec]] = None,
        cursor: Optional[dict[str, Any]] = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
    ):
        """Subquery over the rows of a window, for aggregation."""
        table = self.registry.table(entity)
        if cursor is None and take is None and not skip:
            condition = self.filters.to_sql(entity, combine(where, context.guard(entity)), table)
            return select(table).where(condition).subquery()
        keys = await self.window_keys(conn, context, entity, where, order_by, cursor, take, skip)
        key = self.registry.entity(entity).key
        return select(table).where(table.c[key].in_(keys)).subquery()

    async def _cursor_position(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        entity: str,
        cursor: dict[str, Any],
        orders: list[OrderSpec],
    ) -> Optional[dict[str, Any]]:
        """Ordering values of the cursor row, or None if it does not exist."""
        table = self.registry.table(entity)
        pinned = [FieldPredicate(name, "equals", value) for name, value in cursor.items()]
        condition = self.filters.to_sql(entity, combine(*pinned, context.guard(entity)), table)
        columns = list(dict.fromkeys(order.field for order in orders))
        result = await conn.execute(select(*[table.c[name] for name in columns]).where(condition).limit(1))
        row = result.first()
        return dict(row._mapping) if row is not None else None

    def _with_tiebreak(self, orders: list[OrderSpec], key: str) -> list[OrderSpec]:
        if any(order.field == key for order in orders):
            return list(orders)
        return [*orders, OrderSpec(key, "asc")]

    def _order_clauses(self, table, orders: list[OrderSpec]) -> list:
        clauses = []
        for order in orders:
            column = table.c[order.field]
            clause = column.desc() if order.direction == "desc" else column.asc()
            if order.nulls == "first":
                clause = clause.nulls_first()
            elif order.nulls == "last":
                clause = clause.nulls_last()
            clauses.append(clause)
        return clauses

    def _after(self, table, orders: list[OrderSpec], position: dict[str, Any]):
        """Rows at or after the cursor position in lexicographic window order."""
        tiers = []
        for i, order in enumerate(orders):
            column = table.c[order.field]
            value = position[order.field]
            equal = [table.c[prev.field] == position[prev.field] for prev in orders[:i]]
            step = column > value if order.direction == "asc" else column < value
            tiers.append(and_(*equal, step))
        tiers.append(and_(*[table.c[order.field] == position[order.field] for order in orders]))
        return or_(*tiers)

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    async def load_relations(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        plan: SelectionPlan,
        nodes: list[RawNode],
    ):
        """Fetch every planned relation and count for ``nodes``, recursively."""
        if not nodes:
            return

        for name, relation_plan in plan.relations.items():
            rel = relation_plan.relation
            keys = _unique_values(nodes, rel.local_key)
            grouped: dict[Any, list[RawNode]] = {}
            if keys:
                rows = await self._select_children(conn, context, relation_plan, keys)
                for row in rows:
                    grouped.setdefault(row[rel.remote_key], []).append(RawNode(row))
                if rel.cardinality == "many":
                    grouped = {value: self._window(children, relation_plan) for value, children in grouped.items()}
                kept = [child for children in grouped.values() for child in children]
                await self.load_relations(conn, context, relation_plan.plan, kept)

            for node in nodes:
                value = node.row.get(rel.local_key)
                matches = grouped.get(value, []) if value is not None else []
                if rel.cardinality == "many":
                    node.relations[name] = matches
                else:
                    node.relations[name] = matches[0] if matches else None

        for name, where in plan.counts.items():
            rel = self.registry.relation(plan.entity, name)
            keys = _unique_values(nodes, rel.local_key)
            counts: dict[Any, int] = {}
            if keys:
                target = self.registry.table(rel.target)
                condition = self.filters.to_sql(rel.target, combine(where, context.guard(rel.target)), target)
                remote = target.c[rel.remote_key]
                for chunk in chunked(keys):
                    stmt = select(remote, func.count()).where(remote.in_(chunk), condition).group_by(remote)
                    result = await conn.execute(stmt)
                    counts.update({value: total for value, total in result})
            for node in nodes:
                node.counts[name] = counts.get(node.row.get(rel.local_key), 0)

    async def _select_children(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        relation_plan: RelationPlan,
        keys: list[Any],
    ) -> list[dict[str, Any]]:
        rel = relation_plan.relation
        table = self.registry.table(rel.target)
        target_key = self.registry.entity(rel.target).key
        orders = self._with_tiebreak(relation_plan.order_by, target_key)
        condition = self.filters.to_sql(rel.target, combine(relation_plan.where, context.guard(rel.target)), table)
        columns = [table.c[name] for name in relation_plan.plan.fetch]

        rows: list[dict[str, Any]] = []
        for chunk in chunked(keys):
            stmt = (
                select(*columns)
                .where(table.c[rel.remote_key].in_(chunk), condition)
                .order_by(*self._order_clauses(table, orders))
            )
            logger.debug(f"Fetching {rel.entity}.{rel.name} for {len(chunk)} parent(s)")
            result = await conn.execute(stmt)
            rows.extend(dict(row._mapping) for row in result)
        return rows

    def _window(self, children: list[RawNode], relation_plan: RelationPlan) -> list[RawNode]:
        """Apply cursor, distinct and skip/take to one parent's children."""
        take = relation_plan.take
        children = list(children)
        if take is not None and take < 0:
            children.reverse()
        if relation_plan.cursor:
            cursor = relation_plan.cursor
            index = next(
                (i for i, child in enumerate(children) if all(child.row.get(k) == v for k, v in cursor.items())),
                None,
            )
            children = children[index:] if index is not None else []
        if relation_plan.distinct:
            seen = set()
            unique = []
            for child in children:
                marker = tuple(child.row[name] for name in relation_plan.distinct)
                if marker not in seen:
                    seen.add(marker)
                    unique.append(child)
            children = unique
        children = children[relation_plan.skip or 0:]
        if take is not None:
            children = children[:abs(take)]
        if take is not None and take < 0:
            children.reverse()
        return children
