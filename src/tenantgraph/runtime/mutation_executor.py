"""
Mutation executor for tenantgraph.

Handles create, create_many, update, update_many, upsert, delete and
delete_many. Payloads are validated when the operation is built:

- unknown fields, enum values, list-ness and required fields
- relation ``connect`` / ``disconnect`` on owning to-one relations
- atomic number operations (set, increment, decrement, multiply, divide)
- the tenant scope (``tenant_id`` filled in, other tenants rejected)

Before anything is written, every foreign key being set is resolved to its
target row's tenant on the same connection; a row may only reference rows
of its own tenant.

Usage:
    mutations = MutationExecutor(registry, filters, planner, reads, assembler)
    query = mutations.prepare_create("Student", parse_args(CreateArgs, {...}), context)
    record = await mutations.create(conn, context, query)
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection

from ..core.defs import FieldDef
from ..core.errors import CrossTenantError, ForeignKeyConstraintError, NotFoundError, ValidationError
from ..core.filters import FilterCompiler, UniqueWhere
from ..core.predicates import Predicate, combine
from ..core.query_types import (
    BatchPayload,
    CreateArgs,
    CreateManyArgs,
    DeleteArgs,
    DeleteManyArgs,
    UpdateArgs,
    UpdateManyArgs,
    UpsertArgs,
)
from ..core.registry import RelationIR, SchemaRegistry
from ..core.selection import SelectionPlan
from ..core.utils import coerce_value
from .assembler import ResultAssembler
from .context import ExecutionContext
from .executor import QueryExecutor, chunked
from .planner import QueryPlanner

logger = logging.getLogger(__name__)

NUMBER_OPS = ("set", "increment", "decrement", "multiply", "divide")
RELATION_OPS = ("connect", "disconnect")

# Upper bound of bound parameters per multi-row INSERT
MAX_BIND_PARAMS = 900


@dataclass
class WriteData:
    """
    A validated write payload.

    ``connects`` maps relation names to the unique lookup of the row to
    connect; None disconnects the relation.
    """
    values: dict[str, Any] = field(default_factory=dict)
    updates: dict[str, tuple[str, Any]] = field(default_factory=dict)
    connects: dict[str, Optional[UniqueWhere]] = field(default_factory=dict)


@dataclass
class MutationQuery:
    """A validated mutation, ready to run."""
    entity: str
    operation: str
    where: Optional[Predicate] = None
    unique: Optional[UniqueWhere] = None
    data: Optional[WriteData] = None
    create: Optional[WriteData] = None
    rows: list[WriteData] = field(default_factory=list)
    plan: Optional[SelectionPlan] = None
    limit: Optional[int] = None
    skip_duplicates: bool = False
    raw_where: Any = None


def _arithmetic(column, op: str, operand: Any, integer: bool):
    if op == "increment":
        return column + operand
    if op == "decrement":
        return column - operand
    if op == "multiply":
        return column * operand
    return column // operand if integer else column / operand


class MutationExecutor:
    """
    Builds and runs write operations.

    ``prepare_*`` methods validate arguments and never touch the store;
    the async methods run a prepared query on an open connection.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        filters: FilterCompiler,
        planner: QueryPlanner,
        reads: QueryExecutor,
        assembler: ResultAssembler,
    ):
        self.registry = registry
        self.filters = filters
        self.planner = planner
        self.reads = reads
        self.assembler = assembler

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def prepare_create(self, entity: str, args: CreateArgs, context: ExecutionContext) -> MutationQuery:
        path = f"{entity}.create"
        return MutationQuery(
            entity=entity,
            operation="create",
            data=self.parse_data(entity, args.data, context, f"{path}.data", creating=True),
            plan=self.planner.plan_selection(entity, args, path),
        )

    def prepare_create_many(self, entity: str, args: CreateManyArgs, context: ExecutionContext) -> MutationQuery:
        path = f"{entity}.createMany"
        if args.skip_duplicates and self.filters.dialect not in ("sqlite", "postgresql"):
            raise ValidationError(f"{path}: skipDuplicates is not supported on the '{self.filters.dialect}' dialect")
        items = args.data if isinstance(args.data, list) else [args.data]
        rows = [
            self.parse_data(entity, item, context, f"{path}.data[{i}]", creating=True, relations=False)
            for i, item in enumerate(items)
        ]
        return MutationQuery(entity=entity, operation="create_many", rows=rows, skip_duplicates=args.skip_duplicates)

    def prepare_update(self, entity: str, args: UpdateArgs, context: ExecutionContext) -> MutationQuery:
        path = f"{entity}.update"
        return MutationQuery(
            entity=entity,
            operation="update",
            unique=self.filters.parse_unique(entity, args.where, f"{path}.where"),
            data=self.parse_data(entity, args.data, context, f"{path}.data", creating=False),
            plan=self.planner.plan_selection(entity, args, path),
            raw_where=args.where,
        )

    def prepare_update_many(self, entity: str, args: UpdateManyArgs, context: ExecutionContext) -> MutationQuery:
        path = f"{entity}.updateMany"
        return MutationQuery(
            entity=entity,
            operation="update_many",
            where=self.filters.normalize(entity, args.where, f"{path}.where"),
            data=self.parse_data(entity, args.data, context, f"{path}.data", creating=False, relations=False),
        )

    def prepare_upsert(self, entity: str, args: UpsertArgs, context: ExecutionContext) -> MutationQuery:
        path = f"{entity}.upsert"
        return MutationQuery(
            entity=entity,
            operation="upsert",
            unique=self.filters.parse_unique(entity, args.where, f"{path}.where"),
            create=self.parse_data(entity, args.create, context, f"{path}.create", creating=True),
            data=self.parse_data(entity, args.update, context, f"{path}.update", creating=False),
            plan=self.planner.plan_selection(entity, args, path),
            raw_where=args.where,
        )

    def prepare_delete(self, entity: str, args: DeleteArgs, context: ExecutionContext) -> MutationQuery:
        path = f"{entity}.delete"
        return MutationQuery(
            entity=entity,
            operation="delete",
            unique=self.filters.parse_unique(entity, args.where, f"{path}.where"),
            plan=self.planner.plan_selection(entity, args, path),
            raw_where=args.where,
        )

    def prepare_delete_many(self, entity: str, args: DeleteManyArgs, context: ExecutionContext) -> MutationQuery:
        return MutationQuery(
            entity=entity,
            operation="delete_many",
            where=self.filters.normalize(entity, args.where, f"{entity}.deleteMany.where"),
            limit=args.limit,
        )

    def parse_data(
        self,
        entity: str,
        data: Any,
        context: ExecutionContext,
        path: str,
        creating: bool,
        relations: bool = True,
    ) -> WriteData:
        """
        Validate a write payload.

        Args:
            entity: Entity being written
            data: Payload (field values, number operations, relation writes)
            context: Execution context, for the tenant scope
            path: Location used in error messages
            creating: True for create payloads (defaults and required fields apply)
            relations: Whether connect / disconnect is accepted
        """
        if not isinstance(data, dict):
            raise ValidationError(f"{path}: expected an object")

        entity_def = self.registry.entity(entity)
        write = WriteData()

        for key, value in data.items():
            name = self.filters.resolve_name(entity, key, path)
            fpath = f"{path}.{name}"
            if self.registry.has_relation(entity, name):
                if not relations:
                    raise ValidationError(f"{fpath}: relation writes are not supported here; set the foreign key instead")
                self._parse_relation_write(entity, name, value, fpath, creating, write)
                continue
            field_def = entity_def.fields[name]
            if name == entity_def.key and not creating:
                raise ValidationError(f"{fpath}: the primary key cannot be updated")
            if isinstance(value, dict) and field_def.type != "json":
                self._parse_field_operation(field_def, value, fpath, creating, write)
                continue
            write.values[name] = self._coerce(field_def, value, fpath)

        for name in write.connects:
            local_key = self.registry.relation(entity, name).local_key
            if local_key in write.values:
                raise ValidationError(f"{path}: set either '{local_key}' or relation '{name}', not both")

        self._check_scope(entity, write, context, path, creating)

        if creating:
            provided = set(write.values)
            provided.update(self.registry.relation(entity, name).local_key for name in write.connects)
            missing = [f.name for f in entity_def.fields.values() if f.required and f.name not in provided]
            if missing:
                raise ValidationError(f"{path}: missing required field(s): {', '.join(missing)}")

        return write

    def _coerce(self, field_def: FieldDef, value: Any, path: str) -> Any:
        if value is None:
            if not field_def.nullable:
                raise ValidationError(f"{path}: '{field_def.name}' cannot be null")
            return None
        return coerce_value(field_def, value, path)

    def _parse_field_operation(self, field_def: FieldDef, value: dict, path: str, creating: bool, write: WriteData):
        if len(value) != 1:
            raise ValidationError(f"{path}: use exactly one of {', '.join(NUMBER_OPS)}")
        (op, operand), = value.items()
        if op not in NUMBER_OPS:
            raise ValidationError(f"{path}: unknown update operation '{op}'")
        if op == "set":
            write.values[field_def.name] = self._coerce(field_def, operand, path)
            return
        if creating:
            raise ValidationError(f"{path}: '{op}' is only valid in updates")
        if not field_def.is_numeric:
            raise ValidationError(f"{path}: '{op}' requires a numeric field")
        if operand is None:
            raise ValidationError(f"{path}: '{op}' takes a number")
        operand = coerce_value(field_def, operand, path)
        if op == "divide" and operand == 0:
            raise ValidationError(f"{path}: cannot divide by zero")
        write.updates[field_def.name] = (op, operand)

    def _parse_relation_write(self, entity: str, name: str, value: Any, path: str, creating: bool, write: WriteData):
        rel = self.registry.relation(entity, name)
        if not rel.is_owning:
            raise ValidationError(f"{path}: '{name}' is written from the {rel.target} side")
        if not isinstance(value, dict) or len(value) != 1:
            raise ValidationError(f"{path}: use exactly one of {', '.join(RELATION_OPS)}")
        (op, operand), = value.items()
        if op == "connect":
            write.connects[name] = self.filters.parse_unique(rel.target, operand, f"{path}.connect")
        elif op == "disconnect":
            if creating:
                raise ValidationError(f"{path}: disconnect is only valid in updates")
            if not rel.nullable:
                raise ValidationError(f"{path}: required relation '{name}' cannot be disconnected")
            if not isinstance(operand, bool):
                raise ValidationError(f"{path}.disconnect: expected a boolean")
            if operand:
                write.connects[name] = None
        else:
            raise ValidationError(f"{path}: unknown relation operation '{op}' (use connect or disconnect)")

    def _check_scope(self, entity: str, write: WriteData, context: ExecutionContext, path: str, creating: bool):
        """Fill or check the tenant field of a payload against the client's scope."""
        if not context.scoped:
            return
        if entity == self.registry.tenant_entity:
            if creating:
                raise ValidationError(f"{path}: cannot create a {entity} inside a tenant scope")
            return

        tenant_field = context.tenant_field(entity)
        if tenant_field in write.values:
            given = write.values[tenant_field]
            if given != context.tenant_id:
                raise CrossTenantError(
                    entity, tenant_field, expected_tenant=context.tenant_id, actual_tenant=given,
                )
            return
        connected = any(self.registry.relation(entity, name).local_key == tenant_field for name in write.connects)
        if creating and not connected:
            write.values[tenant_field] = context.tenant_id

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def create(self, conn: AsyncConnection, context: ExecutionContext, query: MutationQuery) -> dict[str, Any]:
        key = await self._insert_one(conn, context, query.entity, query.data)
        return await self._read_back(conn, context, query.entity, key, query.plan)

    async def create_many(self, conn: AsyncConnection, context: ExecutionContext, query: MutationQuery) -> BatchPayload:
        """
        Insert rows with multi-row INSERT statements.

        With ``skip_duplicates`` rows that hit a unique constraint are
        skipped and not counted; without it the batch is all-or-nothing.
        """
        entity = query.entity
        if not query.rows:
            return BatchPayload(count=0)

        tenant_field = context.tenant_field(entity)
        rows = []
        for row in query.rows:
            values = await self._resolve(conn, context, entity, row)
            rows.append(self._with_defaults(entity, values))
        await self._check_references(conn, context, entity, [(row.get(tenant_field), row) for row in rows])

        columns = list(dict.fromkeys(name for row in rows for name in row))
        rows = [{name: row.get(name) for name in columns} for row in rows]
        table = self.registry.table(entity)

        count = 0
        for chunk in chunked(rows, max(1, MAX_BIND_PARAMS // len(columns))):
            stmt = self._insert(table, query.skip_duplicates).values(chunk)
            result = await conn.execute(stmt)
            count += result.rowcount if query.skip_duplicates else len(chunk)
        logger.debug(f"Created {count} {entity} row(s) of {len(rows)}")
        return BatchPayload(count=count)

    async def update(self, conn: AsyncConnection, context: ExecutionContext, query: MutationQuery) -> dict[str, Any]:
        targets = await self._select_targets(conn, context, query.entity, query.unique.predicate, limit=1)
        if not targets:
            raise NotFoundError(query.entity, where=query.raw_where, operation="update")
        await self._apply_update(conn, context, query.entity, targets, query.data)
        return await self._read_back(conn, context, query.entity, targets[0][0], query.plan)

    async def update_many(self, conn: AsyncConnection, context: ExecutionContext, query: MutationQuery) -> BatchPayload:
        targets = await self._select_targets(conn, context, query.entity, query.where)
        if not targets:
            return BatchPayload(count=0)
        count = await self._apply_update(conn, context, query.entity, targets, query.data)
        return BatchPayload(count=count)

    async def upsert(self, conn: AsyncConnection, context: ExecutionContext, query: MutationQuery) -> dict[str, Any]:
        """Update the row matching the unique filter, or create it; never both."""
        targets = await self._select_targets(conn, context, query.entity, query.unique.predicate, limit=1)
        if targets:
            logger.debug(f"Upsert on {query.entity} takes the update branch")
            await self._apply_update(conn, context, query.entity, targets, query.data)
            key = targets[0][0]
        else:
            logger.debug(f"Upsert on {query.entity} takes the create branch")
            key = await self._insert_one(conn, context, query.entity, query.create)
        return await self._read_back(conn, context, query.entity, key, query.plan)

    async def delete(self, conn: AsyncConnection, context: ExecutionContext, query: MutationQuery) -> dict[str, Any]:
        node = await self.reads.fetch_one(conn, context, query.entity, query.unique.predicate, query.plan)
        if node is None:
            raise NotFoundError(query.entity, where=query.raw_where, operation="delete")
        record = self.assembler.assemble(query.plan, node)

        table = self.registry.table(query.entity)
        key = self.registry.entity(query.entity).key
        logger.debug(f"Deleting {query.entity} {node.row[key]}")
        await conn.execute(delete(table).where(table.c[key] == node.row[key]))
        return record

    async def delete_many(self, conn: AsyncConnection, context: ExecutionContext, query: MutationQuery) -> BatchPayload:
        targets = await self._select_targets(conn, context, query.entity, query.where, limit=query.limit)
        table = self.registry.table(query.entity)
        key = self.registry.entity(query.entity).key
        count = 0
        for chunk in chunked([target for target, _ in targets]):
            result = await conn.execute(delete(table).where(table.c[key].in_(chunk)))
            count += result.rowcount
        logger.debug(f"Deleted {count} {query.entity} row(s)")
        return BatchPayload(count=count)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _insert_one(self, conn: AsyncConnection, context: ExecutionContext, entity: str, data: WriteData) -> Any:
        values = self._with_defaults(entity, await self._resolve(conn, context, entity, data))
        tenant_field = context.tenant_field(entity)
        await self._check_references(conn, context, entity, [(values.get(tenant_field), values)])
        logger.debug(f"Creating {entity}")
        await conn.execute(insert(self.registry.table(entity)).values(values))
        return values[self.registry.entity(entity).key]

    async def _apply_update(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        entity: str,
        targets: list[tuple[Any, Any]],
        data: WriteData,
    ) -> int:
        """Write ``data`` to the target rows; returns the number of rows written."""
        values = await self._resolve(conn, context, entity, data)

        tenant_field = context.tenant_field(entity)
        if entity != self.registry.tenant_entity and tenant_field in values:
            for _, tenant in targets:
                if values[tenant_field] != tenant:
                    raise CrossTenantError(
                        entity, tenant_field, expected_tenant=tenant, actual_tenant=values[tenant_field],
                    )
        await self._check_references(conn, context, entity, [(tenant, values) for _, tenant in targets])

        table = self.registry.table(entity)
        fields = self.registry.entity(entity).fields
        assignments: dict[str, Any] = dict(values)
        for name, (op, operand) in data.updates.items():
            assignments[name] = _arithmetic(table.c[name], op, operand, fields[name].type == "int")
        if not assignments:
            return len(targets)

        now = datetime.now(timezone.utc)
        for name, field_def in fields.items():
            if field_def.updated_at and name not in assignments:
                assignments[name] = now

        key = self.registry.entity(entity).key
        count = 0
        for chunk in chunked([target for target, _ in targets]):
            result = await conn.execute(update(table).where(table.c[key].in_(chunk)).values(assignments))
            count += result.rowcount
        logger.debug(f"Updated {count} {entity} row(s): {', '.join(assignments)}")
        return count

    async def _select_targets(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        entity: str,
        where: Optional[Predicate],
        limit: Optional[int] = None,
    ) -> list[tuple[Any, Any]]:
        """(key, tenant) of the rows matching ``where`` inside the scope, in key order."""
        table = self.registry.table(entity)
        key = self.registry.entity(entity).key
        tenant_field = context.tenant_field(entity)
        stmt = (
            select(table.c[key], table.c[tenant_field])
            .where(self.filters.to_sql(entity, combine(where, context.guard(entity)), table))
            .order_by(table.c[key])
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await conn.execute(stmt)
        return [(row[0], row[1]) for row in result]

    async def _resolve(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        entity: str,
        data: WriteData,
    ) -> dict[str, Any]:
        """Turn connect / disconnect into foreign key values."""
        values = dict(data.values)
        for name, unique in data.connects.items():
            rel = self.registry.relation(entity, name)
            if unique is None:
                values[rel.local_key] = None
                continue
            # Unguarded so rows of other tenants surface as CrossTenantError
            target = self.registry.table(rel.target)
            condition = self.filters.to_sql(rel.target, unique.predicate, target)
            result = await conn.execute(select(target.c[rel.remote_key]).where(condition).limit(1))
            row = result.first()
            if row is None:
                raise NotFoundError(rel.target, where=unique.values, operation=f"connect {entity}.{name}")
            values[rel.local_key] = row[0]

        tenant_field = context.tenant_field(entity)
        if context.scoped and entity != self.registry.tenant_entity and tenant_field in values:
            if values[tenant_field] != context.tenant_id:
                raise CrossTenantError(
                    entity, tenant_field, expected_tenant=context.tenant_id, actual_tenant=values[tenant_field],
                )
        return values

    async def _check_references(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        entity: str,
        rows: list[tuple[Any, dict[str, Any]]],
    ):
        """
        Reject foreign keys that point at missing rows or at rows of another
        tenant.

        ``rows`` pairs the tenant of each written row with the values written
        to it. The tenant field itself is left to the store.
        """
        if entity == self.registry.tenant_entity:
            return
        tenant_field = context.tenant_field(entity)
        for rel in self.registry.owning_relations(entity):
            if rel.local_key == tenant_field:
                continue
            wanted = list(dict.fromkeys(
                values[rel.local_key] for _, values in rows if values.get(rel.local_key) is not None
            ))
            if not wanted:
                continue
            owners = await self._owners(conn, context, rel, wanted)
            for tenant, values in rows:
                value = values.get(rel.local_key)
                if value is None:
                    continue
                if value not in owners:
                    raise ForeignKeyConstraintError(
                        entity, [rel.local_key], f"fk_{self.registry.entity(entity).table}_{rel.local_key}",
                    )
                if owners[value] != tenant:
                    raise CrossTenantError(
                        entity,
                        rel.local_key,
                        relation=rel.name,
                        expected_tenant=tenant,
                        actual_tenant=owners[value],
                    )

    async def _owners(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        rel: RelationIR,
        values: list[Any],
    ) -> dict[Any, Any]:
        table = self.registry.table(rel.target)
        remote = table.c[rel.remote_key]
        tenant = table.c[context.tenant_field(rel.target)]
        owners: dict[Any, Any] = {}
        for chunk in chunked(values):
            result = await conn.execute(select(remote, tenant).where(remote.in_(chunk)))
            owners.update({value: owner for value, owner in result})
        return owners

    def _with_defaults(self, entity: str, values: dict[str, Any]) -> dict[str, Any]:
        row = dict(values)
        now = datetime.now(timezone.utc)
        for name, field_def in self.registry.entity(entity).fields.items():
            if name in row:
                continue
            if field_def.generated == "uuid":
                row[name] = str(uuid.uuid4())
            elif field_def.generated == "now" or field_def.updated_at:
                row[name] = now.date() if field_def.type == "date" else now
            elif field_def.default is not None:
                default = field_def.default
                row[name] = list(default) if isinstance(default, tuple) else copy.deepcopy(default)
        return row

    def _insert(self, table, skip_duplicates: bool):
        if not skip_duplicates:
            return insert(table)
        if self.filters.dialect == "sqlite":
            return sqlite_insert(table).on_conflict_do_nothing()
        return pg_insert(table).on_conflict_do_nothing()

    async def _read_back(
        self,
        conn: AsyncConnection,
        context: ExecutionContext,
        entity: str,
        key: Any,
        plan: SelectionPlan,
    ) -> Optional[dict[str, Any]]:
        node = await self.reads.fetch_by_key(conn, context, entity, key, plan)
        return self.assembler.assemble(plan, node)
