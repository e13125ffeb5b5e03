"""
Caller-facing client for tenantgraph.

Usage:
    registry = compile_schema(SCHOOL_SCHEMA)
    client = TenantGraph(registry, create_engine(settings), settings)

    school = client.for_tenant(tenant_id)
    students = await school.student.find_many(
        where={"last_name": {"startsWith": "K"}},
        include={"fees": {"where": {"status": "PENDING"}}},
        order_by={"last_name": "asc"},
        take=20,
    )

Every delegate method validates its arguments immediately and returns an
Operation; nothing touches the store until the operation is awaited or
passed to ``client.transaction``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .config import Settings, get_settings
from .core.aggregation import AggregationEngine
from .core.errors import NotFoundError, ValidationError
from .core.filters import FilterCompiler
from .core.query_types import (
    AggregateArgs,
    CountArgs,
    CreateArgs,
    CreateManyArgs,
    DeleteArgs,
    DeleteManyArgs,
    FindManyArgs,
    FindUniqueArgs,
    GroupByArgs,
    IsolationLevel,
    UpdateArgs,
    UpdateManyArgs,
    UpsertArgs,
    parse_args,
)
from .core.registry import SchemaRegistry
from .core.selection import SelectionPlanner
from .core.utils import to_snake_case
from .runtime.assembler import ResultAssembler
from .runtime.context import ExecutionContext
from .runtime.executor import QueryExecutor
from .runtime.mutation_executor import MutationExecutor
from .runtime.planner import QueryPlanner
from .runtime.transaction_executor import InteractiveTransaction, Operation, TransactionExecutor
from .store.database import close_db, create_engine

logger = logging.getLogger(__name__)

ArgsT = TypeVar("ArgsT", bound=BaseModel)

OPERATIONS = (
    "find_unique",
    "find_unique_or_throw",
    "find_first",
    "find_first_or_throw",
    "find_many",
    "create",
    "create_many",
    "update",
    "update_many",
    "upsert",
    "delete",
    "delete_many",
    "aggregate",
    "group_by",
    "count",
)


class Runtime:
    """Compilers and executors shared by a client, its scoped views and its transactions."""

    def __init__(self, registry: SchemaRegistry, engine: AsyncEngine, settings: Settings):
        self.registry = registry
        self.engine = engine
        self.settings = settings
        depth = settings.max_relation_depth
        self.filters = FilterCompiler(registry, engine.dialect.name, depth)
        self.selection = SelectionPlanner(registry, self.filters, depth)
        self.planner = QueryPlanner(registry, self.filters, self.selection)
        self.reads = QueryExecutor(registry, self.filters)
        self.assembler = ResultAssembler()
        self.mutations = MutationExecutor(registry, self.filters, self.planner, self.reads, self.assembler)
        self.aggregations = AggregationEngine(registry, self.filters)
        self.transactions = TransactionExecutor(engine, registry, settings)

        self.attribute_names = {to_snake_case(name): name for name in registry.entity_names}


class EntityDelegate:
    """
    Operations on one entity.

    Options may be passed as one dict (camelCase or snake_case keys) or as
    keyword arguments:
        client.student.find_many({"where": {...}, "orderBy": {"last_name": "asc"}})
        client.student.find_many(where={...}, order_by={"last_name": "asc"})
    """

    def __init__(
        self,
        runtime: Runtime,
        context: ExecutionContext,
        entity: str,
        submit: Callable[[Operation], Awaitable[Any]],
    ):
        self.runtime = runtime
        self.context = context
        self.entity = entity
        self._submit = submit

    def __repr__(self) -> str:
        scope = f" tenant={self.context.tenant_id}" if self.context.scoped else ""
        return f"<EntityDelegate {self.entity}{scope}>"

    def _args(self, model: type[ArgsT], args: Any, options: dict[str, Any], operation: str) -> ArgsT:
        if args is not None and options:
            raise ValidationError(f"{self.entity}.{operation}: pass options as one object or as keywords, not both")
        return parse_args(model, args if args is not None else options, f"{self.entity}.{operation}")

    def _operation(self, name: str, runner: Callable[[AsyncConnection], Awaitable[Any]]) -> Operation:
        return Operation(self.runtime.registry, self.entity, name, runner, self._submit)

    # --- Reads ---

    def find_many(self, args: Any = None, **options: Any) -> Operation:
        query = self.runtime.planner.plan_find_many(self.entity, self._args(FindManyArgs, args, options, "findMany"))

        async def run(conn: AsyncConnection) -> list[dict[str, Any]]:
            nodes = await self.runtime.reads.fetch(conn, self.context, query)
            return self.runtime.assembler.assemble_many(query.plan, nodes)

        return self._operation("find_many", run)

    def find_first(self, args: Any = None, **options: Any) -> Operation:
        return self._find_first(self._args(FindManyArgs, args, options, "findFirst"), "find_first")

    def find_first_or_throw(self, args: Any = None, **options: Any) -> Operation:
        return self._find_first(self._args(FindManyArgs, args, options, "findFirstOrThrow"), "find_first_or_throw")

    def _find_first(self, args: FindManyArgs, name: str) -> Operation:
        query = self.runtime.planner.plan_find_first(self.entity, args)

        async def run(conn: AsyncConnection) -> Optional[dict[str, Any]]:
            nodes = await self.runtime.reads.fetch(conn, self.context, query)
            if nodes:
                return self.runtime.assembler.assemble(query.plan, nodes[0])
            if name == "find_first_or_throw":
                raise NotFoundError(self.entity, where=args.where, operation="findFirstOrThrow")
            return None

        return self._operation(name, run)

    def find_unique(self, args: Any = None, **options: Any) -> Operation:
        return self._find_unique(self._args(FindUniqueArgs, args, options, "findUnique"), "find_unique")

    def find_unique_or_throw(self, args: Any = None, **options: Any) -> Operation:
        return self._find_unique(self._args(FindUniqueArgs, args, options, "findUniqueOrThrow"), "find_unique_or_throw")

    def _find_unique(self, args: FindUniqueArgs, name: str) -> Operation:
        query = self.runtime.planner.plan_find_unique(self.entity, args)

        async def run(conn: AsyncConnection) -> Optional[dict[str, Any]]:
            nodes = await self.runtime.reads.fetch(conn, self.context, query)
            if nodes:
                return self.runtime.assembler.assemble(query.plan, nodes[0])
            if name == "find_unique_or_throw":
                raise NotFoundError(self.entity, where=args.where, operation="findUniqueOrThrow")
            return None

        return self._operation(name, run)

    # --- Writes ---

    def create(self, args: Any = None, **options: Any) -> Operation:
        query = self.runtime.mutations.prepare_create(
            self.entity, self._args(CreateArgs, args, options, "create"), self.context
        )
        return self._operation("create", lambda conn: self.runtime.mutations.create(conn, self.context, query))

    def create_many(self, args: Any = None, **options: Any) -> Operation:
        query = self.runtime.mutations.prepare_create_many(
            self.entity, self._args(CreateManyArgs, args, options, "createMany"), self.context
        )
        return self._operation("create_many", lambda conn: self.runtime.mutations.create_many(conn, self.context, query))

    def update(self, args: Any = None, **options: Any) -> Operation:
        query = self.runtime.mutations.prepare_update(
            self.entity, self._args(UpdateArgs, args, options, "update"), self.context
        )
        return self._operation("update", lambda conn: self.runtime.mutations.update(conn, self.context, query))

    def update_many(self, args: Any = None, **options: Any) -> Operation:
        query = self.runtime.mutations.prepare_update_many(
            self.entity, self._args(UpdateManyArgs, args, options, "updateMany"), self.context
        )
        return self._operation("update_many", lambda conn: self.runtime.mutations.update_many(conn, self.context, query))

    def upsert(self, args: Any = None, **options: Any) -> Operation:
        query = self.runtime.mutations.prepare_upsert(
            self.entity, self._args(UpsertArgs, args, options, "upsert"), self.context
        )
        return self._operation("upsert", lambda conn: self.runtime.mutations.upsert(conn, self.context, query))

    def delete(self, args: Any = None, **options: Any) -> Operation:
        query = self.runtime.mutations.prepare_delete(
            self.entity, self._args(DeleteArgs, args, options, "delete"), self.context
        )
        return self._operation("delete", lambda conn: self.runtime.mutations.delete(conn, self.context, query))

    def delete_many(self, args: Any = None, **options: Any) -> Operation:
        query = self.runtime.mutations.prepare_delete_many(
            self.entity, self._args(DeleteManyArgs, args, options, "deleteMany"), self.context
        )
        return self._operation("delete_many", lambda conn: self.runtime.mutations.delete_many(conn, self.context, query))

    # --- Aggregation ---

    def aggregate(self, args: Any = None, **options: Any) -> Operation:
        aggregations = self.runtime.aggregations
        query = aggregations.plan_aggregate(self.entity, self._args(AggregateArgs, args, options, "aggregate"))

        async def run(conn: AsyncConnection) -> dict[str, Any]:
            if query.buckets.empty:
                return {}
            source = await self.runtime.reads.window_source(
                conn, self.context, self.entity, query.where, query.order_by, query.cursor, query.take, query.skip,
            )
            result = await conn.execute(aggregations.aggregate_statement(query, source))
            return aggregations.shape(self.entity, query.buckets, dict(result.mappings().one()))

        return self._operation("aggregate", run)

    def count(self, args: Any = None, **options: Any) -> Operation:
        aggregations = self.runtime.aggregations
        query = aggregations.plan_count(self.entity, self._args(CountArgs, args, options, "count"))

        async def run(conn: AsyncConnection) -> Union[int, dict[str, int]]:
            source = await self.runtime.reads.window_source(
                conn, self.context, self.entity, query.where, query.order_by, query.cursor, query.take, query.skip,
            )
            result = await conn.execute(aggregations.aggregate_statement(query, source))
            return aggregations.shape(self.entity, query.buckets, dict(result.mappings().one()))["_count"]

        return self._operation("count", run)

    def group_by(self, args: Any = None, **options: Any) -> Operation:
        aggregations = self.runtime.aggregations
        query = aggregations.plan_group_by(self.entity, self._args(GroupByArgs, args, options, "groupBy"))

        async def run(conn: AsyncConnection) -> list[dict[str, Any]]:
            result = await conn.execute(aggregations.group_by_statement(query, self.context.guard(self.entity)))
            return aggregations.shape_groups(query, [dict(row) for row in result.mappings()])

        return self._operation("group_by", run)


class EntityAccess(ABC):
    """Entity delegates by attribute (``client.class_student``) or by name (``client["ClassStudent"]``)."""

    runtime: Runtime
    context: ExecutionContext

    @abstractmethod
    def _submit(self, operation: Operation) -> Awaitable[Any]:
        """Hand ``operation`` to whatever runs it."""

    def delegate(self, entity: str) -> EntityDelegate:
        if not self.runtime.registry.has_entity(entity):
            raise ValidationError(f"Unknown entity '{entity}'")
        return EntityDelegate(self.runtime, self.context, entity, self._submit)

    def __getitem__(self, entity: str) -> EntityDelegate:
        return self.delegate(entity)

    def __getattr__(self, name: str) -> EntityDelegate:
        if name.startswith("_") or name in ("runtime", "context"):
            raise AttributeError(name)
        # client.class_ for the Class entity
        entity = self.runtime.attribute_names.get(name.rstrip("_"))
        if entity is None:
            raise AttributeError(f"{type(self).__name__} has no entity '{name}'")
        return self.delegate(entity)


class TenantGraph(EntityAccess):
    """
    Entry point of the engine.

    Args:
        registry: Compiled schema
        engine: SQLAlchemy async engine; created from settings when omitted
        settings: Engine settings; ``get_settings()`` when omitted
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        engine: Optional[AsyncEngine] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.runtime = Runtime(registry, engine or create_engine(settings), settings)
        self.context = ExecutionContext(registry)

    @classmethod
    def _scoped(cls, runtime: Runtime, context: ExecutionContext) -> "TenantGraph":
        client = cls.__new__(cls)
        client.runtime = runtime
        client.context = context
        return client

    def __repr__(self) -> str:
        scope = f" tenant={self.context.tenant_id}" if self.context.scoped else ""
        return f"<TenantGraph {self.runtime.engine.dialect.name}{scope}>"

    @property
    def registry(self) -> SchemaRegistry:
        return self.runtime.registry

    @property
    def engine(self) -> AsyncEngine:
        return self.runtime.engine

    @property
    def tenant_id(self) -> Optional[str]:
        return self.context.tenant_id

    def _submit(self, operation: Operation) -> Awaitable[Any]:
        return self.runtime.transactions.run(operation)

    def for_tenant(self, tenant_id: str) -> "TenantGraph":
        """Client whose every operation is confined to ``tenant_id``."""
        if not isinstance(tenant_id, str) or not tenant_id:
            raise ValidationError("for_tenant: tenant id must be a non-empty string")
        return self._scoped(self.runtime, self.context.for_tenant(tenant_id))

    async def transaction(
        self,
        operations: list[Operation],
        isolation_level: Union[IsolationLevel, str, None] = None,
    ) -> list[Any]:
        """Run operations in order, all-or-nothing; returns their results in order."""
        return await self.runtime.transactions.batch(list(operations), isolation_level)

    async def interactive_transaction(
        self,
        callback: Callable[["TransactionClient"], Awaitable[Any]],
        timeout: Optional[float] = None,
        max_wait: Optional[float] = None,
        isolation_level: Union[IsolationLevel, str, None] = None,
    ) -> Any:
        """
        Run ``callback`` in one transaction.

        The callback receives a TransactionClient. Returning commits,
        raising rolls back and re-raises, exceeding ``timeout`` rolls back
        and raises TransactionTimeoutError.
        """
        return await self.runtime.transactions.interactive(
            callback,
            lambda transaction: TransactionClient(self.runtime, self.context, transaction),
            timeout=timeout,
            max_wait=max_wait,
            isolation_level=isolation_level,
        )

    def describe(self) -> dict[str, Any]:
        return self.runtime.registry.describe()

    async def disconnect(self):
        await close_db(self.runtime.engine)


class TransactionClient(EntityAccess):
    """
    Handle given to interactive transaction callbacks.

    Exposes entity delegates and ``for_tenant`` only; transactions cannot
    be nested and the engine cannot be administered from inside one.
    """

    def __init__(self, runtime: Runtime, context: ExecutionContext, transaction: InteractiveTransaction):
        self.runtime = runtime
        self.context = context
        self._transaction = transaction

    def __repr__(self) -> str:
        state = "closed" if self._transaction.closed else "open"
        return f"<TransactionClient {state}>"

    @property
    def tenant_id(self) -> Optional[str]:
        return self.context.tenant_id

    def _submit(self, operation: Operation) -> Awaitable[Any]:
        return self._transaction.submit(operation)

    def for_tenant(self, tenant_id: str) -> "TransactionClient":
        if not isinstance(tenant_id, str) or not tenant_id:
            raise ValidationError("for_tenant: tenant id must be a non-empty string")
        return TransactionClient(self.runtime, self.context.for_tenant(tenant_id), self._transaction)
