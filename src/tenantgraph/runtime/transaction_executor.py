"""
Transaction executor for tenantgraph.

Handles:
- Single operations, each in its own store transaction
- Batched transactions: a list of operations run in order on one connection
- Interactive transactions: a callback receiving a transaction-bound client

Batched example:
    student, fee = await client.transaction([
        client.student.create(data={...}),
        client.fee.create(data={...}),
    ])

Interactive example:
    async def enroll(tx):
        student = await tx.student.create(data={...})
        await tx.class_student.create(data={"class_id": class_id, "student_id": student["id"]})
        return student

    student = await client.interactive_transaction(enroll, timeout=5)

Either form commits when every step succeeds and rolls everything back
otherwise. The engine does no locking of its own; consistency across
concurrent transactions is up to the store's isolation level.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ..config import Settings
from ..core.errors import TransactionClosedError, TransactionTimeoutError, ValidationError
from ..core.query_types import IsolationLevel
from ..core.registry import SchemaRegistry
from ..store.errors import store_errors

logger = logging.getLogger(__name__)


Runner = Callable[[AsyncConnection], Awaitable[Any]]


class Operation:
    """
    A validated, deferred engine call.

    Every argument has been checked when the operation exists; awaiting it
    submits it for execution. Operations can also be handed to
    ``client.transaction([...])`` unawaited.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        entity: str,
        name: str,
        runner: Runner,
        submit: Callable[["Operation"], Awaitable[Any]],
    ):
        self.registry = registry
        self.entity = entity
        self.name = name
        self.runner = runner
        self.submit = submit

    def __repr__(self) -> str:
        return f"Operation({self.entity}.{self.name})"

    def __await__(self):
        return self.submit(self).__await__()

    async def run(self, conn: AsyncConnection) -> Any:
        """Run on an open connection, translating store errors."""
        logger.debug(f"Running {self.entity}.{self.name}")
        with store_errors(self.registry, self.entity):
            return await self.runner(conn)


class InteractiveTransaction:
    """
    State of one interactive transaction.

    Operations are serialized on the transaction's single connection. Once
    the transaction has ended every further operation raises
    TransactionClosedError.
    """

    def __init__(self, conn: AsyncConnection):
        self.conn = conn
        self.closed = False
        self._lock = asyncio.Lock()

    async def submit(self, operation: Operation) -> Any:
        if self.closed:
            raise TransactionClosedError()
        async with self._lock:
            if self.closed:
                raise TransactionClosedError()
            return await operation.run(self.conn)

    def close(self):
        self.closed = True


class TransactionExecutor:
    """
    Runs operations inside store transactions.

    Usage:
        transactions = TransactionExecutor(engine, registry, settings)
        result = await transactions.run(operation)
        results = await transactions.batch([op1, op2], isolation_level="SERIALIZABLE")
    """

    def __init__(self, engine: AsyncEngine, registry: SchemaRegistry, settings: Settings):
        self.engine = engine
        self.registry = registry
        self.settings = settings

    async def run(self, operation: Operation) -> Any:
        """Run one operation in its own transaction."""
        with store_errors(self.registry, operation.entity):
            async with self.engine.begin() as conn:
                return await operation.run(conn)

    async def batch(
        self,
        operations: list[Operation],
        isolation_level: Union[IsolationLevel, str, None] = None,
    ) -> list[Any]:
        """Run operations in order in one transaction; any failure rolls back all of them."""
        for i, operation in enumerate(operations):
            if not isinstance(operation, Operation):
                raise ValidationError(
                    f"transaction[{i}]: expected an unawaited operation, got {type(operation).__name__}"
                )
        level = self._isolation_level(isolation_level)

        with store_errors(self.registry):
            async with self.engine.connect() as conn:
                await self._set_isolation(conn, level)
                await conn.begin()
                results = []
                try:
                    for operation in operations:
                        results.append(await operation.run(conn))
                except Exception as e:
                    logger.warning(f"Transaction rolled back after {len(results)} of {len(operations)} step(s): {e}")
                    await self._rollback(conn)
                    raise
                await conn.commit()

        logger.info(f"Committed transaction with {len(operations)} step(s)")
        return results

    async def interactive(
        self,
        callback: Callable[[Any], Awaitable[Any]],
        make_client: Callable[[InteractiveTransaction], Any],
        timeout: Optional[float] = None,
        max_wait: Optional[float] = None,
        isolation_level: Union[IsolationLevel, str, None] = None,
    ) -> Any:
        """
        Run ``callback`` inside one transaction.

        Args:
            callback: Async function receiving the transaction client
            make_client: Builds the client handed to the callback
            timeout: Seconds the callback may run before the transaction
                is rolled back
            max_wait: Seconds to wait for a store connection
            isolation_level: Isolation level of the transaction

        Returns:
            Whatever the callback returns, after commit
        """
        timeout = timeout if timeout is not None else self.settings.transaction_timeout
        max_wait = max_wait if max_wait is not None else self.settings.transaction_max_wait
        level = self._isolation_level(isolation_level)

        with store_errors(self.registry):
            try:
                conn = await asyncio.wait_for(self.engine.connect().start(), max_wait)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out after {max_wait}s waiting for a connection")
                raise TransactionTimeoutError("max_wait", max_wait)

        transaction = InteractiveTransaction(conn)
        try:
            with store_errors(self.registry):
                await self._set_isolation(conn, level)
                await conn.begin()
            try:
                result = await asyncio.wait_for(callback(make_client(transaction)), timeout)
            except asyncio.TimeoutError:
                transaction.close()
                logger.warning(f"Interactive transaction exceeded {timeout}s; rolling back")
                await self._rollback(conn)
                raise TransactionTimeoutError("timeout", timeout)
            except BaseException as e:
                transaction.close()
                logger.warning(f"Interactive transaction rolled back: {e!r}")
                await self._rollback(conn)
                raise
            transaction.close()
            with store_errors(self.registry):
                await conn.commit()
            logger.info("Committed interactive transaction")
            return result
        finally:
            transaction.close()
            await conn.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _isolation_level(self, level: Union[IsolationLevel, str, None]) -> Optional[IsolationLevel]:
        if level is None:
            return self.settings.isolation_level
        try:
            return IsolationLevel(level)
        except ValueError:
            allowed = ", ".join(item.value for item in IsolationLevel)
            raise ValidationError(f"Unknown isolation level {level!r} (use one of: {allowed})")

    async def _set_isolation(self, conn: AsyncConnection, level: Optional[IsolationLevel]):
        if level is None:
            return
        try:
            await conn.execution_options(isolation_level=level.value)
        except ArgumentError as e:
            raise ValidationError(
                f"Isolation level {level.value} is not supported by the {conn.dialect.name} store"
            ) from e

    async def _rollback(self, conn: AsyncConnection):
        if not conn.in_transaction():
            return
        try:
            await conn.rollback()
        except Exception:
            # The connection cannot be trusted after a failed rollback
            logger.warning("Rollback failed; invalidating connection", exc_info=True)
            await conn.invalidate()
