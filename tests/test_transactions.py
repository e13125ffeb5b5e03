"""
Tests for batched and interactive transactions.
"""

from __future__ import annotations

import asyncio

import pytest

from tenantgraph import (
    TenantGraph,
    TransactionClient,
    TransactionClosedError,
    TransactionTimeoutError,
    UniqueConstraintError,
    ValidationError,
    create_engine,
)


def _new_student(scope, first_name="Fay"):
    return scope.student.create(data={"first_name": first_name, "last_name": "Ito"})


class TestBatchTransaction:
    async def test_commit_returns_results_in_order(self, client, school):
        student, klass = await client.transaction([
            _new_student(school.alpha),
            school.alpha.class_.update(where={"id": school.classes.art["id"]}, data={"capacity": 12}),
        ])
        assert student["first_name"] == "Fay"
        assert klass["capacity"] == 12
        assert await school.alpha.student.count() == 5

    async def test_failure_rolls_back_every_step(self, client, school):
        with pytest.raises(UniqueConstraintError):
            await client.transaction([
                _new_student(school.alpha),
                client.tenant.create(data={"name": "Copy", "slug": "alpha", "email": "copy@alpha.test"}),
            ])
        assert await school.alpha.student.count() == 4

    async def test_mixed_scopes(self, client, school):
        alpha_count, beta_count = await client.transaction([
            school.alpha.student.count(),
            school.beta.student.count(),
        ])
        assert (alpha_count, beta_count) == (4, 1)

    async def test_rejects_awaited_results(self, client, school):
        student = await _new_student(school.alpha)
        with pytest.raises(ValidationError, match="transaction\\[0\\]: expected an unawaited operation, got dict"):
            await client.transaction([student])

    async def test_isolation_levels(self, client, school):
        results = await client.transaction([school.alpha.fee.count()], isolation_level="SERIALIZABLE")
        assert results == [4]
        with pytest.raises(ValidationError, match="not supported by the sqlite store"):
            await client.transaction([school.alpha.fee.count()], isolation_level="REPEATABLE READ")
        with pytest.raises(ValidationError, match="Unknown isolation level 'CHAOS'"):
            await client.transaction([school.alpha.fee.count()], isolation_level="CHAOS")


class TestInteractiveTransaction:
    async def test_commit(self, school):
        grade5 = school.classes.grade5["id"]

        async def enroll(tx):
            assert isinstance(tx, TransactionClient)
            student = await _new_student(tx)
            await tx.class_student.create(data={"class_id": grade5, "student_id": student["id"]})
            # reads inside the transaction see its own writes
            assert await tx.student.count() == 5
            return student

        student = await school.alpha.interactive_transaction(enroll)
        assert student["tenant_id"] == school.alpha_id
        assert await school.alpha.class_student.count(where={"class_id": grade5}) == 4

    async def test_exception_rolls_back(self, school):
        async def failing(tx):
            await _new_student(tx)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await school.alpha.interactive_transaction(failing)
        assert await school.alpha.student.count() == 4

    async def test_engine_error_rolls_back(self, client, school):
        async def duplicate(tx):
            await _new_student(tx.for_tenant(school.alpha_id))
            await tx.tenant.create(data={"name": "Copy", "slug": "alpha", "email": "copy@alpha.test"})

        with pytest.raises(UniqueConstraintError):
            await client.interactive_transaction(duplicate)
        assert await school.alpha.student.count() == 4

    async def test_timeout_rolls_back(self, school):
        async def slow(tx):
            await _new_student(tx)
            await asyncio.sleep(5)

        with pytest.raises(TransactionTimeoutError) as exc_info:
            await school.alpha.interactive_transaction(slow, timeout=0.2)
        assert exc_info.value.reason == "timeout"
        assert exc_info.value.retryable
        assert await school.alpha.student.count() == 4

    async def test_handle_is_closed_afterwards(self, school):
        handles = []

        async def keep(tx):
            handles.append(tx)
            return await tx.student.count()

        assert await school.alpha.interactive_transaction(keep) == 4
        tx, = handles
        assert repr(tx) == "<TransactionClient closed>"
        with pytest.raises(TransactionClosedError):
            await tx.student.count()

    async def test_no_nesting(self, school):
        async def nested(tx):
            return hasattr(tx, "transaction"), hasattr(tx, "interactive_transaction")

        assert await school.alpha.interactive_transaction(nested) == (False, False)

    async def test_unsupported_isolation_level(self, school):
        async def noop(tx):
            return None

        with pytest.raises(ValidationError, match="not supported by the sqlite store"):
            await school.alpha.interactive_transaction(noop, isolation_level="REPEATABLE READ")
        assert await school.alpha.interactive_transaction(noop, isolation_level="READ UNCOMMITTED") is None

    async def test_waiting_for_a_connection_times_out(self, registry, settings, engine):
        single = settings.model_copy(update={"pool_size": 1, "max_overflow": 0})
        narrow_engine = create_engine(single)
        client = TenantGraph(registry, narrow_engine, single)

        async def count(tx):
            return await tx.student.count()

        try:
            async with narrow_engine.connect():
                with pytest.raises(TransactionTimeoutError) as exc_info:
                    await client.interactive_transaction(count, max_wait=0.3)
            assert exc_info.value.reason == "max_wait"
            assert exc_info.value.limit == 0.3
            assert exc_info.value.retryable
            # the pool is usable again once the connection is returned
            assert await client.interactive_transaction(count, max_wait=0.3) == 0
        finally:
            await narrow_engine.dispose()
