"""
Translation of store exceptions into engine errors.

Handles:
- Integrity violations (unique, foreign key, not null) from SQLite and PostgreSQL
- Unreachable stores (OperationalError, InterfaceError, OSError)
- Pool checkout timeouts

Anything else becomes an ExecutionError and is logged with its traceback.
Nothing is retried and nothing is downgraded to a default value.

Usage:
    with store_errors(registry, "Student"):
        await conn.execute(stmt)
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from sqlalchemy.exc import (
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from ..core.errors import (
    ConstraintError,
    ExecutionError,
    ForeignKeyConstraintError,
    StoreConnectionError,
    TenantGraphError,
    TransactionTimeoutError,
    UniqueConstraintError,
    ValidationError,
)
from ..core.registry import SchemaRegistry

logger = logging.getLogger(__name__)

# SQLite reports "UNIQUE constraint failed: students.email, students.tenant_id"
SQLITE_UNIQUE = re.compile(r"UNIQUE constraint failed: (?P<columns>[\w.]+(?:, [\w.]+)*)")
SQLITE_NOT_NULL = re.compile(r"NOT NULL constraint failed: (?P<table>\w+)\.(?P<column>\w+)")
SQLITE_FOREIGN_KEY = "FOREIGN KEY constraint failed"

PG_UNIQUE_VIOLATION = "23505"
PG_FOREIGN_KEY_VIOLATION = "23503"
PG_NOT_NULL_VIOLATION = "23502"


def _pg_details(orig: Any) -> tuple[Optional[str], Optional[str], Optional[str], Optional[str]]:
    """(sqlstate, constraint, table, column) of a PostgreSQL driver error."""
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    # asyncpg errors arrive wrapped by the adapter; the original is the cause
    source = getattr(orig, "__cause__", None) or orig
    sqlstate = sqlstate or getattr(source, "sqlstate", None)
    diag = getattr(source, "diag", None)
    if diag is not None:
        return sqlstate, diag.constraint_name, diag.table_name, diag.column_name
    return (
        sqlstate,
        getattr(source, "constraint_name", None),
        getattr(source, "table_name", None),
        getattr(source, "column_name", None),
    )


def _integrity_error(exc: IntegrityError, registry: SchemaRegistry, entity: Optional[str]) -> TenantGraphError:
    orig = exc.orig
    message = str(orig)

    match = SQLITE_UNIQUE.search(message)
    if match:
        columns = [part.strip() for part in match.group("columns").split(",")]
        table = columns[0].split(".")[0]
        fields = [column.split(".", 1)[-1] for column in columns]
        return UniqueConstraintError(registry.entity_for_table(table) or entity, fields)

    if SQLITE_FOREIGN_KEY in message:
        return ForeignKeyConstraintError(entity)

    match = SQLITE_NOT_NULL.search(message)
    if match:
        owner = registry.entity_for_table(match.group("table")) or entity
        return ValidationError(f"{owner}.{match.group('column')}: null value violates a not-null constraint")

    sqlstate, constraint, table, column = _pg_details(orig)
    known = registry.constraint(constraint) if constraint else None
    owner = known[0] if known else (registry.entity_for_table(table) if table else None) or entity
    fields = list(known[1]) if known else []

    if sqlstate == PG_UNIQUE_VIOLATION:
        return UniqueConstraintError(owner, fields, constraint)
    if sqlstate == PG_FOREIGN_KEY_VIOLATION:
        return ForeignKeyConstraintError(owner, fields, constraint)
    if sqlstate == PG_NOT_NULL_VIOLATION:
        return ValidationError(f"{owner}.{column}: null value violates a not-null constraint")

    return ConstraintError(f"Constraint violated: {message}", entity=owner, constraint=constraint)


def translate_error(exc: BaseException, registry: SchemaRegistry, entity: Optional[str] = None) -> TenantGraphError:
    """Map a store exception to the engine error that describes it."""
    if isinstance(exc, IntegrityError):
        return _integrity_error(exc, registry, entity)
    if isinstance(exc, PoolTimeoutError):
        return TransactionTimeoutError("max_wait")
    if isinstance(exc, (OperationalError, InterfaceError)):
        return StoreConnectionError(f"Store unavailable: {exc.orig}")
    if isinstance(exc, OSError):
        return StoreConnectionError(f"Store unavailable: {exc}")
    return ExecutionError(str(getattr(exc, "orig", None) or exc), entity)


@contextmanager
def store_errors(registry: SchemaRegistry, entity: Optional[str] = None) -> Iterator[None]:
    """Re-raise store exceptions raised inside the block as engine errors."""
    try:
        yield
    except (TenantGraphError, TimeoutError):
        raise
    except (SQLAlchemyError, OSError) as e:
        error = translate_error(e, registry, entity)
        if isinstance(error, ExecutionError):
            logger.error(f"Store failure{f' on {entity}' if entity else ''}: {e}", exc_info=True)
        else:
            logger.debug(f"Translated {type(e).__name__} to {type(error).__name__}")
        raise error from e
