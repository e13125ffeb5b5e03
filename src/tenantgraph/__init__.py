"""
tenantgraph - tenant-scoped relational query and mutation engine.

Turns Prisma-style filter, selection and aggregation descriptions into
validated operations against a compiled schema, runs them on an
SQLAlchemy async engine and shapes the rows into the requested output.

Usage:
    from tenantgraph import TenantGraph, compile_schema, create_engine
    from tenantgraph.school import SCHOOL_SCHEMA

    registry = compile_schema(SCHOOL_SCHEMA)
    client = TenantGraph(registry, create_engine())

    school = client.for_tenant(tenant_id)
    pending = await school.fee.count(where={"status": "PENDING"})
"""

from __future__ import annotations

from .api import create_tenantgraph_router
from .client import EntityDelegate, TenantGraph, TransactionClient
from .config import Settings, get_settings
from .core import (
    And,
    BatchPayload,
    CompilationError,
    CompilationResult,
    ConstraintError,
    CrossTenantError,
    EntityDef,
    ExecutionError,
    F,
    FieldDef,
    FieldPredicate,
    ForeignKeyConstraintError,
    IsolationLevel,
    Not,
    NotFoundError,
    Or,
    RelationDef,
    RelationPredicate,
    SchemaCompiler,
    SchemaConfigError,
    SchemaDef,
    SchemaRegistry,
    StoreConnectionError,
    TenantGraphError,
    TransactionClosedError,
    TransactionTimeoutError,
    UniqueConstraintError,
    UniqueDef,
    UnknownFieldError,
    ValidationError,
    compile_schema,
)
from .runtime import Operation
from .store import close_db, create_engine, drop_db, init_db

__version__ = "0.1.0"

__all__ = [
    # Client
    "TenantGraph",
    "TransactionClient",
    "EntityDelegate",
    "Operation",
    # API
    "create_tenantgraph_router",
    # Config / store
    "Settings",
    "get_settings",
    "create_engine",
    "init_db",
    "drop_db",
    "close_db",
    # Schema
    "FieldDef",
    "RelationDef",
    "UniqueDef",
    "EntityDef",
    "SchemaDef",
    "SchemaCompiler",
    "CompilationResult",
    "CompilationError",
    "SchemaRegistry",
    "compile_schema",
    # Filters
    "F",
    "FieldPredicate",
    "RelationPredicate",
    "And",
    "Or",
    "Not",
    # Results
    "BatchPayload",
    "IsolationLevel",
    # Errors
    "TenantGraphError",
    "ValidationError",
    "UnknownFieldError",
    "SchemaConfigError",
    "ConstraintError",
    "UniqueConstraintError",
    "ForeignKeyConstraintError",
    "CrossTenantError",
    "NotFoundError",
    "TransactionTimeoutError",
    "TransactionClosedError",
    "StoreConnectionError",
    "ExecutionError",
]
