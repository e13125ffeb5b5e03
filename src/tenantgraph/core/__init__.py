"""
Core module - schema model, filters, selections and aggregation.
"""

from __future__ import annotations

from .aggregation import AggregationEngine, Buckets
from .compiler import CompilationError, CompilationResult, SchemaCompiler, compile_schema
from .defs import EntityDef, FieldDef, RelationDef, SchemaDef, UniqueDef
from .errors import (
    ConstraintError,
    CrossTenantError,
    ExecutionError,
    ForeignKeyConstraintError,
    NotFoundError,
    SchemaConfigError,
    StoreConnectionError,
    TenantGraphError,
    TransactionClosedError,
    TransactionTimeoutError,
    UniqueConstraintError,
    UnknownFieldError,
    ValidationError,
)
from .filters import FilterCompiler, UniqueWhere
from .predicates import F, And, FieldPredicate, Not, Or, RelationPredicate, and_, not_, or_
from .query_types import BatchPayload, IsolationLevel, parse_args
from .registry import RelationIR, SchemaRegistry
from .selection import OrderSpec, RelationPlan, SelectionPlan, SelectionPlanner

__all__ = [
    # Definitions
    "FieldDef",
    "RelationDef",
    "UniqueDef",
    "EntityDef",
    "SchemaDef",
    # Compiler / registry
    "SchemaCompiler",
    "CompilationResult",
    "CompilationError",
    "compile_schema",
    "SchemaRegistry",
    "RelationIR",
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
    # Filters
    "FilterCompiler",
    "UniqueWhere",
    "F",
    "FieldPredicate",
    "RelationPredicate",
    "And",
    "Or",
    "Not",
    "and_",
    "or_",
    "not_",
    # Selection / aggregation
    "SelectionPlanner",
    "SelectionPlan",
    "RelationPlan",
    "OrderSpec",
    "AggregationEngine",
    "Buckets",
    # Query types
    "BatchPayload",
    "IsolationLevel",
    "parse_args",
]
