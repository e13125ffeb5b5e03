"""
Runtime module - operation execution pipeline.
"""

from __future__ import annotations

from .assembler import ResultAssembler
from .context import ExecutionContext
from .executor import QueryExecutor, RawNode
from .mutation_executor import MutationExecutor, MutationQuery, WriteData
from .planner import QueryPlanner, ReadQuery
from .transaction_executor import InteractiveTransaction, Operation, TransactionExecutor

__all__ = [
    "ExecutionContext",
    "QueryPlanner",
    "ReadQuery",
    "QueryExecutor",
    "RawNode",
    "ResultAssembler",
    "MutationExecutor",
    "MutationQuery",
    "WriteData",
    "Operation",
    "InteractiveTransaction",
    "TransactionExecutor",
]
