"""
Result assembler - shapes raw result trees into caller output.

Handles:
- Declared scalars in plan order; hidden join keys and omitted fields absent
- ``one`` relations as an object or None, ``many`` relations as ordered lists
- ``_count`` objects

The assembler never mutates its input and builds fresh containers on every
call, so assembling the same raw tree twice yields equal, independent output.
"""

from __future__ import annotations

import copy
from typing import Any, Optional

from ..core.selection import SelectionPlan
from .executor import RawNode


class ResultAssembler:
    """
    Assembles output records from RawNodes.

    Usage:
        assembler = ResultAssembler()
        records = assembler.assemble_many(query.plan, nodes)
    """

    def assemble(self, plan: SelectionPlan, node: Optional[RawNode]) -> Optional[dict[str, Any]]:
        if node is None:
            return None

        record: dict[str, Any] = {}
        for name in plan.scalars:
            value = node.row.get(name)
            if isinstance(value, (list, dict)):
                value = copy.deepcopy(value)
            record[name] = value

        for name, relation_plan in plan.relations.items():
            related = node.relations.get(name)
            if relation_plan.relation.cardinality == "many":
                record[name] = self.assemble_many(relation_plan.plan, related or [])
            else:
                record[name] = self.assemble(relation_plan.plan, related)

        if plan.counts:
            record["_count"] = {name: node.counts.get(name, 0) for name in plan.counts}

        return record

    def assemble_many(self, plan: SelectionPlan, nodes: list[RawNode]) -> list[dict[str, Any]]:
        return [self.assemble(plan, node) for node in nodes]
