"""
Execution context for operation processing.

Carries the tenant scope every operation of a client runs under.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..core.predicates import FieldPredicate, Predicate
from ..core.registry import SchemaRegistry


@dataclass(frozen=True)
class ExecutionContext:
    """
    Context passed through the operation pipeline.

    Contains:
    - registry: The compiled schema
    - tenant_id: Tenant scope; None means unscoped
    """
    registry: SchemaRegistry
    tenant_id: Optional[str] = None

    @property
    def scoped(self) -> bool:
        return self.tenant_id is not None

    def for_tenant(self, tenant_id: str) -> "ExecutionContext":
        return ExecutionContext(self.registry, tenant_id)

    def tenant_field(self, entity: str) -> Optional[str]:
        """Field holding the tenant id (``id`` on the tenant entity itself)."""
        entity_def = self.registry.entity(entity)
        if entity == self.registry.tenant_entity:
            return entity_def.key
        return entity_def.tenant_field

    def guard(self, entity: str) -> Optional[Predicate]:
        """
        Mandatory tenant filter for ``entity``.

        Guards are appended to caller filters during execution; callers
        cannot see or override them.
        """
        if self.tenant_id is None:
            return None
        field = self.tenant_field(entity)
        if field is None:
            return None
        return FieldPredicate(field, "equals", self.tenant_id)
