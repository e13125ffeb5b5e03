"""
Custom exceptions for the tenantgraph engine.

Every error carries a stable ``kind`` (what class of problem it is) and a
``code`` (a short identifier callers can switch on), so callers can react
programmatically without parsing messages.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence


class TenantGraphError(Exception):
    """Base exception for all engine errors."""

    kind = "engine"
    code = "P2000"
    retryable = False

    def to_dict(self) -> dict[str, Any]:
        """Serializable description used by the HTTP surface."""
        return {"kind": self.kind, "code": self.code, "message": str(self)}


class ValidationError(TenantGraphError):
    """Raised when a request is rejected before reaching the store."""

    kind = "validation"
    code = "P2009"

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = errors
        super().__init__("; ".join(errors))

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["errors"] = list(self.errors)
        return data


class UnknownFieldError(ValidationError):
    """Raised when a field or relation is not declared on an entity."""

    def __init__(self, entity: str, field: str, path: Optional[str] = None):
        self.entity = entity
        self.field = field
        self.path = path or entity
        super().__init__(f"{self.path}: unknown field '{field}' on {entity}")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(entity=self.entity, field=self.field)
        return data


class SchemaConfigError(TenantGraphError):
    """Raised when a schema definition fails to compile."""

    kind = "schema"
    code = "P1012"

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Schema compilation failed: {errors}")


class ConstraintError(TenantGraphError):
    """Raised when a write breaks an integrity rule."""

    kind = "constraint"

    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        fields: Sequence[str] = (),
        constraint: Optional[str] = None,
    ):
        self.entity = entity
        self.fields = list(fields)
        self.constraint = constraint
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(entity=self.entity, fields=self.fields, constraint=self.constraint)
        return data


class UniqueConstraintError(ConstraintError):
    code = "P2002"

    def __init__(self, entity: Optional[str], fields: Sequence[str] = (), constraint: Optional[str] = None):
        target = ", ".join(fields) if fields else (constraint or "unknown")
        super().__init__(
            f"Unique constraint failed on {entity or 'entity'} ({target})",
            entity=entity,
            fields=fields,
            constraint=constraint,
        )


class ForeignKeyConstraintError(ConstraintError):
    code = "P2003"

    def __init__(self, entity: Optional[str], fields: Sequence[str] = (), constraint: Optional[str] = None):
        target = ", ".join(fields) if fields else (constraint or "unknown")
        super().__init__(
            f"Foreign key constraint failed on {entity or 'entity'} ({target})",
            entity=entity,
            fields=fields,
            constraint=constraint,
        )


class CrossTenantError(ConstraintError):
    """Raised when a write would relate rows that belong to different tenants."""

    code = "P2014"

    def __init__(
        self,
        entity: str,
        field: str,
        relation: Optional[str] = None,
        expected_tenant: Any = None,
        actual_tenant: Any = None,
    ):
        self.relation = relation
        self.expected_tenant = expected_tenant
        self.actual_tenant = actual_tenant
        target = f"relation '{relation}'" if relation else f"field '{field}'"
        super().__init__(
            f"Cross-tenant reference rejected on {entity}.{field} ({target}): "
            f"expected tenant {expected_tenant!r}, got {actual_tenant!r}",
            entity=entity,
            fields=[field],
            constraint="tenant",
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["relation"] = self.relation
        return data


class NotFoundError(TenantGraphError):
    """Raised by singular operations when no row matches."""

    kind = "not_found"
    code = "P2025"

    def __init__(self, entity: str, where: Any = None, operation: Optional[str] = None):
        self.entity = entity
        self.where = where
        self.operation = operation
        op = f" ({operation})" if operation else ""
        super().__init__(f"No {entity} record found{op} for where: {where!r}")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["entity"] = self.entity
        return data


class TransactionTimeoutError(TenantGraphError):
    """Raised when a transaction exceeds its timeout or connection wait bound."""

    kind = "timeout"
    code = "P2028"
    retryable = True

    def __init__(self, reason: str, limit: Optional[float] = None):
        self.reason = reason
        self.limit = limit
        if reason == "max_wait":
            message = f"Timed out after {limit}s waiting for a store connection"
        else:
            message = f"Transaction exceeded its timeout of {limit}s and was rolled back"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class TransactionClosedError(TenantGraphError):
    """Raised when an interactive transaction handle is used after it ended."""

    kind = "transaction"
    code = "P2028"

    def __init__(self, message: str = "Transaction already closed"):
        super().__init__(message)


class StoreConnectionError(TenantGraphError):
    """Raised when the backing store cannot be reached."""

    kind = "connection"
    code = "P1001"
    retryable = True


class ExecutionError(TenantGraphError):
    """Raised when the store fails in a way that has no more specific kind."""

    kind = "store"
    code = "P2010"

    def __init__(self, message: str, entity: Optional[str] = None):
        self.entity = entity
        super().__init__(f"Execution failed{f' on {entity}' if entity else ''}: {message}")
