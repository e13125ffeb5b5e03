"""
Schema compiler - validates a SchemaDef and produces the runtime registry.

Usage:
    from tenantgraph.core.compiler import compile_schema
    from tenantgraph.school import SCHOOL_SCHEMA

    registry = compile_schema(SCHOOL_SCHEMA)  # raises SchemaConfigError
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .defs import EntityDef, SchemaDef
from .errors import SchemaConfigError
from .registry import RelationIR, SchemaRegistry

logger = logging.getLogger(__name__)


@dataclass
class CompilationError:
    """Single compilation error."""
    entity: Optional[str]
    field: Optional[str]
    message: str

    def __str__(self) -> str:
        parts = []
        if self.entity:
            parts.append(self.entity)
        if self.field:
            parts.append(self.field)
        location = ".".join(parts) if parts else "global"
        return f"[{location}] {self.message}"


@dataclass
class CompilationResult:
    """Result of compilation."""
    success: bool
    registry: Optional[SchemaRegistry] = None
    errors: list[CompilationError] = field(default_factory=list)

    def error_messages(self) -> list[str]:
        """Get all error messages as strings."""
        return [str(e) for e in self.errors]


class SchemaCompiler:
    """
    Compiles a SchemaDef into a SchemaRegistry.

    Performs validation:
    - The tenant entity exists and is not itself tenant-scoped
    - Every other entity has a non-nullable tenant field owned by a relation
    - All relation targets, foreign-key fields and inverse relations exist
    - Unique constraints reference declared fields
    - Enum fields declare their values
    """

    def __init__(self):
        self.errors: list[CompilationError] = []

    def compile(self, schema: SchemaDef) -> CompilationResult:
        self.errors = []

        self._validate_tenant_entity(schema)
        for entity in schema.entities.values():
            self._validate_fields(entity)
            self._validate_uniques(entity)
        relations = self._resolve_relations(schema)
        for entity in schema.entities.values():
            self._validate_tenant_field(schema, entity)

        if self.errors:
            return CompilationResult(success=False, errors=self.errors)

        registry = SchemaRegistry(schema, relations)
        return CompilationResult(success=True, registry=registry)

    def _add_error(self, message: str, entity: Optional[str] = None, field: Optional[str] = None):
        self.errors.append(CompilationError(entity=entity, field=field, message=message))

    def _validate_tenant_entity(self, schema: SchemaDef):
        tenant = schema.entities.get(schema.tenant_entity)
        if tenant is None:
            self._add_error(f"Tenant entity '{schema.tenant_entity}' not defined")
        elif tenant.tenant_field is not None:
            self._add_error("Tenant entity cannot itself be tenant-scoped", entity=tenant.name)

    def _validate_fields(self, entity: EntityDef):
        if entity.key not in entity.fields:
            self._add_error(f"Primary key '{entity.key}' is not a declared field", entity=entity.name)

        for name, field_def in entity.fields.items():
            if name != field_def.name:
                self._add_error(f"Field registered under '{name}' is named '{field_def.name}'", entity=entity.name)
            if field_def.type == "enum" and not field_def.enum_values:
                self._add_error("Enum field declares no values", entity=entity.name, field=name)
            if field_def.is_list and field_def.type in ("json", "enum"):
                self._add_error(f"List fields of type '{field_def.type}' are not supported", entity=entity.name, field=name)
            if name in entity.relations:
                self._add_error("Name used by both a field and a relation", entity=entity.name, field=name)

    def _validate_uniques(self, entity: EntityDef):
        for unique in entity.uniques:
            if len(unique.fields) < 2:
                self._add_error("Compound unique needs at least two fields", entity=entity.name)
            for name in unique.fields:
                if name not in entity.fields:
                    self._add_error(f"Unique constraint references unknown field '{name}'", entity=entity.name)

    def _resolve_relations(self, schema: SchemaDef) -> dict[str, dict[str, RelationIR]]:
        """Resolve join keys for every relation, owning side first."""
        resolved: dict[str, dict[str, RelationIR]] = {}

        for entity in schema.entities.values():
            resolved[entity.name] = {}
            for name, rel in entity.relations.items():
                target = schema.entities.get(rel.target)
                if target is None:
                    self._add_error(f"Unknown relation target '{rel.target}'", entity=entity.name, field=name)
                    continue

                if rel.is_owning:
                    local = entity.fields.get(rel.field)
                    if local is None:
                        self._add_error(f"Foreign key field '{rel.field}' not declared", entity=entity.name, field=name)
                        continue
                    if rel.references not in target.fields:
                        self._add_error(
                            f"Referenced field '{rel.references}' not declared on {target.name}",
                            entity=entity.name,
                            field=name,
                        )
                        continue
                    if rel.cardinality != "one":
                        self._add_error("Owning relations must have cardinality 'one'", entity=entity.name, field=name)
                        continue
                    resolved[entity.name][name] = RelationIR(
                        name=name,
                        entity=entity.name,
                        target=target.name,
                        cardinality="one",
                        local_key=rel.field,
                        remote_key=rel.references,
                        is_owning=True,
                        nullable=local.nullable,
                        on_delete=rel.on_delete,
                    )
                    continue

                inverse = target.relations.get(rel.inverse) if rel.inverse else None
                if inverse is None or not inverse.is_owning or inverse.target != entity.name:
                    self._add_error(
                        f"Relation needs an owning inverse on {target.name} (got '{rel.inverse}')",
                        entity=entity.name,
                        field=name,
                    )
                    continue
                resolved[entity.name][name] = RelationIR(
                    name=name,
                    entity=entity.name,
                    target=target.name,
                    cardinality=rel.cardinality,
                    local_key=inverse.references,
                    remote_key=inverse.field,
                    is_owning=False,
                    nullable=True,
                    inverse=rel.inverse,
                )

        return resolved

    def _validate_tenant_field(self, schema: SchemaDef, entity: EntityDef):
        if entity.name == schema.tenant_entity:
            return
        if entity.tenant_field is None:
            self._add_error("Entity is missing its tenant field", entity=entity.name)
            return
        tenant_field = entity.fields.get(entity.tenant_field)
        if tenant_field is None:
            self._add_error("Tenant field not declared", entity=entity.name, field=entity.tenant_field)
            return
        if tenant_field.nullable:
            self._add_error("Tenant field must not be nullable", entity=entity.name, field=entity.tenant_field)
        owner = [
            rel for rel in entity.relations.values()
            if rel.is_owning and rel.field == entity.tenant_field and rel.target == schema.tenant_entity
        ]
        if not owner:
            self._add_error(
                f"Tenant field needs an owning relation to {schema.tenant_entity}",
                entity=entity.name,
                field=entity.tenant_field,
            )


def compile_schema(schema: SchemaDef) -> SchemaRegistry:
    """Compile a schema or raise SchemaConfigError with every problem found."""
    result = SchemaCompiler().compile(schema)
    if not result.success:
        raise SchemaConfigError(result.error_messages())
    logger.debug(f"Compiled schema v{schema.version} with {len(schema.entities)} entities")
    return result.registry
