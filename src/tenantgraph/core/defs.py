"""
Core dataclass definitions for the tenantgraph schema model.

These describe entities, their scalar fields, relations and uniqueness
constraints. A ``SchemaDef`` is produced ahead of time by the schema
collaborator and compiled once into a ``SchemaRegistry``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional


FieldType = Literal["string", "text", "int", "float", "bool", "datetime", "date", "json", "enum"]

NUMERIC_TYPES = frozenset({"int", "float"})


@dataclass(frozen=True)
class FieldDef:
    """Definition of a scalar field."""
    name: str
    type: FieldType
    nullable: bool = False
    unique: bool = False
    is_list: bool = False  # multi-valued scalar (list of `type`)
    default: Any = None
    generated: Optional[Literal["uuid", "now"]] = None  # value produced by the engine on create
    updated_at: bool = False  # refreshed on every update
    enum_values: tuple[str, ...] = ()

    @property
    def has_default(self) -> bool:
        return self.default is not None or self.generated is not None or self.updated_at

    @property
    def required(self) -> bool:
        """True when a create payload must supply the field."""
        return not self.nullable and not self.has_default

    @property
    def is_numeric(self) -> bool:
        return self.type in NUMERIC_TYPES and not self.is_list


@dataclass(frozen=True)
class RelationDef:
    """
    Definition of a relation between entities.

    The owning side declares ``field`` (the local foreign key) and
    ``references`` (the target column). The other side names the owning
    relation on the target through ``inverse``.
    """
    name: str
    target: str
    cardinality: Literal["one", "many"]
    field: Optional[str] = None
    references: str = "id"
    inverse: Optional[str] = None
    on_delete: Literal["restrict", "cascade", "set_null"] = "restrict"

    @property
    def is_owning(self) -> bool:
        return self.field is not None


@dataclass(frozen=True)
class UniqueDef:
    """Compound unique constraint."""
    fields: tuple[str, ...]
    name: Optional[str] = None

    @property
    def key_name(self) -> str:
        """Name of the compound key in unique filters (``staff_code_tenant_id``)."""
        return self.name or "_".join(self.fields)


@dataclass(frozen=True)
class EntityDef:
    """Complete definition of an entity."""
    name: str
    table: str
    fields: dict[str, FieldDef]
    relations: dict[str, RelationDef] = field(default_factory=dict)
    uniques: tuple[UniqueDef, ...] = ()
    key: str = "id"
    tenant_field: Optional[str] = "tenant_id"

    @classmethod
    def build(
        cls,
        name: str,
        table: str,
        fields: list[FieldDef],
        relations: list[RelationDef] = (),
        uniques: list[tuple[str, ...]] = (),
        key: str = "id",
        tenant_field: Optional[str] = "tenant_id",
    ) -> "EntityDef":
        """Build an entity from ordered field/relation lists."""
        return cls(
            name=name,
            table=table,
            fields={f.name: f for f in fields},
            relations={r.name: r for r in relations},
            uniques=tuple(UniqueDef(tuple(u)) for u in uniques),
            key=key,
            tenant_field=tenant_field,
        )


@dataclass(frozen=True)
class SchemaDef:
    """Complete schema definition."""
    version: int
    tenant_entity: str
    entities: dict[str, EntityDef]
