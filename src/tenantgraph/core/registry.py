"""
Schema registry - the read-only view of a compiled schema.

Built once by ``compile_schema`` and shared by every compiler and executor.
Besides answering static existence checks it owns the SQLAlchemy ``MetaData``
the engine emits statements against.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

from .defs import EntityDef, FieldDef, SchemaDef
from .errors import UnknownFieldError, ValidationError


JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")

COLUMN_TYPES = {
    "string": String(255),
    "text": Text(),
    "int": Integer(),
    "float": Float(),
    "bool": Boolean(),
    "datetime": DateTime(timezone=True),
    "date": Date(),
    "json": JSON_TYPE,
    "enum": String(32),
}

ON_DELETE = {"restrict": "RESTRICT", "cascade": "CASCADE", "set_null": "SET NULL"}


@dataclass(frozen=True)
class RelationIR:
    """Relation with resolved join keys (``entity.local_key = target.remote_key``)."""
    name: str
    entity: str
    target: str
    cardinality: Literal["one", "many"]
    local_key: str
    remote_key: str
    is_owning: bool
    nullable: bool = True
    on_delete: str = "restrict"
    inverse: Optional[str] = None


class SchemaRegistry:
    """
    Immutable registry of entities, fields, relations and tables.

    Usage:
        registry = compile_schema(schema)
        registry.field("Student", "first_name")   # FieldDef
        registry.relation("Class", "teacher")     # RelationIR
        registry.table("Student")                 # sqlalchemy.Table
    """

    def __init__(self, schema: SchemaDef, relations: dict[str, dict[str, RelationIR]]):
        self.schema = schema
        self.tenant_entity = schema.tenant_entity
        self._relations = relations
        self._constraints: dict[str, tuple[str, tuple[str, ...]]] = {}
        self._table_entities: dict[str, str] = {}
        self.metadata = MetaData()
        self._tables: dict[str, Table] = {
            name: self._build_table(entity) for name, entity in schema.entities.items()
        }

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def entity_names(self) -> list[str]:
        return list(self.schema.entities)

    def has_entity(self, name: str) -> bool:
        return name in self.schema.entities

    def entity(self, name: str) -> EntityDef:
        entity = self.schema.entities.get(name)
        if entity is None:
            raise ValidationError(f"Unknown entity '{name}'")
        return entity

    def has_field(self, entity: str, name: str) -> bool:
        return name in self.entity(entity).fields

    def has_relation(self, entity: str, name: str) -> bool:
        return name in self._relations.get(entity, {})

    def field(self, entity: str, name: str, path: Optional[str] = None) -> FieldDef:
        field_def = self.entity(entity).fields.get(name)
        if field_def is None:
            raise UnknownFieldError(entity, name, path)
        return field_def

    def relation(self, entity: str, name: str, path: Optional[str] = None) -> RelationIR:
        self.entity(entity)
        rel = self._relations.get(entity, {}).get(name)
        if rel is None:
            raise UnknownFieldError(entity, name, path)
        return rel

    def relations(self, entity: str) -> dict[str, RelationIR]:
        return dict(self._relations.get(entity, {}))

    def owning_relations(self, entity: str) -> list[RelationIR]:
        return [rel for rel in self._relations.get(entity, {}).values() if rel.is_owning]

    def table(self, entity: str) -> Table:
        self.entity(entity)
        return self._tables[entity]

    def entity_for_table(self, table_name: str) -> Optional[str]:
        return self._table_entities.get(table_name)

    def is_tenant_scoped(self, entity: str) -> bool:
        return self.entity(entity).tenant_field is not None

    def unique_keys(self, entity: str) -> dict[str, tuple[str, ...]]:
        """
        Every way to identify a single row.

        Returns a dict mapping the key name used in unique filters to the
        fields it covers: the primary key, each unique field, and each
        compound unique under its ``field1_field2`` name.
        """
        entity_def = self.entity(entity)
        keys: dict[str, tuple[str, ...]] = {entity_def.key: (entity_def.key,)}
        for name, field_def in entity_def.fields.items():
            if field_def.unique:
                keys[name] = (name,)
        for unique in entity_def.uniques:
            keys[unique.key_name] = unique.fields
        return keys

    def constraint(self, name: str) -> Optional[tuple[str, tuple[str, ...]]]:
        """Look up (entity, fields) for a named unique or foreign-key constraint."""
        return self._constraints.get(name)

    # ------------------------------------------------------------------
    # Table construction
    # ------------------------------------------------------------------

    def _build_table(self, entity: EntityDef) -> Table:
        fks = {rel.local_key: rel for rel in self.owning_relations(entity.name)}
        columns: list[Any] = []

        for name, field_def in entity.fields.items():
            column_type = JSON_TYPE if field_def.is_list else COLUMN_TYPES[field_def.type]
            args: list[Any] = []
            rel = fks.get(name)
            if rel is not None:
                target = self.schema.entities[rel.target]
                fk_name = f"fk_{entity.table}_{name}"
                args.append(
                    ForeignKey(
                        f"{target.table}.{rel.remote_key}",
                        name=fk_name,
                        ondelete=ON_DELETE[rel.on_delete],
                    )
                )
                self._constraints[fk_name] = (entity.name, (name,))
            columns.append(
                Column(
                    name,
                    column_type,
                    *args,
                    primary_key=name == entity.key,
                    nullable=field_def.nullable,
                )
            )

        constraints = []
        unique_sets = [(name,) for name, f in entity.fields.items() if f.unique]
        unique_sets += [u.fields for u in entity.uniques]
        for fields in unique_sets:
            uq_name = f"uq_{entity.table}_{'_'.join(fields)}"
            constraints.append(UniqueConstraint(*fields, name=uq_name))
            self._constraints[uq_name] = (entity.name, tuple(fields))

        self._table_entities[entity.table] = entity.name
        return Table(entity.table, self.metadata, *columns, *constraints)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def describe(self) -> dict[str, Any]:
        """JSON-friendly description of the compiled schema."""
        entities: dict[str, Any] = {}
        for name, entity in self.schema.entities.items():
            entities[name] = {
                "table": entity.table,
                "key": entity.key,
                "tenantField": entity.tenant_field,
                "fields": {
                    f.name: {
                        "type": f.type,
                        "nullable": f.nullable,
                        "unique": f.unique,
                        "list": f.is_list,
                        "required": f.required,
                        **({"enum": list(f.enum_values)} if f.enum_values else {}),
                    }
                    for f in entity.fields.values()
                },
                "relations": {
                    rel.name: {
                        "target": rel.target,
                        "cardinality": rel.cardinality,
                        "owning": rel.is_owning,
                        "localKey": rel.local_key,
                        "remoteKey": rel.remote_key,
                    }
                    for rel in self._relations.get(name, {}).values()
                },
                "uniqueKeys": {k: list(v) for k, v in self.unique_keys(name).items()},
            }
        return {
            "version": self.schema.version,
            "tenantEntity": self.tenant_entity,
            "entities": entities,
        }
