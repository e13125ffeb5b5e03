"""
Pydantic models for operation arguments.

Every caller-facing operation validates its options with one of these models
before anything else happens. Option names are accepted in snake_case or
camelCase (``order_by`` / ``orderBy``); unknown options are rejected.

Filters, selections and payloads stay loosely typed here (``Any`` / dicts);
their structure is checked against the schema by the filter compiler,
selection planner and mutation composer.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .utils import to_camel_case


ArgsT = TypeVar("ArgsT", bound=BaseModel)


class QueryArgs(BaseModel):
    """Base model: camelCase aliases, snake_case names, no extra keys."""
    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel_case,
        arbitrary_types_allowed=True,
    )


class Projection(QueryArgs):
    select: Optional[dict[str, Any]] = None
    include: Optional[dict[str, Any]] = None
    omit: Optional[dict[str, Any]] = None


# --- Reads ---

class FindUniqueArgs(Projection):
    where: Any


class FindManyArgs(Projection):
    """
    Arguments of find_many / find_first and of relation sub-selections.

    Example:
    {
        "where": {"is_active": true},
        "orderBy": [{"last_name": "asc"}],
        "take": 10,
        "include": {"fees": {"where": {"status": "PENDING"}}}
    }
    """
    where: Any = None
    order_by: Union[dict[str, Any], list[dict[str, Any]], None] = None
    cursor: Optional[dict[str, Any]] = None
    take: Optional[int] = None
    skip: Optional[int] = Field(None, ge=0)
    distinct: Union[str, list[str], None] = None


RelationArgs = FindManyArgs


# --- Writes ---

class CreateArgs(Projection):
    data: dict[str, Any]


class CreateManyArgs(QueryArgs):
    data: Union[list[dict[str, Any]], dict[str, Any]]
    skip_duplicates: bool = False


class UpdateArgs(Projection):
    where: Any
    data: dict[str, Any]


class UpdateManyArgs(QueryArgs):
    where: Any = None
    data: dict[str, Any]


class UpsertArgs(Projection):
    where: Any
    create: dict[str, Any]
    update: dict[str, Any]


class DeleteArgs(Projection):
    where: Any


class DeleteManyArgs(QueryArgs):
    where: Any = None
    limit: Optional[int] = Field(None, ge=0)


# --- Aggregation ---

class AggregateArgs(QueryArgs):
    where: Any = None
    order_by: Union[dict[str, Any], list[dict[str, Any]], None] = None
    cursor: Optional[dict[str, Any]] = None
    take: Optional[int] = None
    skip: Optional[int] = Field(None, ge=0)
    count_: Union[bool, dict[str, Any], None] = Field(None, alias="_count")
    sum_: Optional[dict[str, Any]] = Field(None, alias="_sum")
    avg_: Optional[dict[str, Any]] = Field(None, alias="_avg")
    min_: Optional[dict[str, Any]] = Field(None, alias="_min")
    max_: Optional[dict[str, Any]] = Field(None, alias="_max")


class CountArgs(QueryArgs):
    where: Any = None
    order_by: Union[dict[str, Any], list[dict[str, Any]], None] = None
    cursor: Optional[dict[str, Any]] = None
    take: Optional[int] = None
    skip: Optional[int] = Field(None, ge=0)
    select: Union[bool, dict[str, Any], None] = None


class GroupByArgs(AggregateArgs):
    by: Union[str, list[str], None] = None
    having: Optional[dict[str, Any]] = None


# --- Results ---

class BatchPayload(BaseModel):
    """Result of create_many / update_many / delete_many."""
    count: int


# --- Transactions ---

class IsolationLevel(str, Enum):
    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


class TransactionOperation(QueryArgs):
    """One operation of a batched transaction submitted over HTTP."""
    entity: str
    operation: str
    args: dict[str, Any] = Field(default_factory=dict)


class TransactionRequest(QueryArgs):
    operations: list[TransactionOperation]
    isolation_level: Optional[IsolationLevel] = None


def parse_args(model: type[ArgsT], data: Any, path: str = "args") -> ArgsT:
    """
    Validate operation arguments, converting pydantic errors to ValidationError.

    Usage:
        args = parse_args(FindManyArgs, {"where": {...}, "orderBy": {...}})
    """
    if isinstance(data, model):
        return data
    if data is None:
        data = {}
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = []
        for err in e.errors():
            location = ".".join(str(part) for part in err["loc"])
            errors.append(f"{path}.{location}: {err['msg']}" if location else f"{path}: {err['msg']}")
        raise ValidationError(errors)
