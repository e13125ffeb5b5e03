"""
FastAPI router for tenantgraph.

Endpoints:
- GET  /__schema - Returns the compiled schema
- POST /$transaction - Runs a batched transaction
- POST /{entity}/{operation} - Runs one operation; the body is its options

Request examples:

1. Find many:
   POST /Student/findMany
   {"where": {"is_active": true}, "orderBy": {"last_name": "asc"}, "take": 10}

2. Create:
   POST /Fee/create
   {"data": {"amount": 120.5, "due_date": "2024-09-01", "student_id": "..."}}

3. Transaction:
   POST /$transaction
   {"operations": [{"entity": "Student", "operation": "create", "args": {...}}],
    "isolationLevel": "SERIALIZABLE"}

An ``X-Tenant-ID`` header scopes the call to one tenant. Results come back
as ``{"data": ...}``; errors as ``{"error": {"kind", "code", "message", ...}}``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..client import OPERATIONS, TenantGraph
from ..core.errors import TenantGraphError, ValidationError
from ..core.query_types import TransactionRequest, parse_args
from ..core.utils import to_snake_case

logger = logging.getLogger(__name__)


STATUS_CODES = {
    "validation": 400,
    "schema": 400,
    "not_found": 404,
    "constraint": 409,
    "transaction": 409,
    "timeout": 503,
    "connection": 503,
    "store": 500,
}


def error_response(error: TenantGraphError) -> JSONResponse:
    return JSONResponse(status_code=STATUS_CODES.get(error.kind, 500), content={"error": jsonable_encoder(error.to_dict())})


def create_tenantgraph_router(client: TenantGraph) -> APIRouter:
    """
    Create an API router serving ``client``.

    Args:
        client: Unscoped client; each request is scoped by its X-Tenant-ID header

    Returns:
        Configured FastAPI router
    """
    router = APIRouter()

    def scoped(tenant_id: Optional[str]) -> TenantGraph:
        return client.for_tenant(tenant_id) if tenant_id else client

    async def read_body(request: Request) -> dict[str, Any]:
        raw = await request.body()
        if not raw:
            return {}
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Request body must be JSON")
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body

    def operation_for(target: TenantGraph, entity: str, operation: str, args: dict[str, Any]):
        name = to_snake_case(operation)
        if name not in OPERATIONS:
            raise ValidationError(f"Unknown operation '{operation}'")
        delegate = target[entity]
        return getattr(delegate, name)(args)

    @router.get("/__schema")
    async def get_schema() -> dict[str, Any]:
        return client.describe()

    @router.post("/$transaction")
    async def run_transaction(request: Request, x_tenant_id: Optional[str] = Header(None)):
        try:
            body = parse_args(TransactionRequest, await read_body(request), "transaction")
            target = scoped(x_tenant_id)
            operations = [
                operation_for(target, step.entity, step.operation, step.args)
                for step in body.operations
            ]
            results = await target.transaction(operations, isolation_level=body.isolation_level)
        except TenantGraphError as e:
            return error_response(e)
        return {"data": jsonable_encoder(results)}

    @router.post("/{entity}/{operation}")
    async def run_operation(entity: str, operation: str, request: Request, x_tenant_id: Optional[str] = Header(None)):
        try:
            args = await read_body(request)
            result = await operation_for(scoped(x_tenant_id), entity, operation, args)
        except TenantGraphError as e:
            logger.debug(f"{entity}.{operation} failed: {e}")
            return error_response(e)
        return {"data": jsonable_encoder(result)}

    return router
