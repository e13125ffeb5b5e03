"""
API module - FastAPI endpoints.
"""

from __future__ import annotations

from .router import create_tenantgraph_router, error_response

__all__ = [
    "create_tenantgraph_router",
    "error_response",
]
