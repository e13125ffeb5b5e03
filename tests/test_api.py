"""
Tests for the HTTP router.
"""

from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI

from tenantgraph import create_tenantgraph_router


@pytest.fixture
async def http(client):
    app = FastAPI()
    app.include_router(create_tenantgraph_router(client), prefix="/db")
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


def _tenant(tenant_id):
    return {"X-Tenant-ID": tenant_id}


class TestOperations:
    async def test_schema(self, http):
        response = await http.get("/db/__schema")
        assert response.status_code == 200
        body = response.json()
        assert body["tenantEntity"] == "Tenant"
        assert body["entities"]["Fee"]["fields"]["status"]["enum"] == ["PENDING", "PAID", "OVERDUE", "CANCELLED"]

    async def test_find_many(self, http, school):
        response = await http.post(
            "/db/Student/findMany",
            json={"where": {"last_name": "Kim"}, "orderBy": {"first_name": "asc"}, "select": {"first_name": True, "date_of_birth": True}},
            headers=_tenant(school.alpha_id),
        )
        assert response.status_code == 200
        assert response.json() == {"data": [
            {"first_name": "Ann", "date_of_birth": "2012-03-01"},
            {"first_name": "Ben", "date_of_birth": "2011-07-15"},
        ]}

    async def test_count_is_scoped(self, http, school):
        response = await http.post("/db/Student/count", json={}, headers=_tenant(school.beta_id))
        assert response.json() == {"data": 1}
        response = await http.post("/db/Student/count")
        assert response.json() == {"data": 5}

    async def test_create(self, http, school):
        response = await http.post(
            "/db/Student/create",
            json={"data": {"first_name": "Fay", "last_name": "Ito"}},
            headers=_tenant(school.beta_id),
        )
        assert response.status_code == 200
        assert response.json()["data"]["tenant_id"] == school.beta_id


class TestErrors:
    async def test_validation(self, http, school):
        response = await http.post(
            "/db/Student/create",
            json={"data": {"first_name": "Fay", "last_name": "Ito", "nickname": "F"}},
            headers=_tenant(school.alpha_id),
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert (error["kind"], error["code"], error["field"]) == ("validation", "P2009", "nickname")

    async def test_unknown_operation_and_entity(self, http, school):
        response = await http.post("/db/Student/explode", json={})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Unknown operation 'explode'"
        response = await http.post("/db/Parent/findMany", json={})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Unknown entity 'Parent'"

    async def test_not_found(self, http, school):
        response = await http.post(
            "/db/Student/findUniqueOrThrow",
            json={"where": {"id": school.students.eve["id"]}},
            headers=_tenant(school.alpha_id),
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "P2025"

    async def test_unique_violation(self, http, school):
        response = await http.post(
            "/db/Tenant/create",
            json={"data": {"name": "Copy", "slug": "alpha", "email": "copy@alpha.test"}},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "P2002"

    async def test_cross_tenant(self, http, school):
        response = await http.post(
            "/db/Fee/create",
            json={"data": {"student_id": school.students.eve["id"], "amount": 10.0, "due_date": "2024-10-01"}},
            headers=_tenant(school.alpha_id),
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "P2014"

    async def test_bad_bodies(self, http, school):
        response = await http.post(
            "/db/Student/findMany", content=b"not json", headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Request body must be JSON"
        response = await http.post("/db/Student/findMany", json=[1, 2])
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Request body must be a JSON object"


class TestTransactionEndpoint:
    async def test_commit(self, http, school):
        response = await http.post(
            "/db/$transaction",
            json={"operations": [
                {"entity": "Student", "operation": "create", "args": {"data": {"first_name": "Fay", "last_name": "Ito"}}},
                {"entity": "Student", "operation": "count"},
            ]},
            headers=_tenant(school.alpha_id),
        )
        assert response.status_code == 200
        created, count = response.json()["data"]
        assert created["first_name"] == "Fay"
        assert count == 5

    async def test_rollback(self, http, school):
        response = await http.post(
            "/db/$transaction",
            json={
                "operations": [
                    {"entity": "Student", "operation": "create", "args": {
                        "data": {"first_name": "Fay", "last_name": "Ito", "tenant_id": school.alpha_id},
                    }},
                    {"entity": "Tenant", "operation": "create", "args": {
                        "data": {"name": "Copy", "slug": "alpha", "email": "copy@alpha.test"},
                    }},
                ],
                "isolationLevel": "SERIALIZABLE",
            },
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "P2002"
        assert await school.alpha.student.count() == 4
