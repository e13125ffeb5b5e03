"""
Shared fixtures: a fresh SQLite store per test and two seeded schools.
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from tenantgraph import Settings, TenantGraph, compile_schema, create_engine, init_db
from tenantgraph.school import SCHOOL_SCHEMA


@pytest.fixture
def registry():
    return compile_schema(SCHOOL_SCHEMA)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'school.db'}",
        transaction_timeout=5.0,
        transaction_max_wait=2.0,
    )


@pytest.fixture
async def engine(registry, settings):
    engine = create_engine(settings)
    await init_db(engine, registry)
    yield engine
    await engine.dispose()


@pytest.fixture
def client(registry, engine, settings):
    return TenantGraph(registry, engine, settings)


async def _user(scope, email, first_name, last_name, role="TEACHER"):
    return await scope.user.create(data={
        "email": email,
        "password": "secret",
        "first_name": first_name,
        "last_name": last_name,
        "role": role,
    })


async def _student(scope, first_name, last_name, email=None, date_of_birth=None, is_active=True):
    return await scope.student.create(data={
        "first_name": first_name,
        "last_name": last_name,
        "email": email,
        "date_of_birth": date_of_birth,
        "is_active": is_active,
    })


async def _fee(scope, student, amount, status, due_date):
    return await scope.fee.create(data={
        "student_id": student["id"],
        "amount": amount,
        "status": status,
        "due_date": due_date,
    })


@pytest.fixture
async def school(client):
    """
    Two tenants.

    Alpha: teachers Sara (Science, 3000) and Omar (Math, 3500); classes
    Grade 5A (Sara), Grade 6B (Omar) and Art Club (no teacher); students
    Ann Kim, Ben Kim, Cara Lopez and inactive Dan Moss; Ann, Ben and Cara
    in Grade 5A, Cara also in Grade 6B; fees 100 PENDING + 250 PAID (Ann),
    300 PENDING (Ben), 50 OVERDUE (Cara).

    Beta: teacher Tom (staff code T-001 like Sara), student Eve Stone with
    one 999 PENDING fee.
    """
    alpha_tenant = await client.tenant.create(data={
        "name": "Alpha Academy", "slug": "alpha", "email": "office@alpha.test",
    })
    beta_tenant = await client.tenant.create(data={
        "name": "Beta School", "slug": "beta", "email": "office@beta.test", "languages": ["en", "fr"],
    })
    alpha = client.for_tenant(alpha_tenant["id"])
    beta = client.for_tenant(beta_tenant["id"])

    users = SimpleNamespace(
        sara=await _user(alpha, "sara@alpha.test", "Sara", "Kim"),
        omar=await _user(alpha, "omar@alpha.test", "Omar", "Haddad"),
        lee=await _user(alpha, "lee@alpha.test", "Lee", "Park", role="SCHOOL_ADMIN"),
        tom=await _user(beta, "tom@beta.test", "Tom", "Berg"),
    )
    staff = SimpleNamespace(
        sara=await alpha.staff.create(data={
            "staff_code": "T-001", "user_id": users.sara["id"], "position": "Teacher",
            "department": "Science", "salary": 3000.0,
        }),
        omar=await alpha.staff.create(data={
            "staff_code": "T-002", "user_id": users.omar["id"], "position": "Teacher",
            "department": "Math", "salary": 3500.0,
        }),
        tom=await beta.staff.create(data={
            "staff_code": "T-001", "user_id": users.tom["id"], "position": "Teacher",
        }),
    )
    classes = SimpleNamespace(
        grade5=await alpha.class_.create(data={
            "name": "Grade 5A", "grade": "5", "section": "A", "capacity": 30, "teacher_id": staff.sara["id"],
        }),
        grade6=await alpha.class_.create(data={
            "name": "Grade 6B", "grade": "6", "section": "B", "capacity": 25, "teacher_id": staff.omar["id"],
        }),
        art=await alpha.class_.create(data={"name": "Art Club"}),
    )
    students = SimpleNamespace(
        ann=await _student(alpha, "Ann", "Kim", "ann@alpha.test", "2012-03-01"),
        ben=await _student(alpha, "Ben", "Kim", "ben@alpha.test", "2011-07-15"),
        cara=await _student(alpha, "Cara", "Lopez", "cara@alpha.test", "2012-11-30"),
        dan=await _student(alpha, "Dan", "Moss", is_active=False),
        eve=await _student(beta, "Eve", "Stone", "eve@beta.test", "2013-01-20"),
    )
    for klass, student in (
        (classes.grade5, students.ann),
        (classes.grade5, students.ben),
        (classes.grade5, students.cara),
        (classes.grade6, students.cara),
    ):
        await alpha.class_student.create(data={"class_id": klass["id"], "student_id": student["id"]})

    fees = SimpleNamespace(
        ann_pending=await _fee(alpha, students.ann, 100.0, "PENDING", "2024-09-01"),
        ann_paid=await _fee(alpha, students.ann, 250.0, "PAID", "2024-06-01"),
        ben_pending=await _fee(alpha, students.ben, 300.0, "PENDING", "2024-09-01"),
        cara_overdue=await _fee(alpha, students.cara, 50.0, "OVERDUE", "2024-03-01"),
        eve_pending=await _fee(beta, students.eve, 999.0, "PENDING", "2024-09-01"),
    )

    return SimpleNamespace(
        alpha_id=alpha_tenant["id"],
        beta_id=beta_tenant["id"],
        alpha=alpha,
        beta=beta,
        users=users,
        staff=staff,
        classes=classes,
        students=students,
        fees=fees,
    )
