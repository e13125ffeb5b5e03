"""
Tests for create, create_many, update, update_many, upsert, delete and delete_many.
"""

from __future__ import annotations

from datetime import date, datetime

import pytest

from tenantgraph import (
    BatchPayload,
    CrossTenantError,
    ForeignKeyConstraintError,
    NotFoundError,
    Operation,
    UniqueConstraintError,
    UnknownFieldError,
    ValidationError,
)


class TestCreate:
    """Single-row creates."""

    async def test_defaults_and_scope(self, school):
        student = await school.alpha.student.create(data={"first_name": "Fay", "last_name": "Ito"})
        assert len(student["id"]) == 36
        assert student["tenant_id"] == school.alpha_id
        assert student["is_active"] is True
        assert student["email"] is None
        assert isinstance(student["created_at"], datetime)
        assert isinstance(student["updated_at"], datetime)

    async def test_tenant_defaults(self, client):
        tenant = await client.tenant.create(data={"name": "Gamma", "slug": "gamma", "email": "office@gamma.test"})
        assert tenant["languages"] == ["en"]
        assert tenant["max_students"] == 1000
        assert tenant["subscription_tier"] == "FREE"
        assert tenant["timezone"] == "UTC"

    async def test_enum_and_list_defaults(self, school):
        message = await school.alpha.communication.create(data={
            "title": "Sports day",
            "content": "Friday on the main field",
            "sender_id": school.users.lee["id"],
        })
        assert message["audience"] == []
        assert message["type"] == "ANNOUNCEMENT"
        assert message["priority"] == "MEDIUM"
        assert message["send_email"] is False
        assert message["send_notification"] is True

    async def test_values_are_coerced(self, school):
        fee = await school.alpha.fee.create(data={
            "student_id": school.students.dan["id"], "amount": "75.5", "due_date": "2024-10-01T00:00:00Z",
        })
        assert fee["amount"] == 75.5
        assert fee["due_date"] == date(2024, 10, 1)
        assert fee["status"] == "PENDING"

    async def test_create_with_include(self, school):
        fee = await school.alpha.fee.create(
            data={"student_id": school.students.ann["id"], "amount": 20.0, "due_date": "2024-10-01"},
            include={"student": {"select": {"first_name": True}}},
        )
        assert fee["student"] == {"first_name": "Ann"}

    async def test_operation_is_deferred(self, school):
        operation = school.alpha.student.create(data={"first_name": "Fay", "last_name": "Ito"})
        assert isinstance(operation, Operation)
        assert repr(operation) == "Operation(Student.create)"
        assert await school.alpha.student.count() == 4
        await operation
        assert await school.alpha.student.count() == 5

    async def test_payload_validation(self, school):
        student = school.alpha.student
        with pytest.raises(ValidationError, match="missing required field\\(s\\): last_name"):
            student.create(data={"first_name": "Fay"})
        with pytest.raises(ValidationError, match="'last_name' cannot be null"):
            student.create(data={"first_name": "Fay", "last_name": None})
        with pytest.raises(UnknownFieldError):
            student.create(data={"first_name": "Fay", "last_name": "Ito", "nickname": "F"})
        with pytest.raises(ValidationError, match="expected a boolean"):
            student.create(data={"first_name": "Fay", "last_name": "Ito", "is_active": "yes"})
        with pytest.raises(ValidationError, match="'increment' is only valid in updates"):
            school.alpha.class_.create(data={"name": "Choir", "capacity": {"increment": 1}})
        with pytest.raises(ValidationError, match="invalid value 'LOST'"):
            school.alpha.fee.create(data={
                "student_id": school.students.ann["id"], "amount": 1, "due_date": "2024-10-01", "status": "LOST",
            })

    async def test_connect(self, school):
        fee = await school.alpha.fee.create(data={
            "amount": 10.0,
            "due_date": "2024-10-01",
            "student": {"connect": {"id": school.students.dan["id"]}},
        })
        assert fee["student_id"] == school.students.dan["id"]
        assert fee["tenant_id"] == school.alpha_id

    async def test_connect_missing_row(self, school):
        with pytest.raises(NotFoundError):
            await school.alpha.fee.create(data={
                "amount": 10.0, "due_date": "2024-10-01", "student": {"connect": {"id": "missing"}},
            })

    async def test_relation_write_rules(self, school):
        with pytest.raises(ValidationError, match="not both"):
            school.alpha.fee.create(data={
                "amount": 10.0,
                "due_date": "2024-10-01",
                "student_id": school.students.dan["id"],
                "student": {"connect": {"id": school.students.dan["id"]}},
            })
        with pytest.raises(ValidationError, match="'fees' is written from the Fee side"):
            school.alpha.student.create(data={
                "first_name": "Fay", "last_name": "Ito", "fees": {"connect": {"id": school.fees.ann_paid["id"]}},
            })
        with pytest.raises(ValidationError, match="disconnect is only valid in updates"):
            school.alpha.class_.create(data={"name": "Choir", "teacher": {"disconnect": True}})

    async def test_foreign_key_violation(self, client, school):
        with pytest.raises(ForeignKeyConstraintError) as exc_info:
            await client.fee.create(data={
                "amount": 10.0, "due_date": "2024-10-01", "student_id": "missing", "tenant_id": school.alpha_id,
            })
        assert exc_info.value.code == "P2003"
        assert exc_info.value.entity == "Fee"
        assert exc_info.value.fields == ["student_id"]
        assert exc_info.value.constraint == "fk_fees_student_id"
        assert str(exc_info.value) == "Foreign key constraint failed on Fee (student_id)"
        assert await school.alpha.fee.count() == 4

    async def test_foreign_key_violation_on_update(self, school):
        with pytest.raises(ForeignKeyConstraintError) as exc_info:
            await school.alpha.class_.update(where={"id": school.classes.art["id"]}, data={"teacher_id": "missing"})
        assert exc_info.value.fields == ["teacher_id"]
        assert exc_info.value.constraint == "fk_classes_teacher_id"

    async def test_unique_violation(self, client, school):
        with pytest.raises(UniqueConstraintError) as exc_info:
            await client.tenant.create(data={"name": "Copy", "slug": "alpha", "email": "copy@alpha.test"})
        assert exc_info.value.entity == "Tenant"
        assert exc_info.value.fields == ["slug"]

    async def test_compound_unique_violation(self, school):
        user = await school.alpha.user.create(data={
            "email": "new@alpha.test", "password": "x", "first_name": "Nia", "last_name": "Cole", "role": "TEACHER",
        })
        with pytest.raises(UniqueConstraintError) as exc_info:
            await school.alpha.staff.create(data={"staff_code": "T-001", "user_id": user["id"], "position": "Teacher"})
        assert exc_info.value.entity == "Staff"
        assert exc_info.value.fields == ["staff_code", "tenant_id"]


class TestCreateMany:
    """Multi-row creates."""

    async def test_create_many(self, school):
        result = await school.alpha.student.create_many(data=[
            {"first_name": "Fay", "last_name": "Ito"},
            {"first_name": "Gus", "last_name": "Ito", "email": "gus@alpha.test"},
        ])
        assert result == BatchPayload(count=2)
        assert await school.alpha.student.count(where={"last_name": "Ito"}) == 2

    async def test_empty(self, school):
        assert (await school.alpha.student.create_many(data=[])).count == 0

    async def test_skip_duplicates(self, client, school):
        result = await client.tenant.create_many(
            data=[
                {"name": "Copy", "slug": "alpha", "email": "copy@alpha.test"},
                {"name": "Gamma", "slug": "gamma", "email": "office@gamma.test"},
            ],
            skip_duplicates=True,
        )
        assert result.count == 1
        assert await client.tenant.count() == 3

    async def test_all_or_nothing(self, client, school):
        with pytest.raises(UniqueConstraintError):
            await client.tenant.create_many(data=[
                {"name": "Gamma", "slug": "gamma", "email": "office@gamma.test"},
                {"name": "Copy", "slug": "alpha", "email": "copy@alpha.test"},
            ])
        assert await client.tenant.find_unique(where={"slug": "gamma"}) is None

    async def test_rows_are_validated(self, school):
        with pytest.raises(ValidationError, match="createMany.data\\[1\\]: missing required field"):
            school.alpha.student.create_many(data=[
                {"first_name": "Fay", "last_name": "Ito"},
                {"first_name": "Gus"},
            ])
        with pytest.raises(ValidationError, match="relation writes are not supported here"):
            school.alpha.fee.create_many(data=[{
                "amount": 1.0, "due_date": "2024-10-01", "student": {"connect": {"id": school.students.ann["id"]}},
            }])


class TestUpdate:
    """Single-row updates."""

    async def test_update(self, school):
        ann = school.students.ann
        updated = await school.alpha.student.update(where={"id": ann["id"]}, data={"email": "ann.kim@alpha.test"})
        assert updated["email"] == "ann.kim@alpha.test"
        assert updated["updated_at"] >= ann["updated_at"]
        assert updated["created_at"] == ann["created_at"]

    async def test_number_operations(self, school):
        where = {"id": school.classes.grade5["id"]}
        klass = school.alpha.class_
        assert (await klass.update(where=where, data={"capacity": {"increment": 5}}))["capacity"] == 35
        assert (await klass.update(where=where, data={"capacity": {"divide": 2}}))["capacity"] == 17
        assert (await klass.update(where=where, data={"capacity": {"multiply": 3}}))["capacity"] == 51
        assert (await klass.update(where=where, data={"capacity": {"set": 20}}))["capacity"] == 20

        staff = school.alpha.staff
        sara = {"id": school.staff.sara["id"]}
        assert (await staff.update(where=sara, data={"salary": {"divide": 4}}))["salary"] == 750.0
        assert (await staff.update(where=sara, data={"salary": {"decrement": 50}}))["salary"] == 700.0

    async def test_number_operation_validation(self, school):
        where = {"id": school.classes.grade5["id"]}
        with pytest.raises(ValidationError, match="cannot divide by zero"):
            school.alpha.class_.update(where=where, data={"capacity": {"divide": 0}})
        with pytest.raises(ValidationError, match="requires a numeric field"):
            school.alpha.class_.update(where=where, data={"name": {"increment": 1}})
        with pytest.raises(ValidationError, match="unknown update operation 'power'"):
            school.alpha.class_.update(where=where, data={"capacity": {"power": 2}})

    async def test_not_found(self, school):
        with pytest.raises(NotFoundError):
            await school.alpha.student.update(where={"id": "missing"}, data={"first_name": "X"})
        with pytest.raises(NotFoundError):
            await school.alpha.student.update(where={"id": school.students.eve["id"]}, data={"first_name": "X"})

    async def test_unique_where_with_extra_filter(self, school):
        with pytest.raises(NotFoundError):
            await school.alpha.student.update(
                where={"id": school.students.ann["id"], "is_active": False}, data={"first_name": "X"},
            )

    async def test_primary_key_is_immutable(self, school):
        with pytest.raises(ValidationError, match="the primary key cannot be updated"):
            school.alpha.student.update(where={"id": school.students.ann["id"]}, data={"id": "other"})

    async def test_tenant_is_immutable(self, client, school):
        with pytest.raises(CrossTenantError):
            school.alpha.student.update(where={"id": school.students.ann["id"]}, data={"tenant_id": school.beta_id})
        with pytest.raises(CrossTenantError):
            await client.student.update(where={"id": school.students.ann["id"]}, data={"tenant_id": school.beta_id})

    async def test_connect_and_disconnect(self, school):
        art = {"id": school.classes.art["id"]}
        connected = await school.alpha.class_.update(
            where=art, data={"teacher": {"connect": {"id": school.staff.omar["id"]}}},
        )
        assert connected["teacher_id"] == school.staff.omar["id"]

        disconnected = await school.alpha.class_.update(where=art, data={"teacher": {"disconnect": True}})
        assert disconnected["teacher_id"] is None

        with pytest.raises(ValidationError, match="required relation 'student' cannot be disconnected"):
            school.alpha.fee.update(where={"id": school.fees.ann_paid["id"]}, data={"student": {"disconnect": True}})


class TestUpdateMany:
    async def test_update_many_is_scoped(self, client, school):
        result = await school.alpha.fee.update_many(where={"status": "PENDING"}, data={"status": "OVERDUE"})
        assert result.count == 2
        eve_fee = await client.fee.find_unique(where={"id": school.fees.eve_pending["id"]})
        assert eve_fee["status"] == "PENDING"

    async def test_number_operation(self, school):
        result = await school.alpha.fee.update_many(where={"status": "PENDING"}, data={"amount": {"multiply": 2}})
        assert result.count == 2
        fees = await school.alpha.fee.find_many(where={"status": "PENDING"}, order_by={"amount": "asc"})
        assert [fee["amount"] for fee in fees] == [200.0, 600.0]

    async def test_no_match(self, school):
        assert (await school.alpha.fee.update_many(where={"status": "CANCELLED"}, data={"amount": 0})).count == 0

    async def test_relation_writes_rejected(self, school):
        with pytest.raises(ValidationError, match="relation writes are not supported here"):
            school.alpha.class_.update_many(data={"teacher": {"disconnect": True}})


class TestUpsert:
    def _where(self, school, code):
        return {"staff_code_tenant_id": {"staff_code": code, "tenant_id": school.alpha_id}}

    async def test_update_branch(self, school):
        staff = await school.alpha.staff.upsert(
            where=self._where(school, "T-001"),
            create={"staff_code": "T-001", "user_id": school.users.lee["id"], "position": "Teacher"},
            update={"department": "Physics"},
        )
        assert staff["id"] == school.staff.sara["id"]
        assert staff["department"] == "Physics"
        assert await school.alpha.staff.count() == 2

    async def test_create_branch(self, school):
        staff = await school.alpha.staff.upsert(
            where=self._where(school, "T-003"),
            create={"staff_code": "T-003", "user_id": school.users.lee["id"], "position": "Principal"},
            update={"department": "Physics"},
        )
        assert staff["staff_code"] == "T-003"
        assert staff["department"] is None
        assert staff["tenant_id"] == school.alpha_id
        assert await school.alpha.staff.count() == 3

    async def test_both_payloads_validated(self, school):
        with pytest.raises(ValidationError, match="upsert.create: missing required field"):
            school.alpha.staff.upsert(
                where=self._where(school, "T-003"), create={"staff_code": "T-003"}, update={},
            )


class TestDelete:
    async def test_delete_returns_record(self, school):
        dan = await school.alpha.student.delete(where={"id": school.students.dan["id"]})
        assert dan["first_name"] == "Dan"
        assert await school.alpha.student.find_unique(where={"id": school.students.dan["id"]}) is None

    async def test_delete_with_include(self, school):
        art = await school.alpha.class_.delete(where={"id": school.classes.art["id"]}, include={"students": True})
        assert art["students"] == []

    async def test_not_found(self, school):
        with pytest.raises(NotFoundError):
            await school.alpha.student.delete(where={"id": "missing"})
        with pytest.raises(NotFoundError):
            await school.alpha.student.delete(where={"id": school.students.eve["id"]})

    async def test_restrict(self, school):
        with pytest.raises(ForeignKeyConstraintError):
            await school.alpha.student.delete(where={"id": school.students.ann["id"]})
        assert await school.alpha.student.find_unique(where={"id": school.students.ann["id"]}) is not None
        assert await school.alpha.class_student.count(where={"student_id": school.students.ann["id"]}) == 1

    async def test_cascade_and_set_null(self, school):
        await school.alpha.class_.delete(where={"id": school.classes.grade6["id"]})
        assert await school.alpha.class_student.count(where={"class_id": school.classes.grade6["id"]}) == 0

        await school.alpha.staff.delete(where={"id": school.staff.sara["id"]})
        grade5 = await school.alpha.class_.find_unique(where={"id": school.classes.grade5["id"]})
        assert grade5["teacher_id"] is None


class TestDeleteMany:
    async def test_delete_many_is_scoped(self, client, school):
        assert (await school.alpha.fee.delete_many()).count == 4
        assert await client.fee.count() == 1

    async def test_filter(self, school):
        assert (await school.alpha.fee.delete_many(where={"status": "PENDING"})).count == 2
        assert await school.alpha.fee.count() == 2

    async def test_limit(self, school):
        assert (await school.alpha.class_student.delete_many(limit=1)).count == 1
        assert await school.alpha.class_student.count() == 3

    async def test_negative_limit(self, school):
        with pytest.raises(ValidationError):
            school.alpha.fee.delete_many(limit=-1)
