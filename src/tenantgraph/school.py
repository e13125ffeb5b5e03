"""
School data model.

Twelve entities; every entity except Tenant carries a non-nullable
``tenant_id`` referencing Tenant. Ids are UUID4 strings generated on create.

Usage:
    from tenantgraph import compile_schema
    from tenantgraph.school import SCHOOL_SCHEMA

    registry = compile_schema(SCHOOL_SCHEMA)
"""

from __future__ import annotations

from .core.defs import EntityDef, FieldDef, RelationDef, SchemaDef


SUBSCRIPTION_TIERS = ("FREE", "BASIC", "PREMIUM", "ENTERPRISE")
USER_ROLES = ("SYS_ADMIN", "SCHOOL_ADMIN", "TEACHER", "PARENT", "STUDENT")
ATTENDANCE_STATUSES = ("PRESENT", "ABSENT", "LATE", "EXCUSED")
COMMUNICATION_TYPES = ("ANNOUNCEMENT", "NOTICE", "ALERT", "MESSAGE")
COMMUNICATION_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")
FEE_STATUSES = ("PENDING", "PAID", "OVERDUE", "CANCELLED")
PAYROLL_STATUSES = ("PENDING", "PROCESSED", "PAID")


def _id() -> FieldDef:
    return FieldDef("id", "string", generated="uuid")


def _timestamps() -> list[FieldDef]:
    return [
        FieldDef("created_at", "datetime", generated="now"),
        FieldDef("updated_at", "datetime", updated_at=True),
    ]


def _tenant_id() -> FieldDef:
    return FieldDef("tenant_id", "string")


def _entity(name, table, fields, relations, uniques=()) -> EntityDef:
    return EntityDef.build(
        name,
        table,
        [_id(), *fields, _tenant_id(), *_timestamps()],
        [RelationDef("tenant", "Tenant", "one", field="tenant_id"), *relations],
        list(uniques),
    )


# =============================================================================
# Entities
# =============================================================================

TENANT = EntityDef.build(
    "Tenant",
    "tenants",
    [
        _id(),
        FieldDef("name", "string"),
        FieldDef("slug", "string", unique=True),
        FieldDef("subdomain", "string", nullable=True, unique=True),
        FieldDef("email", "string", unique=True),
        FieldDef("phone", "string", nullable=True),
        FieldDef("address", "text", nullable=True),
        FieldDef("logo", "string", nullable=True),
        FieldDef("languages", "string", is_list=True, default=("en",)),
        FieldDef("max_students", "int", default=1000),
        FieldDef("subscription_tier", "enum", default="FREE", enum_values=SUBSCRIPTION_TIERS),
        FieldDef("timezone", "string", default="UTC"),
        FieldDef("is_active", "bool", default=True),
        *_timestamps(),
    ],
    [
        RelationDef("users", "User", "many", inverse="tenant"),
        RelationDef("students", "Student", "many", inverse="tenant"),
        RelationDef("staff", "Staff", "many", inverse="tenant"),
        RelationDef("classes", "Class", "many", inverse="tenant"),
        RelationDef("class_students", "ClassStudent", "many", inverse="tenant"),
        RelationDef("attendances", "Attendance", "many", inverse="tenant"),
        RelationDef("communications", "Communication", "many", inverse="tenant"),
        RelationDef("fees", "Fee", "many", inverse="tenant"),
        RelationDef("reports", "Report", "many", inverse="tenant"),
        RelationDef("timetables", "Timetable", "many", inverse="tenant"),
        RelationDef("payrolls", "Payroll", "many", inverse="tenant"),
    ],
    tenant_field=None,
)

USER = _entity(
    "User",
    "users",
    [
        FieldDef("email", "string", unique=True),
        FieldDef("password", "string"),
        FieldDef("first_name", "string"),
        FieldDef("last_name", "string"),
        FieldDef("role", "enum", enum_values=USER_ROLES),
        FieldDef("is_active", "bool", default=True),
    ],
    [
        RelationDef("staff", "Staff", "one", inverse="user"),
        RelationDef("communications", "Communication", "many", inverse="sender"),
    ],
)

STUDENT = _entity(
    "Student",
    "students",
    [
        FieldDef("first_name", "string"),
        FieldDef("last_name", "string"),
        FieldDef("email", "string", nullable=True),
        FieldDef("phone", "string", nullable=True),
        FieldDef("date_of_birth", "date", nullable=True),
        FieldDef("admission_number", "string", nullable=True),
        FieldDef("is_active", "bool", default=True),
    ],
    [
        RelationDef("attendances", "Attendance", "many", inverse="student"),
        RelationDef("fees", "Fee", "many", inverse="student"),
        RelationDef("classes", "ClassStudent", "many", inverse="student"),
    ],
)

STAFF = _entity(
    "Staff",
    "staff",
    [
        FieldDef("staff_code", "string"),
        FieldDef("user_id", "string", unique=True),
        FieldDef("position", "string"),
        FieldDef("department", "string", nullable=True),
        FieldDef("salary", "float", nullable=True),
        FieldDef("is_active", "bool", default=True),
    ],
    [
        RelationDef("user", "User", "one", field="user_id"),
        RelationDef("classes", "Class", "many", inverse="teacher"),
        RelationDef("attendances", "Attendance", "many", inverse="recorded_by"),
        RelationDef("payrolls", "Payroll", "many", inverse="staff"),
    ],
    uniques=[("staff_code", "tenant_id")],
)

CLASS = _entity(
    "Class",
    "classes",
    [
        FieldDef("name", "string"),
        FieldDef("grade", "string", nullable=True),
        FieldDef("section", "string", nullable=True),
        FieldDef("capacity", "int", nullable=True),
        FieldDef("teacher_id", "string", nullable=True),
    ],
    [
        RelationDef("teacher", "Staff", "one", field="teacher_id", on_delete="set_null"),
        RelationDef("students", "ClassStudent", "many", inverse="class"),
        RelationDef("attendances", "Attendance", "many", inverse="class"),
    ],
)

CLASS_STUDENT = EntityDef.build(
    "ClassStudent",
    "class_students",
    [
        _id(),
        FieldDef("class_id", "string"),
        FieldDef("student_id", "string"),
        _tenant_id(),
        FieldDef("enrolled_at", "datetime", generated="now"),
    ],
    [
        RelationDef("tenant", "Tenant", "one", field="tenant_id"),
        RelationDef("class", "Class", "one", field="class_id", on_delete="cascade"),
        RelationDef("student", "Student", "one", field="student_id", on_delete="cascade"),
    ],
    [("class_id", "student_id")],
)

ATTENDANCE = _entity(
    "Attendance",
    "attendances",
    [
        FieldDef("date", "date"),
        FieldDef("status", "enum", enum_values=ATTENDANCE_STATUSES),
        FieldDef("remarks", "text", nullable=True),
        FieldDef("student_id", "string", nullable=True),
        FieldDef("staff_id", "string", nullable=True),
        FieldDef("class_id", "string", nullable=True),
    ],
    [
        RelationDef("student", "Student", "one", field="student_id", on_delete="set_null"),
        RelationDef("recorded_by", "Staff", "one", field="staff_id", on_delete="set_null"),
        RelationDef("class", "Class", "one", field="class_id", on_delete="set_null"),
    ],
    uniques=[("student_id", "date")],
)

COMMUNICATION = _entity(
    "Communication",
    "communications",
    [
        FieldDef("title", "string"),
        FieldDef("content", "text"),
        FieldDef("audience", "string", is_list=True, default=()),
        FieldDef("type", "enum", default="ANNOUNCEMENT", enum_values=COMMUNICATION_TYPES),
        FieldDef("priority", "enum", default="MEDIUM", enum_values=COMMUNICATION_PRIORITIES),
        FieldDef("send_email", "bool", default=False),
        FieldDef("send_notification", "bool", default=True),
        FieldDef("scheduled_at", "datetime", nullable=True),
        FieldDef("expires_at", "datetime", nullable=True),
        FieldDef("sender_id", "string"),
    ],
    [
        RelationDef("sender", "User", "one", field="sender_id"),
    ],
)

FEE = _entity(
    "Fee",
    "fees",
    [
        FieldDef("amount", "float"),
        FieldDef("description", "text", nullable=True),
        FieldDef("due_date", "date"),
        FieldDef("paid_date", "date", nullable=True),
        FieldDef("status", "enum", default="PENDING", enum_values=FEE_STATUSES),
        FieldDef("student_id", "string"),
    ],
    [
        RelationDef("student", "Student", "one", field="student_id"),
    ],
)

REPORT = _entity(
    "Report",
    "reports",
    [
        FieldDef("name", "string"),
        FieldDef("type", "string"),
        FieldDef("data", "json"),
    ],
    [],
)

TIMETABLE = _entity(
    "Timetable",
    "timetables",
    [
        FieldDef("name", "string"),
    ],
    [],
)

PAYROLL = _entity(
    "Payroll",
    "payrolls",
    [
        FieldDef("staff_id", "string"),
        FieldDef("month", "int"),
        FieldDef("year", "int"),
        FieldDef("basic_salary", "float"),
        FieldDef("allowances", "float", default=0.0),
        FieldDef("deductions", "float", default=0.0),
        FieldDef("net_salary", "float"),
        FieldDef("status", "enum", default="PENDING", enum_values=PAYROLL_STATUSES),
        FieldDef("paid_at", "datetime", nullable=True),
    ],
    [
        RelationDef("staff", "Staff", "one", field="staff_id"),
    ],
    uniques=[("staff_id", "month", "year")],
)


SCHOOL_SCHEMA = SchemaDef(
    version=1,
    tenant_entity="Tenant",
    entities={
        entity.name: entity
        for entity in (
            TENANT,
            USER,
            STUDENT,
            STAFF,
            CLASS,
            CLASS_STUDENT,
            ATTENDANCE,
            COMMUNICATION,
            FEE,
            REPORT,
            TIMETABLE,
            PAYROLL,
        )
    },
)
