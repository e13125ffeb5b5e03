"""
Tests for filter normalization and unique filters.
"""

from __future__ import annotations

from datetime import date

import pytest

from tenantgraph import And, F, FieldPredicate, Not, Or, RelationPredicate, UnknownFieldError, ValidationError
from tenantgraph.core.filters import FilterCompiler


@pytest.fixture
def filters(registry):
    return FilterCompiler(registry, "sqlite")


class TestFieldFilters:
    """Scalar field filters."""

    def test_shorthand_equals(self, filters):
        assert filters.normalize("Student", {"first_name": "Ann"}) == FieldPredicate("first_name", "equals", "Ann")

    def test_camel_case_names(self, filters):
        predicate = filters.normalize("Student", {"firstName": {"startsWith": "A"}})
        assert predicate == FieldPredicate("first_name", "starts_with", "A")

    def test_values_are_coerced(self, filters):
        predicate = filters.normalize("Student", {"date_of_birth": {"gte": "2012-01-01", "lt": "2013-01-01"}})
        assert predicate == And((
            FieldPredicate("date_of_birth", "gte", date(2012, 1, 1)),
            FieldPredicate("date_of_birth", "lt", date(2013, 1, 1)),
        ))

    def test_malformed_dates_are_rejected(self, filters):
        with pytest.raises(ValidationError, match="expected an ISO date for 'date_of_birth'"):
            filters.normalize("Student", {"date_of_birth": "2012-01-01nonsense"})
        with pytest.raises(ValidationError, match="expected an ISO date"):
            filters.normalize("Student", {"date_of_birth": {"gte": "2012-13-01"}})
        predicate = filters.normalize("Student", {"date_of_birth": {"gte": "2012-01-01T08:30:00Z"}})
        assert predicate == FieldPredicate("date_of_birth", "gte", date(2012, 1, 1))

    def test_not_with_operator_object(self, filters):
        predicate = filters.normalize("Fee", {"status": {"not": {"in": ["PAID", "CANCELLED"]}}})
        assert predicate == Not(FieldPredicate("status", "in", ["PAID", "CANCELLED"]))

    def test_explicit_null_check(self, filters):
        assert filters.normalize("Student", {"email": {"equals": None}}) == FieldPredicate("email", "equals", None)
        assert filters.normalize("Student", {"email": {"not": None}}) == FieldPredicate("email", "not", None)

    def test_unknown_field(self, filters):
        with pytest.raises(UnknownFieldError, match="unknown field 'nickname' on Student"):
            filters.normalize("Student", {"nickname": "Annie"})

    def test_unknown_operator(self, filters):
        with pytest.raises(ValidationError, match="unknown filter operator 'like'"):
            filters.normalize("Student", {"first_name": {"like": "A%"}})

    def test_invalid_enum_value(self, filters):
        with pytest.raises(ValidationError, match="invalid value 'LOST'"):
            filters.normalize("Fee", {"status": "LOST"})

    def test_operator_type_mismatch(self, filters):
        with pytest.raises(ValidationError, match="requires a string field"):
            filters.normalize("Tenant", {"max_students": {"contains": "10"}})
        with pytest.raises(ValidationError, match="mode 'insensitive' requires a string field"):
            filters.normalize("Tenant", {"max_students": {"equals": 10, "mode": "insensitive"}})
        with pytest.raises(ValidationError, match="not supported on boolean field"):
            filters.normalize("Student", {"is_active": {"gt": False}})

    def test_list_operators(self, filters):
        assert filters.normalize("Tenant", {"languages": {"has": "fr"}}) == FieldPredicate("languages", "has", "fr")
        with pytest.raises(ValidationError, match="not supported on list field 'languages'"):
            filters.normalize("Tenant", {"languages": "en"})
        with pytest.raises(ValidationError, match="requires a list field"):
            filters.normalize("Student", {"first_name": {"has": "A"}})

    def test_in_rejects_null(self, filters):
        with pytest.raises(ValidationError, match="'in' cannot contain null"):
            filters.normalize("Student", {"email": {"in": ["ann@alpha.test", None]}})


class TestNullPolicy:
    """A None branch means the condition was not specified."""

    def test_none_where(self, filters):
        assert filters.normalize("Student", None) is None
        assert filters.normalize("Student", {}) is None

    def test_none_branches_are_dropped(self, filters):
        assert filters.normalize("Student", {"email": None}) is None
        assert filters.normalize("Student", {"first_name": {"contains": None}}) is None
        assert filters.normalize("Student", {"AND": None, "fees": None}) is None
        assert filters.normalize("Student", {"email": None, "is_active": True}) == FieldPredicate(
            "is_active", "equals", True,
        )

    def test_explicit_null_match_ignores_mode(self, filters):
        predicate = filters.normalize("Student", {"email": {"equals": None, "mode": "insensitive"}})
        assert predicate == FieldPredicate("email", "equals", None, "insensitive")
        predicate = filters.normalize("Student", {"email": {"not": None, "mode": "insensitive"}})
        assert predicate == FieldPredicate("email", "not", None, "insensitive")

    def test_empty_or_matches_nothing(self, filters):
        assert filters.normalize("Student", {"OR": []}) == Or(())

    def test_not_list(self, filters):
        predicate = filters.normalize("Student", {"NOT": [{"is_active": True}, {"email": None}]})
        assert predicate == Not(FieldPredicate("is_active", "equals", True))


class TestRelationFilters:
    """Relation quantifiers."""

    def test_to_many(self, filters):
        predicate = filters.normalize("Student", {"fees": {"some": {"status": "PAID"}}})
        assert predicate == RelationPredicate("fees", "some", FieldPredicate("status", "equals", "PAID"))

    def test_to_one_shorthand(self, filters):
        predicate = filters.normalize("Class", {"teacher": {"department": "Science"}})
        assert predicate == RelationPredicate("teacher", "is", FieldPredicate("department", "equals", "Science"))

    def test_wrong_quantifier(self, filters):
        with pytest.raises(ValidationError, match="'is' is not valid on a to-many relation"):
            filters.normalize("Student", {"fees": {"is": {"status": "PAID"}}})

    def test_depth_limit(self, registry):
        shallow = FilterCompiler(registry, "sqlite", max_depth=1)
        shallow.normalize("Class", {"students": {"some": {"class_id": "x"}}})
        with pytest.raises(ValidationError, match="nested deeper than 1 levels"):
            shallow.normalize("Class", {"students": {"some": {"student": {"is": {"first_name": "Ann"}}}}})


class TestPredicateBuilder:
    """Trees built with F normalize like dicts."""

    def test_builder_matches_dict(self, filters):
        built = filters.normalize("Student", F("firstName").starts_with("A") & ~F("email").is_null())
        assert built == And((
            FieldPredicate("first_name", "starts_with", "A"),
            Not(FieldPredicate("email", "equals", None)),
        ))

    def test_builder_relation(self, filters):
        built = filters.normalize("Student", F("fees").none({"status": "OVERDUE"}))
        assert built == RelationPredicate("fees", "none", FieldPredicate("status", "equals", "OVERDUE"))

    def test_builder_checks_names(self, filters):
        with pytest.raises(UnknownFieldError):
            filters.normalize("Student", F("nickname").equals("A"))
        with pytest.raises(ValidationError, match="is a relation"):
            filters.normalize("Student", F("fees").equals("x"))


class TestUniqueWhere:
    """Filters that must identify one row."""

    def test_primary_key(self, filters):
        unique = filters.parse_unique("Student", {"id": "s-1"})
        assert unique.values == {"id": "s-1"}
        assert unique.predicate == FieldPredicate("id", "equals", "s-1")

    def test_compound_key(self, filters):
        unique = filters.parse_unique("Staff", {"staffCodeTenantId": {"staffCode": "T-001", "tenantId": "t-1"}})
        assert unique.values == {"staff_code": "T-001", "tenant_id": "t-1"}

    def test_extra_filters(self, filters):
        unique = filters.parse_unique("Student", {"id": "s-1", "is_active": True})
        assert unique.predicate == And((
            FieldPredicate("id", "equals", "s-1"),
            FieldPredicate("is_active", "equals", True),
        ))

    def test_requires_unique_key(self, filters):
        with pytest.raises(ValidationError, match="where must specify a unique key"):
            filters.parse_unique("Student", {"first_name": "Ann"})
        with pytest.raises(ValidationError, match="a unique 'where' object is required"):
            filters.parse_unique("Student", {})

    def test_incomplete_compound_key(self, filters):
        with pytest.raises(ValidationError, match="compound key requires exactly staff_code, tenant_id"):
            filters.parse_unique("Staff", {"staff_code_tenant_id": {"staff_code": "T-001"}})
