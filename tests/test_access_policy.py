"""Tests for statement classification, tenant filters and role mapping."""
import pytest

from arksql.policy.access import AccessPolicy, CallerContext, sub_tenant_filter_message, tenant_filter_message
from arksql.policy.roles import Permission, Resource, Role, has_permission, role_from_claim
from arksql.prompts import role_restrictions


class TestClassify:
    @pytest.mark.parametrize("sql", [
        "DROP TABLE users;",
        "delete from scores where id = 1",
        "ALTER TABLE users ADD COLUMN x int",
        "truncate users",
        "GRANT SELECT ON users TO public",
        "revoke all on users from bob",
        "SELECT 1; DROP TABLE users",
    ])
    def test_forbidden_keywords_are_caught(self, policy, sql):
        """Any standalone destructive keyword marks the statement forbidden."""
        assert policy.classify(sql).forbidden

    def test_refusal_names_the_keyword(self, policy):
        """The refusal text is fixed and names the keyword in upper case."""
        assert policy.classify("DROP TABLE users;").refusal == "This action is not allowed DROP"

    @pytest.mark.parametrize("sql", [
        "SELECT truncated_at FROM logs",
        "SELECT * FROM audit WHERE action = 'delete'",
        "SELECT 1 -- drop table users",
        'SELECT "drop" FROM t',
        "SELECT dropped_count FROM stats",
    ])
    def test_literals_comments_and_identifiers_are_not_keywords(self, policy, sql):
        """Keywords inside names, literals or comments do not block a read."""
        assert not policy.classify(sql).forbidden

    def test_first_listed_keyword_wins(self, policy):
        """When several keywords appear, the refusal names the first in the checked order."""
        assert policy.classify("DELETE FROM a; DROP TABLE b").matched_keyword == "drop"


class TestRequiredFilters:
    def test_unrestricted_caller_needs_nothing(self, policy, admin_caller):
        """Super admins are never asked for filters."""
        assert policy.required_filters(admin_caller, "SELECT * FROM users") == []

    def test_unprotected_tables_need_nothing(self, policy, diocese_caller):
        """Statements that touch no protected table pass as they are."""
        assert policy.required_filters(diocese_caller, "SELECT * FROM subject_areas") == []

    def test_missing_tenant_filter(self, policy):
        """A protected table without a diocese filter yields the exact description."""
        caller = CallerContext(tenant_id=7, role=Role.DIOCESE_MANAGER)
        assert policy.required_filters(caller, "SELECT AVG(score) FROM scores") == [tenant_filter_message(7)]
        assert tenant_filter_message(7).startswith("Query must include diocese_id = 7")

    @pytest.mark.parametrize("sql", [
        "SELECT COUNT(*) FROM users WHERE diocese_id = 43",
        "SELECT COUNT(*) FROM users WHERE diocese_id=43",
        "SELECT COUNT(*) FROM users u JOIN testing_centers tc ON tc.id = u.testing_center_id WHERE tc.diocese_id = 43",
        "SELECT COUNT(*) FROM users u JOIN dioceses d ON d.id = u.diocese_id WHERE d.id = 43",
        "SELECT COUNT(*) FROM users WHERE diocese_name = 'Tucson'",
    ])
    def test_accepted_tenant_filter_forms(self, policy, diocese_caller, sql):
        """Each historically accepted filter form satisfies the tenant check."""
        assert policy.required_filters(diocese_caller, sql) == []

    def test_other_tenant_id_is_not_accepted(self, policy, diocese_caller):
        """A filter on a different diocese is exact-matched, not substring-matched."""
        missing = policy.required_filters(diocese_caller, "SELECT * FROM users WHERE diocese_id = 430")
        assert missing == [tenant_filter_message(43)]

    def test_filter_inside_string_literal_is_ignored(self, policy, diocese_caller):
        """Filter text inside a literal does not count as a filter."""
        sql = "SELECT * FROM users WHERE username = 'diocese_id = 43'"
        assert policy.required_filters(diocese_caller, sql) == [tenant_filter_message(43)]

    @pytest.mark.parametrize("sql", [
        "SELECT * FROM users WHERE diocese_id = 43 AND testing_center_id = 51",
        "SELECT * FROM users u JOIN testing_centers tc ON tc.id = u.testing_center_id WHERE tc.diocese_id = 43 AND tc.id = 51",
        "SELECT * FROM users u JOIN testing_centers c ON c.id = u.testing_center_id WHERE c.diocese_id = 43 AND c.id = 51",
    ])
    def test_school_manager_filter_forms(self, policy, school_caller, sql):
        """School managers need both the diocese and the testing center filter."""
        assert policy.required_filters(school_caller, sql) == []

    def test_school_manager_missing_sub_tenant(self, policy, school_caller):
        """Only the missing testing center filter is reported."""
        missing = policy.required_filters(school_caller, "SELECT * FROM users WHERE diocese_id = 43")
        assert missing == [sub_tenant_filter_message(51)]

    def test_adding_one_filter_makes_check_pass(self, policy, diocese_caller):
        """The same statement passes once any accepted filter is added."""
        base = "SELECT u.id FROM users u"
        assert policy.required_filters(diocese_caller, base)
        assert policy.required_filters(diocese_caller, base + " WHERE u.diocese_id = 43") == []


class TestRoleMapping:
    @pytest.mark.parametrize("claim,expected", [
        (0, Role.SUPER_ADMIN),
        ("2", Role.DIOCESE_MANAGER),
        (3, Role.SCHOOL_MANAGER),
        ("ARK Admin", Role.SUPER_ADMIN),
        ("Diocese Executive", Role.DIOCESE_MANAGER),
        ("diocese admin", Role.DIOCESE_MANAGER),
        ("super_admin", Role.SUPER_ADMIN),
        ("teacher", Role.SCHOOL_MANAGER),
        (None, Role.SCHOOL_MANAGER),
        (99, Role.SCHOOL_MANAGER),
    ])
    def test_claims_map_to_roles(self, claim, expected):
        """Numeric ids, platform role names and unknowns map to a role."""
        assert role_from_claim(claim) == expected

    @pytest.mark.parametrize("claim", ["Student", "catechist  candidate"])
    def test_no_access_roles(self, claim):
        """Students and catechist candidates get no role at all."""
        assert role_from_claim(claim) is None


class TestProtectedTables:
    def test_referenced_protected_tables(self):
        """Quoted and bare table names are both detected."""
        policy = AccessPolicy(["Users", "scores"])
        assert policy.referenced_protected_tables('SELECT * FROM "users" JOIN scores ON true') == ["scores", "users"]


class TestPermissions:
    def test_matrix(self):
        """Diocese managers write users, school managers write students, nobody but admins deletes."""
        assert has_permission(Role.DIOCESE_MANAGER, Resource.USER, Permission.WRITE)
        assert not has_permission(Role.DIOCESE_MANAGER, Resource.STUDENT, Permission.WRITE)
        assert has_permission(Role.SCHOOL_MANAGER, Resource.STUDENT, Permission.WRITE)
        assert not has_permission(Role.SCHOOL_MANAGER, Resource.DIOCESE, Permission.READ)
        assert all(has_permission(Role.SUPER_ADMIN, r, Permission.DELETE) for r in Resource)
        assert not any(has_permission(Role.DIOCESE_MANAGER, r, Permission.DELETE) for r in Resource)

    def test_restriction_prompt(self, diocese_caller, school_caller, admin_caller):
        """The prompt block names the filters and the read-only resources for the role."""
        diocese = role_restrictions(diocese_caller)
        assert "diocese 43 (Tucson)" in diocese
        assert "Read-only for: diocese, student, test_results." in diocese
        assert "testing_center_id" not in diocese

        school = role_restrictions(school_caller)
        assert "testing_center_id = 51" in school
        assert "Read-only for: diocese, testing_center, user, test_results." in school

        assert "No diocese filter is required" in role_restrictions(admin_caller)
