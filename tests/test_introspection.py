"""Tests for catalog introspection and connection handling."""
import pytest
from sqlalchemy.exc import ProgrammingError

from arksql.core.errors import IntrospectionError
from arksql.db.connection import async_db_engines, describe_connection, dispose_engines, get_async_db_engine
from arksql.db.introspection import SchemaIntrospector, build_access_descriptor, format_schema, strip_explain_prefix

from tests.fakes import PROTECTED, TARGET_DB, FakeDatabase, FakeResult


class PgError(Exception):
    def __init__(self, pgerror):
        super().__init__(pgerror)
        self.pgerror = pgerror


def introspector(db: FakeDatabase, tenant_id=43) -> SchemaIntrospector:
    return SchemaIntrospector(TARGET_DB, PROTECTED, connection_factory=db, tenant_id=tenant_id)


class TestListTables:
    async def test_tables_with_columns_and_access(self, fake_db):
        """Every table carries its columns and how it is scoped to the tenant."""
        tables = {t.table_name: t for t in await introspector(fake_db).list_tables()}

        assert set(tables) == {"dioceses", "testing_centers", "users", "scores"}
        assert tables["users"].column_names() == ["id", "diocese_id", "username", "role"]
        assert tables["users"].columns[1].is_nullable
        assert not tables["users"].columns[0].is_nullable

        users = tables["users"].access
        assert users.requires_tenant_filter and users.has_direct_tenant_column
        assert users.example_filter_sql == "SELECT * FROM users t WHERE t.diocese_id = 43"
        assert not tables["dioceses"].access.requires_tenant_filter

        scores = tables["scores"].access
        assert scores.requires_tenant_filter and not scores.has_direct_tenant_column
        assert scores.example_filter_sql.endswith("WHERE tc.diocese_id = 43")
        # One connection per catalog query, each released
        assert fake_db.opened == fake_db.released == 2

    async def test_foreign_keys(self, fake_db):
        """Foreign keys come back as typed constraints."""
        (fk,) = await introspector(fake_db).list_foreign_keys()
        assert (fk.table_name, fk.column_name, fk.foreign_table_name, fk.foreign_column_name) == ("scores", "user_id", "users", "id")

    async def test_connection_failure_raises(self):
        """An unreachable database is an introspection error."""
        db = FakeDatabase()
        db.connect_error = OSError("Connection refused")
        with pytest.raises(IntrospectionError):
            await introspector(db).list_tables()

    async def test_catalog_error_raises(self):
        """SQL errors from the catalog are wrapped and the connection is released."""
        def denied(sql):
            raise ProgrammingError(sql, {}, PgError("permission denied"))

        db = FakeDatabase(denied, catalog=False)
        with pytest.raises(IntrospectionError):
            await introspector(db).list_tables()
        assert db.released == 1


class TestExplain:
    @pytest.mark.parametrize("sql,expected", [
        ("EXPLAIN ANALYZE SELECT 1", "SELECT 1"),
        ("explain select 1", "select 1"),
        ("  SELECT 1  ", "SELECT 1"),
    ])
    def test_strip_prefix(self, sql, expected):
        """An existing EXPLAIN prefix is removed before re-wrapping."""
        assert strip_explain_prefix(sql) == expected

    async def test_plan_only_and_parsed(self):
        """EXPLAIN never runs ANALYZE and a JSON string plan is decoded."""
        db = FakeDatabase(lambda sql: FakeResult([{"QUERY PLAN": '[{"Plan": {"Node Type": "Seq Scan"}}]'}]))
        plan = await introspector(db).explain("EXPLAIN ANALYZE SELECT * FROM users;")
        assert plan == [{"Plan": {"Node Type": "Seq Scan"}}]
        assert db.statements == ["EXPLAIN (FORMAT JSON) SELECT * FROM users"]


class TestAccessDescriptor:
    def test_hierarchy_join_paths(self):
        """Tables without diocese_id get the fixed hop list to testing_centers."""
        sections = build_access_descriptor("testing_sections", ["id", "testing_center_id"], PROTECTED, 7)
        assert sections.join_path_to_tenant == "Join with testing_centers"
        assert "JOIN testing_centers tc ON tc.id = ts.testing_center_id WHERE tc.diocese_id = 7" in sections.example_filter_sql

    def test_placeholder_without_tenant(self):
        """Without a tenant the example uses a bind placeholder."""
        centers = build_access_descriptor("testing_centers", ["id", "diocese_id"], PROTECTED)
        assert centers.example_filter_sql.endswith("t.diocese_id = :diocese_id")
        assert centers.join_path_to_tenant == "Direct access - contains diocese_id"


class TestFormatSchema:
    async def test_protected_tables_are_marked(self, fake_db):
        """The prompt description marks protected tables and lists foreign keys."""
        ins = introspector(fake_db)
        text = format_schema(await ins.list_tables(), await ins.list_foreign_keys())
        assert "Table: public.users [PROTECTED - Direct access - contains diocese_id]" in text
        assert "Table: public.dioceses\n" in text
        assert "  - username (text, NULL)" in text
        assert "  - scores.user_id -> users.id" in text


class TestConnection:
    def test_describe_connection_hides_credentials(self):
        """Only host and database are shown."""
        assert describe_connection(TARGET_DB) == "db.example.com:5432/ark"
        assert describe_connection("no-at-sign") == "?"

    async def test_one_engine_per_connection_string(self):
        """Engines are created lazily and reused."""
        first = get_async_db_engine("postgresql://u:p@one.example.com/db")
        assert get_async_db_engine("postgresql://u:p@one.example.com/db") is first
        assert get_async_db_engine("postgresql://u:p@two.example.com/db") is not first
        await dispose_engines()
        assert async_db_engines == {}

    def test_missing_connection_string(self):
        """An empty connection string is refused."""
        with pytest.raises(ValueError):
            get_async_db_engine("")
