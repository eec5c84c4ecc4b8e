"""Tests for the query execution gateway."""
import asyncio
import json

import pytest
from sqlalchemy.exc import DBAPIError, ProgrammingError

from arksql.cache import TTLCache
from arksql.core.errors import GatewayConnectionError
from arksql.gateway import QueryExecutionGateway, classify_db_error, extract_db_error_detail
from arksql.policy.access import CallerContext
from arksql.policy.roles import Role
from arksql.schemas.query import ExecutionStatus

from tests.fakes import TARGET_DB, FakeDatabase, FakeResult


class DriverError(Exception):
    def __init__(self, pgerror):
        super().__init__(pgerror)
        self.pgerror = pgerror


def failing(message: str):
    def handler(sql):
        raise ProgrammingError(sql, {}, DriverError(message))
    return handler


@pytest.fixture
def gateway_for(policy, execution_cache):
    """Builds a gateway over a given fake database."""
    def build(db: FakeDatabase) -> QueryExecutionGateway:
        return QueryExecutionGateway(policy, execution_cache, connection_factory=db, statement_timeout=5)
    return build


class TestRefusals:
    async def test_forbidden_statement_never_reaches_the_database(self, gateway_for, admin_caller, diocese_caller):
        """DROP is refused with the fixed message for every role, with zero database calls."""
        db = FakeDatabase()
        gateway = gateway_for(db)
        for caller in (admin_caller, diocese_caller):
            result = await gateway.run("DROP TABLE users;", TARGET_DB, caller)
            assert result.status == ExecutionStatus.FORBIDDEN
            assert result.message == "This action is not allowed DROP"
        assert db.statements == []
        assert db.opened == 0

    async def test_missing_tenant_filter_is_refused(self, gateway_for):
        """A protected table without the diocese filter is refused before execution."""
        db = FakeDatabase()
        caller = CallerContext(tenant_id=7, role=Role.DIOCESE_MANAGER)
        result = await gateway_for(db).run("SELECT AVG(score) FROM scores", TARGET_DB, caller)
        assert result.status == ExecutionStatus.POLICY_VIOLATION
        assert result.message.startswith("Query must include diocese_id = 7")
        assert db.statements == []

    async def test_refusals_are_not_cached(self, gateway_for, execution_cache, diocese_caller):
        """Only executed outcomes are stored."""
        await gateway_for(FakeDatabase()).run("DROP TABLE users", TARGET_DB, diocese_caller)
        assert len(execution_cache) == 0


class TestExecution:
    async def test_success_returns_rows(self, gateway_for, diocese_caller):
        """Rows, fields and row count come back in the result."""
        db = FakeDatabase(lambda sql: FakeResult([{"count": 10}]))
        result = await gateway_for(db).run("SELECT COUNT(*) FROM users WHERE diocese_id = 43", TARGET_DB, diocese_caller)
        assert result.ok
        assert result.rows.rows == [{"count": 10}]
        assert result.rows.fields == ["count"]
        assert result.rows.row_count == 1
        assert db.opened == db.released == 1

    async def test_sql_error_becomes_result(self, gateway_for, diocese_caller):
        """Ordinary SQL errors are returned, classified, never raised."""
        db = FakeDatabase(failing('column "nme" does not exist'))
        result = await gateway_for(db).run("SELECT nme FROM subject_areas", TARGET_DB, diocese_caller)
        assert result.status == ExecutionStatus.ERROR
        assert result.error_type == "DATABASE_UNDEFINED_COLUMN_ERROR"
        assert result.message == 'column "nme" does not exist'
        assert db.released == 1

    async def test_connection_failure_raises(self, gateway_for, diocese_caller):
        """Connection-level failures raise with a host hint and no credentials."""
        db = FakeDatabase()
        db.connect_error = OSError("Connection refused")
        with pytest.raises(GatewayConnectionError) as info:
            await gateway_for(db).run("SELECT 1", TARGET_DB, diocese_caller)
        assert info.value.connection_hint == "db.example.com:5432/ark"
        assert "secret" not in str(info.value)

    async def test_invalidated_connection_raises(self, gateway_for, diocese_caller):
        """A connection dropped mid-query is a connection failure, not a SQL error."""
        def dropped(sql):
            raise DBAPIError(sql, {}, DriverError("server closed the connection unexpectedly"), connection_invalidated=True)

        db = FakeDatabase(dropped)
        with pytest.raises(GatewayConnectionError):
            await gateway_for(db).run("SELECT 1", TARGET_DB, diocese_caller)
        assert db.released == 1

    async def test_run_text_wire_format(self, gateway_for, diocese_caller):
        """The text channel carries the row set as JSON, or the plain error text."""
        ok = await gateway_for(FakeDatabase(lambda sql: FakeResult([{"n": 2.0}]))).run_text("SELECT 2 AS n", TARGET_DB, diocese_caller)
        assert json.loads(ok) == {"command": "SELECT", "rowCount": 1, "fields": [{"name": "n"}], "rows": [{"n": 2}]}

        error = await gateway_for(FakeDatabase(failing("syntax error at or near \"FRM\""))).run_text("SELECT 3 FRM x", TARGET_DB, diocese_caller)
        assert error == 'syntax error at or near "FRM"'


class TestExecutionCache:
    async def test_identical_runs_hit_the_database_once(self, gateway_for, diocese_caller):
        """Two identical executions inside the TTL make one round trip and return equal payloads."""
        db = FakeDatabase(lambda sql: FakeResult([{"count": 3}]))
        gateway = gateway_for(db)
        sql = "SELECT COUNT(*) FROM users WHERE diocese_id = 43"
        first = await gateway.run(sql, TARGET_DB, diocese_caller)
        second = await gateway.run("  select COUNT(*)\n  from users   where diocese_id = 43 ", TARGET_DB, diocese_caller)
        assert len(db.user_statements) == 1
        assert second.cached and not first.cached
        assert second.rows == first.rows

    async def test_expired_entries_are_not_served(self, policy, diocese_caller):
        """After the TTL the statement runs again."""
        now = [0.0]
        cache = TTLCache(ttl_seconds=1, max_entries=10, clock=lambda: now[0])
        db = FakeDatabase(lambda sql: FakeResult([{"x": 1}]))
        gateway = QueryExecutionGateway(policy, cache, connection_factory=db)
        await gateway.run("SELECT 1 AS x", TARGET_DB, diocese_caller)
        now[0] = 1.5
        await gateway.run("SELECT 1 AS x", TARGET_DB, diocese_caller)
        assert len(db.user_statements) == 2

    async def test_errors_are_cached_too(self, gateway_for, diocese_caller):
        """A failing statement is not re-sent within the TTL."""
        db = FakeDatabase(failing("division by zero"))
        gateway = gateway_for(db)
        first = await gateway.run("SELECT 1/0", TARGET_DB, diocese_caller)
        second = await gateway.run("SELECT 1/0", TARGET_DB, diocese_caller)
        assert first.error_type == "DATABASE_NUMERIC_ERROR"
        assert second.cached
        assert len(db.user_statements) == 1

    @pytest.mark.parametrize("first_literal,second_literal", [("'ABC'", "'abc'"), ("'a  b'", "'a b'")])
    async def test_string_literals_are_part_of_the_key(self, gateway_for, diocese_caller, first_literal, second_literal):
        """Statements differing only inside a string literal both run."""
        db = FakeDatabase(lambda sql: FakeResult([{"hit": first_literal in sql}]))
        gateway = gateway_for(db)
        template = "SELECT name = {0} AS hit FROM dioceses WHERE name = {0}"
        first = await gateway.run(template.format(first_literal), TARGET_DB, diocese_caller)
        second = await gateway.run(template.format(second_literal), TARGET_DB, diocese_caller)
        assert len(db.user_statements) == 2
        assert not second.cached
        assert first.rows.rows == [{"hit": True}]
        assert second.rows.rows == [{"hit": False}]

    async def test_simultaneous_submissions_share_one_execution(self, gateway_for, diocese_caller):
        """An identical statement arriving while the first is still running waits for it."""
        db = FakeDatabase(lambda sql: FakeResult([{"count": 3}]))
        db.delay = 0.05
        gateway = gateway_for(db)
        sql = "SELECT COUNT(*) FROM users WHERE diocese_id = 43"

        first, second = await asyncio.gather(
            gateway.run(sql, TARGET_DB, diocese_caller),
            gateway.run(sql, TARGET_DB, diocese_caller),
        )

        assert len(db.user_statements) == 1
        assert [first.cached, second.cached] == [False, True]
        assert first.rows == second.rows
        assert gateway.in_flight == {}

    async def test_simultaneous_connection_failure_reaches_every_caller(self, gateway_for, execution_cache, diocese_caller):
        """A connection failure is raised to the joined caller too and nothing is cached."""
        db = FakeDatabase()
        db.connect_error = OSError("Connection refused")
        gateway = gateway_for(db)
        sql = "SELECT COUNT(*) FROM users WHERE diocese_id = 43"

        results = await asyncio.gather(
            gateway.run(sql, TARGET_DB, diocese_caller),
            gateway.run(sql, TARGET_DB, diocese_caller),
            return_exceptions=True,
        )

        assert all(isinstance(r, GatewayConnectionError) for r in results)
        assert len(execution_cache) == 0
        assert gateway.in_flight == {}


class TestErrorClassification:
    @pytest.mark.parametrize("message,expected", [
        ('column "x" does not exist', "DATABASE_UNDEFINED_COLUMN_ERROR"),
        ('relation "y" does not exist', "DATABASE_UNDEFINED_TABLE_ERROR"),
        ('syntax error at or near "FROM"', "DATABASE_SYNTAX_ERROR"),
        ("canceling statement due to statement timeout", "QUERY_TIMEOUT_ERROR"),
        ("division by zero", "DATABASE_NUMERIC_ERROR"),
        ("permission denied for table users", "DATABASE_PERMISSION_ERROR"),
        ("something else", "DATABASE_EXECUTION_ERROR"),
    ])
    def test_classify(self, message, expected):
        """Driver messages map to stable error types."""
        assert classify_db_error(message) == expected

    def test_detail_prefers_pgerror(self):
        """The driver's own message wins over SQLAlchemy's wrapper text."""
        error = ProgrammingError("SELECT", {}, DriverError('relation "y" does not exist'))
        assert extract_db_error_detail(error) == 'relation "y" does not exist'
