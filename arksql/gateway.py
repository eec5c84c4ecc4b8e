import asyncio
import logging
import re
from typing import Dict, Optional, Tuple

import sqlparse
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from arksql.cache import TTLCache
from arksql.core.config import settings
from arksql.core.errors import GatewayConnectionError
from arksql.db.connection import ConnectionFactory, describe_connection, get_async_db_connection
from arksql.policy.access import AccessPolicy, CallerContext
from arksql.schemas.query import ExecutionResult, ExecutionStatus, RowSet

logger = logging.getLogger(__name__)

CONNECTION_KEY_LENGTH = 50


def sql_fingerprint(sql: str) -> str:
    """Stable fingerprint of a statement with literals and comments removed."""
    normalized_sql = sqlparse.format(sql, strip_comments=True, reindent=False, keyword_case='lower', identifier_case='lower', use_space_around_operators=False)
    normalized_sql = re.sub(r'\'.*?\'', '?', normalized_sql)
    normalized_sql = re.sub(r'\b\d+\.?\d*\b', '?', normalized_sql)
    return hex(hash(normalized_sql) & 0xffffffffffffffff)


def execution_cache_key(sql: str, connection_string: str) -> Tuple[str, str]:
    """Keywords lowercased and whitespace collapsed; string literals and identifiers kept exactly."""
    normalized_sql = sqlparse.format(sql, keyword_case='lower', strip_whitespace=True).strip()
    return normalized_sql, (connection_string or "")[:CONNECTION_KEY_LENGTH]


def extract_db_error_detail(e: Exception) -> str:
    """Most specific human-readable message available for a driver error."""
    orig = getattr(e, 'orig', None)
    if orig is not None and getattr(orig, 'pgerror', None):
        specific_detail = str(orig.pgerror).strip()
    elif orig is not None:
        specific_detail = str(orig).strip()
    elif e.__cause__:
        specific_detail = str(e.__cause__).strip()
    else:
        specific_detail = str(e).strip()
    # Drop the "(<class 'asyncpg...'>) " wrapper SQLAlchemy adds
    specific_detail = re.sub(r"^\(<class '[^']*'>\)\s*", "", specific_detail)
    specific_detail = re.sub(r"^[A-Za-z_]*Error:\s*", "", specific_detail)
    return specific_detail.replace('\n', ' ').strip()


def classify_db_error(message: str) -> str:
    lower_error_message = message.lower()
    if "column" in lower_error_message and "does not exist" in lower_error_message:
        return "DATABASE_UNDEFINED_COLUMN_ERROR"
    if "relation" in lower_error_message and "does not exist" in lower_error_message:
        return "DATABASE_UNDEFINED_TABLE_ERROR"
    if "syntax error" in lower_error_message:
        return "DATABASE_SYNTAX_ERROR"
    if "timeout" in lower_error_message or "canceling statement" in lower_error_message:
        return "QUERY_TIMEOUT_ERROR"
    if "division by zero" in lower_error_message:
        return "DATABASE_NUMERIC_ERROR"
    if "invalid input" in lower_error_message or "operator does not exist" in lower_error_message:
        return "DATABASE_TYPE_CONVERSION_ERROR"
    if "permission denied" in lower_error_message:
        return "DATABASE_PERMISSION_ERROR"
    if "connection" in lower_error_message:
        return "DATABASE_CONNECTION_ERROR"
    return "DATABASE_EXECUTION_ERROR"


class QueryExecutionGateway:
    """The single place a statement is executed.

    Order is fixed: forbidden-class check, tenant filters, cache, execute,
    store. Ordinary SQL failures come back as ``ExecutionResult`` values;
    only connection-level failures raise.
    """

    def __init__(
        self,
        policy: AccessPolicy,
        cache: TTLCache,
        connection_factory: ConnectionFactory = get_async_db_connection,
        statement_timeout: Optional[float] = None,
    ):
        self.policy = policy
        self.cache = cache
        self.connection_factory = connection_factory
        self.statement_timeout = statement_timeout or settings.SQL_EXECUTION_TIMEOUT_SECONDS
        # Executions still running, joined by identical submissions
        self.in_flight: Dict[Tuple[str, str], asyncio.Task] = {}

    async def run(self, sql: str, connection_string: str, caller: CallerContext) -> ExecutionResult:
        log_prefix = f"[Gateway] [Tenant: {caller.tenant_id}] "
        try:
            fingerprint = sql_fingerprint(sql)
        except Exception as fp_err:
            logger.warning(f"{log_prefix}Failed to generate SQL fingerprint: {fp_err}. Proceeding without fingerprint.")
            fingerprint = "N/A"

        classification = self.policy.classify(sql)
        if classification.forbidden:
            logger.warning(f"{log_prefix}Refused forbidden statement class '{classification.matched_keyword}' (Fingerprint: {fingerprint}).")
            self._audit(caller, fingerprint, ExecutionStatus.FORBIDDEN)
            return ExecutionResult(status=ExecutionStatus.FORBIDDEN, message=classification.refusal, error_type="FORBIDDEN_STATEMENT")

        missing = self.policy.required_filters(caller, sql)
        if missing:
            # Synthesis should already have scoped the query; reaching this is an upstream defect
            logger.warning(f"{log_prefix}[PolicyViolation] Missing filters {missing} (Fingerprint: {fingerprint}). SQL: {sql[:200]}...")
            self._audit(caller, fingerprint, ExecutionStatus.POLICY_VIOLATION)
            return ExecutionResult(status=ExecutionStatus.POLICY_VIOLATION, message=missing[0], error_type="ACCESS_POLICY_ERROR")

        cache_key = execution_cache_key(sql, connection_string)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug(f"{log_prefix}Serving cached outcome (Fingerprint: {fingerprint}).")
            return cached.model_copy(update={"cached": True})

        task = self.in_flight.get(cache_key)
        if task is not None:
            logger.debug(f"{log_prefix}Joining in-flight execution (Fingerprint: {fingerprint}).")
            outcome = await asyncio.shield(task)
            return outcome.model_copy(update={"cached": True})

        task = asyncio.ensure_future(self._execute(sql, connection_string, log_prefix, fingerprint))
        self.in_flight[cache_key] = task
        task.add_done_callback(lambda done: self._finish(cache_key, done))
        outcome = await asyncio.shield(task)
        self._audit(caller, fingerprint, outcome.status)
        return outcome

    def _finish(self, cache_key: Tuple[str, str], task: asyncio.Task) -> None:
        self.in_flight.pop(cache_key, None)
        if task.cancelled():
            return
        # Connection failures reach every awaiting caller and are never cached
        if task.exception() is None:
            self.cache.set(cache_key, task.result())

    async def run_text(self, sql: str, connection_string: str, caller: CallerContext) -> str:
        """Wire format for the UI: serialized row set or the plain error text."""
        outcome = await self.run(sql, connection_string, caller)
        return outcome.to_wire()

    async def _execute(self, sql: str, connection_string: str, log_prefix: str, fingerprint: str) -> ExecutionResult:
        logger.info(f"{log_prefix}Executing SQL (Fingerprint: {fingerprint}) on {describe_connection(connection_string)}.")
        try:
            async with self.connection_factory(connection_string) as conn:
                try:
                    result = await asyncio.wait_for(conn.exec_driver_sql(sql), timeout=self.statement_timeout)
                    if result.returns_rows:
                        fields = list(result.keys())
                        rows = [dict(row) for row in result.mappings().all()]
                    else:
                        fields, rows = [], []
                    command = (sql.strip().split(None, 1)[0] if sql.strip() else "SELECT").upper()
                    row_count = len(rows) if result.returns_rows else max(result.rowcount, 0)
                    logger.info(f"{log_prefix}SQL execution successful. {row_count} rows.")
                    return ExecutionResult(
                        status=ExecutionStatus.SUCCESS,
                        rows=RowSet(command=command, row_count=row_count, fields=fields, rows=rows),
                    )
                except asyncio.TimeoutError:
                    error_msg = f"Database query exceeded the timeout limit ({self.statement_timeout} seconds)."
                    logger.error(f"{log_prefix}{error_msg} SQL: {sql[:200]}...")
                    return ExecutionResult(status=ExecutionStatus.ERROR, message=error_msg, error_type="QUERY_TIMEOUT_ERROR")
                except DBAPIError as e:
                    if e.connection_invalidated:
                        raise
                    return self._sql_error(e, sql, log_prefix)
                except SQLAlchemyError as e:
                    return self._sql_error(e, sql, log_prefix)
        except (DBAPIError, OSError) as e:
            # Connect failures and connections dropped mid-query; the context manager has released it
            detail = extract_db_error_detail(e)
            logger.error(f"{log_prefix}Connection-level failure on {describe_connection(connection_string)}: {detail}", exc_info=True)
            raise GatewayConnectionError(f"Could not reach the database: {detail}", describe_connection(connection_string)) from e

    def _sql_error(self, e: Exception, sql: str, log_prefix: str) -> ExecutionResult:
        detail = extract_db_error_detail(e)
        error_type = classify_db_error(detail)
        logger.warning(f"{log_prefix}SQL execution error ({error_type}): {detail}")
        logger.debug(f"{log_prefix}Failed SQL: {sql[:500]}...")
        return ExecutionResult(status=ExecutionStatus.ERROR, message=detail, error_type=error_type)

    @staticmethod
    def _audit(caller: CallerContext, fingerprint: str, status: ExecutionStatus) -> None:
        logger.info(
            f"SQL_GATEWAY_AUDIT|tenant:{caller.tenant_id}|role:{caller.role.value}|"
            f"fingerprint:{fingerprint}|outcome:{status.value}"
        )
