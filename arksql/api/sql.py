import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from arksql.core.config import settings
from arksql.core.errors import GatewayConnectionError, IntrospectionError, SynthesisError
from arksql.db.introspection import SchemaIntrospector
from arksql.langchain.validation import check_query_rules, verify_schema
from arksql.policy.access import CallerContext
from arksql.schemas.chat import (
    CorrectQueryRequest,
    CorrectQueryResponse,
    RunSqlRequest,
    RunSqlResponse,
    ValidateQueryRequest,
    ValidateQueryResponse,
)
from arksql.security import get_current_caller
from arksql.services import ServiceContainer, get_services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/run-sql", response_model=RunSqlResponse, tags=["sql"])
async def run_sql(
    request: RunSqlRequest,
    caller: CallerContext = Depends(get_current_caller),
    services: ServiceContainer = Depends(get_services),
):
    """Execute a statement through the gateway and return the textual result."""
    if not request.sql or not request.connectionString:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="SQL query and connection string are required")
    try:
        result = await services.gateway.run_text(request.sql, request.connectionString, caller)
    except GatewayConnectionError as e:
        logger.error(f"[RunSql] [Tenant: {caller.tenant_id}] Connection failure: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Could not connect to the database ({e.connection_hint or 'unknown host'}).",
        )
    return RunSqlResponse(result=result)


@router.post("/correct-query", response_model=CorrectQueryResponse, tags=["sql"])
async def correct_query(
    request: CorrectQueryRequest,
    x_connection_string: Optional[str] = Header(None),
    caller: CallerContext = Depends(get_current_caller),
    services: ServiceContainer = Depends(get_services),
):
    """One-shot correction. Without an error message the statement is run first to obtain one."""
    if not request.sqlCode:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No SQL code provided")

    error = request.error
    connection_string = x_connection_string or settings.TARGET_DATABASE_URL
    try:
        if not error and connection_string:
            outcome = await services.gateway.run(request.sqlCode, connection_string, caller)
            if outcome.ok:
                return CorrectQueryResponse(correctedSql=request.sqlCode)
            error = outcome.message
        corrected = await services.corrector.correct(request.sqlCode, error)
    except (SynthesisError, GatewayConnectionError) as e:
        logger.error(f"[CorrectQuery] [Tenant: {caller.tenant_id}] Error correcting query: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Error correcting query")
    return CorrectQueryResponse(correctedSql=corrected)


@router.post("/validate-query", response_model=ValidateQueryResponse, tags=["sql"])
async def validate_query(
    request: ValidateQueryRequest,
    x_connection_string: Optional[str] = Header(None),
    caller: CallerContext = Depends(get_current_caller),
    services: ServiceContainer = Depends(get_services),
):
    """Domain rule check; with a reachable database, table and column names are verified as well."""
    tables = []
    connection_string = x_connection_string or settings.TARGET_DATABASE_URL
    if connection_string and request.sql.strip():
        introspector = SchemaIntrospector(
            connection_string,
            services.policy.protected_tables,
            connection_factory=services.connection_factory,
            tenant_id=caller.tenant_id,
        )
        try:
            tables = await introspector.list_tables()
        except IntrospectionError as e:
            logger.warning(f"[ValidateQuery] Schema unavailable, checking rules only: {e}")

    validation = check_query_rules(request.sql, caller, tables or None, services.policy)
    response = ValidateQueryResponse(**validation.model_dump())
    if tables:
        verification = verify_schema(request.sql, tables)
        response.schema_issues = verification.issues
        response.alternative_suggestions = verification.alternatives
        response.is_valid = response.is_valid and verification.ok
    return response
