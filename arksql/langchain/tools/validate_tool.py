import logging
from typing import List, Optional, Type

from langchain_core.tools import BaseTool
from pydantic import BaseModel, Field

from arksql.langchain.tools.common import tool_error, tool_result
from arksql.langchain.validation import check_query_rules, verify_schema
from arksql.policy.access import AccessPolicy, CallerContext
from arksql.schemas.schema import SchemaTable

logger = logging.getLogger(__name__)


class ValidateQueryInput(BaseModel):
    sql: str = Field(description="The complete SQL query you intend to return.")


class ValidateQueryTool(BaseTool):
    """Runs the domain rule checker and, when a catalog snapshot is available, schema verification."""
    name: str = "validate_query"
    description: str = (
        "Checks a SQL query against the mandatory rules: diocese / testing center filters for the current user, "
        "role = 5 / role = 7 filters, NULL-safe score calculation, ids instead of names in GROUP BY / JOIN / WHERE, "
        "and that every table and column exists. Returns is_valid, errors and warnings. "
        "Call this on your final query before answering."
    )
    args_schema: Type[BaseModel] = ValidateQueryInput
    caller: CallerContext
    policy: AccessPolicy
    tables: Optional[List[SchemaTable]] = None

    async def _arun(self, sql: str, **kwargs) -> str:
        return self._run(sql)

    def _run(self, sql: str, **kwargs) -> str:
        log_prefix = f"[ValidateQueryTool] [Tenant: {self.caller.tenant_id}] "
        try:
            validation = check_query_rules(sql, self.caller, self.tables, self.policy)
            payload = validation.model_dump()
            if self.tables:
                verification = verify_schema(sql, self.tables)
                payload["schema_issues"] = verification.issues
                payload["alternative_suggestions"] = verification.alternatives
                if not verification.ok:
                    payload["is_valid"] = False
            logger.info(f"{log_prefix}is_valid={payload['is_valid']}, {len(payload['errors'])} errors, {len(payload['warnings'])} warnings.")
            return tool_result(payload)
        except Exception as e:
            logger.error(f"{log_prefix}Validation failed unexpectedly: {e}", exc_info=True)
            return tool_error("TOOL_INTERNAL_ERROR", f"Could not validate the query: {e}")
