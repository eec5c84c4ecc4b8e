import logging
from typing import Any, Dict, List, Literal, Type

from langchain_core.tools import BaseTool
from pydantic import BaseModel, Field
from rapidfuzz import fuzz, process as rapidfuzz_process
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from arksql.db.connection import ConnectionFactory, get_async_db_connection
from arksql.langchain.tools.common import tool_error, tool_result
from arksql.policy.access import CallerContext
from arksql.utils import normalize_text

logger = logging.getLogger(__name__)

DIOCESE_NAMES_QUERY = "SELECT id, name FROM dioceses"
SCHOOL_NAMES_QUERY = "SELECT id, name, diocese_id FROM testing_centers"
SCOPED_SCHOOL_NAMES_QUERY = "SELECT id, name, diocese_id FROM testing_centers WHERE diocese_id = :diocese_id"


# --- Input Schema ---
class NameResolverInput(BaseModel):
    name_candidates: List[str] = Field(description="Diocese or school names exactly as the user wrote them.")
    entity: Literal["diocese", "school"] = Field(default="school", description="'diocese' for dioceses, 'school' for testing centers.")


# --- Tool Implementation ---
class TenantNameResolverTool(BaseTool):
    """Resolves user-provided diocese / school names to the stored name and id.

    Resolution is exact after trimming, collapsing whitespace and lowercasing.
    Fuzzy scores are only used to suggest candidates when nothing matches; a
    suggestion never resolves a name.
    """
    name: str = "resolve_name"
    description: str = (
        "Resolves diocese or school names mentioned by the user to the exact stored name and id. "
        "Use this before filtering on a named diocese or school. Names that do not match exactly come back "
        "as 'not_found' with suggestions; ask the user instead of guessing."
    )
    args_schema: Type[BaseModel] = NameResolverInput
    caller: CallerContext
    connection_string: str
    connection_factory: ConnectionFactory = get_async_db_connection
    suggestion_limit: int = 3
    suggestion_cutoff: int = 70

    async def _load_names(self, entity: str) -> List[Dict[str, Any]]:
        if entity == "diocese":
            sql, params = DIOCESE_NAMES_QUERY, {}
        elif self.caller.is_unrestricted:
            sql, params = SCHOOL_NAMES_QUERY, {}
        else:
            sql, params = SCOPED_SCHOOL_NAMES_QUERY, {"diocese_id": self.caller.tenant_id}
        async with self.connection_factory(self.connection_string) as conn:
            result = await conn.execute(text(sql), params)
            return [dict(row) for row in result.mappings().all()]

    def resolve(self, name_candidates: List[str], rows: List[Dict[str, Any]], entity: str) -> Dict[str, Any]:
        by_key: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            by_key.setdefault(normalize_text(str(row["name"])), row)

        choices = [str(row["name"]) for row in rows]
        resolution: Dict[str, Any] = {}
        for candidate in name_candidates:
            row = by_key.get(normalize_text(candidate))
            if row is not None:
                resolution[candidate] = {"status": "found", "entity": entity, "id": row["id"], "name": row["name"]}
                continue
            suggestions = rapidfuzz_process.extract(
                candidate,
                choices,
                scorer=fuzz.WRatio,
                processor=normalize_text,
                limit=self.suggestion_limit,
                score_cutoff=self.suggestion_cutoff,
            )
            resolution[candidate] = {
                "status": "not_found",
                "entity": entity,
                "suggestions": [name for name, _score, _idx in suggestions],
            }
        return {"resolution_results": resolution}

    async def _arun(self, name_candidates: List[str], entity: str = "school", **kwargs) -> str:
        log_prefix = f"[Tenant: {self.caller.tenant_id}] [NameResolver] "
        logger.info(f"{log_prefix}Resolving {len(name_candidates)} {entity} names: {name_candidates[:5]}")
        try:
            rows = await self._load_names(entity)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"{log_prefix}Could not load {entity} names: {e}")
            return tool_error("DATABASE_EXECUTION_ERROR", f"Could not load {entity} names: {e}")
        results = self.resolve(name_candidates, rows, entity)
        found = sum(1 for r in results["resolution_results"].values() if r["status"] == "found")
        logger.info(f"{log_prefix}Resolved {found}/{len(name_candidates)} names.")
        return tool_result(results)

    def _run(self, *args, **kwargs) -> str:
        raise NotImplementedError("resolve_name only supports async execution.")
