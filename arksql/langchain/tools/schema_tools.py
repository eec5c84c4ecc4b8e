import logging
from typing import List, Optional, Type

from langchain_core.tools import BaseTool
from pydantic import BaseModel, Field

from arksql.core.errors import IntrospectionError
from arksql.db.introspection import SchemaIntrospector
from arksql.langchain.tools.common import tool_error, tool_result

logger = logging.getLogger(__name__)


# --- Input Schemas ---
class NoArgs(BaseModel):
    pass


class ListTablesInput(BaseModel):
    table_names: Optional[List[str]] = Field(default=None, description="Only describe these tables. Omit to list every table.")


class ExplainInput(BaseModel):
    sql: str = Field(description="The SELECT statement to explain. Do not include EXPLAIN yourself.")


class TableStatsInput(BaseModel):
    table_name: Optional[str] = Field(default=None, description="Table to get column and index statistics for. Omit for all tables.")


# --- Tool Implementations ---
class IntrospectorTool(BaseTool):
    """Shared plumbing for tools that read the catalog of the target database."""
    introspector: SchemaIntrospector

    async def _guarded(self, label: str, coro) -> str:
        try:
            return tool_result(await coro)
        except IntrospectionError as e:
            logger.warning(f"[{self.name}] {label} failed: {e}")
            return tool_error("DATABASE_EXECUTION_ERROR", str(e))
        except Exception as e:
            logger.error(f"[{self.name}] Unexpected failure during {label}: {e}", exc_info=True)
            return tool_error("TOOL_INTERNAL_ERROR", f"{label} failed: {e}")

    def _run(self, *args, **kwargs) -> str:
        raise NotImplementedError(f"{self.name} only supports async execution.")


class ListTablesTool(IntrospectorTool):
    name: str = "list_tables"
    description: str = (
        "Lists tables with their columns, types and nullability, and for each table whether it is "
        "protected and how it joins to testing_centers.diocese_id. Pass table_names to limit the output."
    )
    args_schema: Type[BaseModel] = ListTablesInput

    async def _list(self, table_names: Optional[List[str]]):
        tables = await self.introspector.list_tables()
        if table_names:
            wanted = {t.lower() for t in table_names}
            tables = [t for t in tables if t.table_name.lower() in wanted]
        return [t.model_dump() for t in tables]

    async def _arun(self, table_names: Optional[List[str]] = None, **kwargs) -> str:
        return await self._guarded("table listing", self._list(table_names))


class ExplainQueryTool(IntrospectorTool):
    name: str = "explain_query"
    description: str = "Returns the PostgreSQL query plan (EXPLAIN FORMAT JSON, not executed) for a SELECT statement."
    args_schema: Type[BaseModel] = ExplainInput

    async def _arun(self, sql: str, **kwargs) -> str:
        return await self._guarded("EXPLAIN", self.introspector.explain(sql))


class IndexUsageTool(IntrospectorTool):
    name: str = "index_usage"
    description: str = "Returns scan counts for every user index. Useful to see which indexes a join can use."
    args_schema: Type[BaseModel] = NoArgs

    async def _arun(self, **kwargs) -> str:
        return await self._guarded("index usage", self.introspector.index_usage())


class ListIndexesTool(IntrospectorTool):
    name: str = "list_indexes"
    description: str = "Lists every index with its table and definition."
    args_schema: Type[BaseModel] = NoArgs

    async def _arun(self, **kwargs) -> str:
        return await self._guarded("index listing", self.introspector.list_indexes())


class TableStatsTool(IntrospectorTool):
    name: str = "table_stats"
    description: str = (
        "Without table_name: row counts and sizes of every table. "
        "With table_name: per-column statistics (distinct values, null fraction) and index statistics for that table."
    )
    args_schema: Type[BaseModel] = TableStatsInput

    async def _stats(self, table_name: Optional[str]):
        if not table_name:
            return await self.introspector.table_stats()
        return {
            "table_name": table_name,
            "columns": await self.introspector.column_stats(table_name),
            "indexes": await self.introspector.detailed_index_stats(table_name),
        }

    async def _arun(self, table_name: Optional[str] = None, **kwargs) -> str:
        return await self._guarded("table statistics", self._stats(table_name))


class ForeignKeysTool(IntrospectorTool):
    name: str = "foreign_keys"
    description: str = "Lists every foreign key (table.column -> foreign_table.foreign_column). Use it to find join columns."
    args_schema: Type[BaseModel] = NoArgs

    async def _list(self):
        return [fk.model_dump() for fk in await self.introspector.list_foreign_keys()]

    async def _arun(self, **kwargs) -> str:
        return await self._guarded("foreign key listing", self._list())


def get_schema_tools(introspector: SchemaIntrospector) -> List[BaseTool]:
    return [
        ListTablesTool(introspector=introspector),
        ExplainQueryTool(introspector=introspector),
        IndexUsageTool(introspector=introspector),
        ListIndexesTool(introspector=introspector),
        TableStatsTool(introspector=introspector),
        ForeignKeysTool(introspector=introspector),
    ]
