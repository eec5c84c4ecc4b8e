import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from arksql.core.errors import IntrospectionError
from arksql.db.connection import ConnectionFactory, describe_connection, get_async_db_connection
from arksql.policy.access import TENANT_COLUMN
from arksql.schemas.schema import AccessDescriptor, Column, ForeignKeyConstraint, SchemaTable

logger = logging.getLogger(__name__)

_EXPLAIN_ANALYZE_PREFIX = re.compile(r"^\s*explain\s+analyze\s+(.*)", re.IGNORECASE | re.DOTALL)
_EXPLAIN_PREFIX = re.compile(r"^\s*explain\s+(.*)", re.IGNORECASE | re.DOTALL)

TABLES_QUERY = """
SELECT table_name, table_schema
FROM information_schema.tables
WHERE table_schema NOT IN ('pg_catalog', 'information_schema')
ORDER BY table_schema, table_name
"""

COLUMNS_QUERY = """
SELECT table_schema, table_name, column_name, data_type, is_nullable
FROM information_schema.columns
WHERE table_schema NOT IN ('pg_catalog', 'information_schema')
ORDER BY table_schema, table_name, ordinal_position
"""

FOREIGN_KEYS_QUERY = """
SELECT
    tc.constraint_name,
    tc.table_schema,
    tc.table_name,
    kcu.column_name,
    ccu.table_schema AS foreign_table_schema,
    ccu.table_name AS foreign_table_name,
    ccu.column_name AS foreign_column_name
FROM information_schema.table_constraints AS tc
JOIN information_schema.key_column_usage AS kcu
    ON tc.constraint_name = kcu.constraint_name
    AND tc.table_schema = kcu.table_schema
JOIN information_schema.constraint_column_usage AS ccu
    ON ccu.constraint_name = tc.constraint_name
WHERE tc.constraint_type = 'FOREIGN KEY'
ORDER BY tc.table_name, kcu.column_name
"""

INDEX_USAGE_QUERY = """
SELECT schemaname, relname, indexrelname, idx_scan, idx_tup_read, idx_tup_fetch
FROM pg_stat_user_indexes
ORDER BY schemaname, relname, indexrelname
"""

INDEXES_QUERY = """
SELECT indexname, tablename, schemaname, indexdef
FROM pg_indexes
WHERE schemaname NOT IN ('pg_catalog', 'information_schema')
ORDER BY schemaname, tablename, indexname
"""

TABLE_STATS_QUERY = """
SELECT
    relname AS table_name,
    n_live_tup AS row_count,
    pg_total_relation_size(relid) AS total_size,
    pg_relation_size(relid) AS table_size,
    pg_indexes_size(relid) AS indexes_size,
    last_vacuum,
    last_analyze
FROM pg_stat_user_tables
ORDER BY total_size DESC
"""

COLUMN_STATS_QUERY = """
SELECT
    attname AS column_name,
    n_distinct::float AS n_distinct,
    null_frac,
    avg_width,
    most_common_vals::text AS most_common_vals,
    most_common_freqs::text AS most_common_freqs
FROM pg_stats
WHERE tablename = :table_name
ORDER BY attname
"""

DETAILED_INDEX_STATS_QUERY = """
SELECT
    s.relname AS table_name,
    s.indexrelname AS index_name,
    s.idx_scan AS index_scans,
    s.idx_tup_read AS tuples_read,
    s.idx_tup_fetch AS tuples_fetched,
    pg_relation_size(s.indexrelid) AS index_size,
    i.indisunique AS is_unique,
    i.indisprimary AS is_primary
FROM pg_stat_user_indexes s
JOIN pg_index i ON i.indexrelid = s.indexrelid
WHERE (CAST(:table_name AS text) IS NULL OR s.relname = CAST(:table_name AS text))
ORDER BY s.idx_scan DESC
"""

# Fixed hop lookup from a table to testing_centers.diocese_id
_JOIN_PATHS = {
    "testing_centers": "Direct access - contains diocese_id",
    "testing_sections": "Join with testing_centers",
    "testing_section_students": "Join with testing_sections -> testing_centers",
}
_DEFAULT_JOIN_PATH = "Join with testing_section_students -> testing_sections -> testing_centers"


def strip_explain_prefix(sql: str) -> str:
    """Remove a leading EXPLAIN / EXPLAIN ANALYZE so the statement can be re-wrapped."""
    for pattern in (_EXPLAIN_ANALYZE_PREFIX, _EXPLAIN_PREFIX):
        match = pattern.match(sql)
        if match:
            return match.group(1).strip()
    return sql.strip()


def build_access_descriptor(table_name: str, column_names: Iterable[str], protected_tables: Iterable[str], tenant_id: Optional[int] = None) -> AccessDescriptor:
    protected = {t.lower() for t in protected_tables}
    has_direct = TENANT_COLUMN in set(column_names)
    placeholder = str(tenant_id) if tenant_id is not None else ":diocese_id"
    if has_direct:
        join_path = _JOIN_PATHS["testing_centers"] if table_name == "testing_centers" else "Direct access - contains diocese_id"
        example = f"SELECT * FROM {table_name} t WHERE t.diocese_id = {placeholder}"
    else:
        join_path = _JOIN_PATHS.get(table_name, _DEFAULT_JOIN_PATH)
        if table_name == "testing_sections":
            example = (
                f"SELECT ts.* FROM testing_sections ts "
                f"JOIN testing_centers tc ON tc.id = ts.testing_center_id WHERE tc.diocese_id = {placeholder}"
            )
        elif table_name == "testing_section_students":
            example = (
                f"SELECT tss.* FROM testing_section_students tss "
                f"JOIN testing_sections ts ON ts.id = tss.testing_section_id "
                f"JOIN testing_centers tc ON tc.id = ts.testing_center_id WHERE tc.diocese_id = {placeholder}"
            )
        else:
            singular = table_name[:-1] if table_name.endswith("s") else table_name
            example = (
                f"SELECT t.* FROM {table_name} t "
                f"JOIN testing_section_students tss ON tss.{singular}_id = t.id "
                f"JOIN testing_sections ts ON ts.id = tss.testing_section_id "
                f"JOIN testing_centers tc ON tc.id = ts.testing_center_id WHERE tc.diocese_id = {placeholder}"
            )
    return AccessDescriptor(
        requires_tenant_filter=table_name.lower() in protected,
        join_path_to_tenant=join_path,
        has_direct_tenant_column=has_direct,
        example_filter_sql=example,
    )


class SchemaIntrospector:
    """Catalog reader for one target database.

    Each public call opens its own connection and releases it on every path.
    The catalog is authoritative; anything returned here is a snapshot.
    """

    def __init__(
        self,
        connection_string: str,
        protected_tables: Iterable[str],
        connection_factory: ConnectionFactory = get_async_db_connection,
        tenant_id: Optional[int] = None,
    ):
        self.connection_string = connection_string
        self.protected_tables = list(protected_tables)
        self.connection_factory = connection_factory
        self.tenant_id = tenant_id

    async def _fetch(self, sql: str, params: Optional[Dict[str, Any]] = None, label: str = "catalog query", raw: bool = False) -> List[Dict[str, Any]]:
        try:
            async with self.connection_factory(self.connection_string) as conn:
                if raw:
                    # Caller-supplied SQL must not be scanned for bind parameters
                    result = await conn.exec_driver_sql(sql)
                else:
                    result = await conn.execute(text(sql), params or {})
                return [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as e:
            logger.error(f"[Introspector] {label} failed on {describe_connection(self.connection_string)}: {e}")
            raise IntrospectionError(f"Error running {label}: {e}") from e
        except OSError as e:
            logger.error(f"[Introspector] Could not connect to {describe_connection(self.connection_string)}: {e}")
            raise IntrospectionError(f"Error connecting for {label}: {e}") from e

    async def list_tables(self) -> List[SchemaTable]:
        table_rows = await self._fetch(TABLES_QUERY, label="table listing")
        column_rows = await self._fetch(COLUMNS_QUERY, label="column listing")

        columns_by_table: Dict[tuple, List[Column]] = {}
        for row in column_rows:
            key = (row["table_schema"], row["table_name"])
            columns_by_table.setdefault(key, []).append(
                Column(name=row["column_name"], data_type=row["data_type"], is_nullable=row["is_nullable"] == "YES")
            )

        tables: List[SchemaTable] = []
        for row in table_rows:
            key = (row["table_schema"], row["table_name"])
            columns = columns_by_table.get(key, [])
            tables.append(SchemaTable(
                table_name=row["table_name"],
                schema_name=row["table_schema"],
                columns=columns,
                access=build_access_descriptor(row["table_name"], [c.name for c in columns], self.protected_tables, self.tenant_id),
            ))
        logger.info(f"[Introspector] Listed {len(tables)} tables.")
        return tables

    async def list_foreign_keys(self) -> List[ForeignKeyConstraint]:
        rows = await self._fetch(FOREIGN_KEYS_QUERY, label="foreign key listing")
        return [ForeignKeyConstraint(**row) for row in rows]

    async def explain(self, sql: str) -> Any:
        """Plan-only EXPLAIN (FORMAT JSON) of ``sql``."""
        statement = strip_explain_prefix(sql).rstrip(";")
        rows = await self._fetch(f"EXPLAIN (FORMAT JSON) {statement}", label="EXPLAIN", raw=True)
        if not rows:
            return None
        plan = rows[0].get("QUERY PLAN")
        if isinstance(plan, str):
            plan = json.loads(plan)
        return plan

    async def index_usage(self) -> List[Dict[str, Any]]:
        return await self._fetch(INDEX_USAGE_QUERY, label="index usage statistics")

    async def list_indexes(self) -> List[Dict[str, Any]]:
        return await self._fetch(INDEXES_QUERY, label="index listing")

    async def table_stats(self) -> List[Dict[str, Any]]:
        return await self._fetch(TABLE_STATS_QUERY, label="table statistics")

    async def column_stats(self, table_name: str) -> List[Dict[str, Any]]:
        return await self._fetch(COLUMN_STATS_QUERY, {"table_name": table_name}, label="column statistics")

    async def detailed_index_stats(self, table_name: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self._fetch(DETAILED_INDEX_STATS_QUERY, {"table_name": table_name}, label="detailed index statistics")


def format_schema(tables: List[SchemaTable], foreign_keys: Optional[List[ForeignKeyConstraint]] = None) -> str:
    """Plain-text schema description for prompts."""
    lines: List[str] = []
    for table in tables:
        header = f"Table: {table.schema_name}.{table.table_name}"
        if table.access and table.access.requires_tenant_filter:
            header += f" [PROTECTED - {table.access.join_path_to_tenant}]"
        lines.append(header)
        for column in table.columns:
            nullable = "NULL" if column.is_nullable else "NOT NULL"
            lines.append(f"  - {column.name} ({column.data_type}, {nullable})")
    if foreign_keys:
        lines.append("")
        lines.append("Foreign keys:")
        for fk in foreign_keys:
            lines.append(f"  - {fk.table_name}.{fk.column_name} -> {fk.foreign_table_name}.{fk.foreign_column_name}")
    return "\n".join(lines)
