"""Deterministic checks run on generated SQL before it is handed to the gateway.

``check_query_rules`` enforces the domain conventions (score formula, ids over
names, role filters, tenant filters). ``verify_schema`` compares the tables and
columns a statement mentions against the live catalog.
"""
import logging
from typing import Dict, Iterator, List, Optional, Sequence

from pydantic import BaseModel, Field

from arksql.core.config import settings
from arksql.policy.access import (
    AccessPolicy,
    CallerContext,
    sub_tenant_filter_message,
    tenant_filter_message,
)
from arksql.policy.sql_scanner import (
    NUMBER,
    OPERATOR,
    QUOTED,
    WORD,
    SqlToken,
    cte_names,
    equality_comparisons,
    introduces_table,
    table_aliases,
    tokenize,
    words,
)
from arksql.prompt_references import ROLE_TYPES, SCORE_RATIO_EXPRESSION
from arksql.schemas.query import QueryValidationResult
from arksql.schemas.schema import SchemaTable

logger = logging.getLogger(__name__)

# Tables holding rows for both students and teachers
ROLE_SCOPED_TABLES = {"testing_section_students", "user_answers"}

# Table -> table it has to be joined through to reach the diocese
REQUIRED_JOINS: Dict[str, str] = {
    "testing_section_students": "testing_sections",
    "testing_sections": "testing_centers",
}

_CLAUSE_WORDS = {
    "select": "SELECT",
    "from": "FROM",
    "where": "WHERE",
    "group by": "GROUP BY",
    "order by": "ORDER BY",
    "having": "HAVING",
    "on": "JOIN",
    "distinct": "DISTINCT",
    "limit": "LIMIT",
}
# Clauses in which a display name must not be used
_ID_ONLY_CLAUSES = {"GROUP BY", "JOIN", "WHERE", "DISTINCT"}


class ColumnRef(BaseModel):
    qualifier: Optional[str]
    column: str
    clause: str


class SchemaVerification(BaseModel):
    """Outcome of comparing a statement with the catalog."""
    issues: List[str] = Field(default_factory=list)
    alternatives: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def render(self) -> str:
        if self.ok:
            return "All referenced tables and columns exist."
        return "\n".join(f"- {line}" for line in self.issues + self.alternatives)


def is_name_column(column: str) -> bool:
    return column == "name" or column == "title" or column.endswith("_name")


def column_refs(tokens: List[SqlToken]) -> Iterator[ColumnRef]:
    """Every identifier that looks like a column, tagged with the clause it sits in."""
    clause = ""
    in_table_list = False
    depth = 0
    distinct_depth: Optional[int] = None
    for i, token in enumerate(tokens):
        if token.value == "(":
            depth += 1
            continue
        if token.value == ")":
            depth -= 1
            if distinct_depth is not None and depth < distinct_depth:
                # End of an aggregate like COUNT(DISTINCT x)
                clause, distinct_depth = "SELECT", None
            continue
        if token.kind == WORD and (token.value in _CLAUSE_WORDS or introduces_table(token.value)):
            in_table_list = introduces_table(token.value)
            clause = "FROM" if in_table_list else _CLAUSE_WORDS[token.value]
            if token.value == "distinct" and i > 0 and tokens[i - 1].value == "(":
                distinct_depth = depth
            continue
        if token.kind not in (WORD, QUOTED) or in_table_list:
            continue
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None
        prev = tokens[i - 1] if i > 0 else None
        if nxt is not None and nxt.value in (".", "("):
            continue
        if prev is not None and prev.value == ".":
            qualifier = tokens[i - 2].value if i >= 2 else None
            yield ColumnRef(qualifier=qualifier, column=token.value, clause=clause)
        elif token.kind == QUOTED or "_" in token.value or token.value in ("name", "title", "id", "role"):
            yield ColumnRef(qualifier=None, column=token.value, clause=clause)


def verify_schema(sql: str, tables: Sequence[SchemaTable]) -> SchemaVerification:
    """Tables from FROM/JOIN and their qualified columns must exist in ``tables``."""
    catalog: Dict[str, List[str]] = {t.table_name.lower(): [c.lower() for c in t.column_names()] for t in tables}
    tokens = tokenize(sql)
    aliases = table_aliases(tokens)
    derived = set(cte_names(tokens))
    result = SchemaVerification()

    referenced = sorted({name for name in aliases.values() if name not in derived})
    for table in referenced:
        if table in catalog:
            continue
        result.issues.append(f'Table "{table}" does not exist in the database')
        similar = [t for t in catalog if table in t or t in table or table.rstrip("s") == t.rstrip("s")]
        if similar:
            result.alternatives.append(f"Consider using one of these existing tables instead: {', '.join(sorted(similar))}")

    seen = set()
    for ref in column_refs(tokens):
        if not ref.qualifier:
            continue
        table = aliases.get(ref.qualifier)
        if not table or table not in catalog or ref.column == "*":
            continue
        if ref.column in catalog[table] or (table, ref.column) in seen:
            continue
        seen.add((table, ref.column))
        if ref.clause == "JOIN":
            result.issues.append(f'Join column "{ref.column}" does not exist in table "{table}"')
        else:
            result.issues.append(f'Column "{ref.column}" does not exist in table "{table}"')
        similar_cols = [c for c in catalog[table] if ref.column in c or c in ref.column]
        if similar_cols:
            result.alternatives.append(f"Columns of {table} with similar names: {', '.join(similar_cols)}")
    return result


def _role_filter_present(tokens: List[SqlToken]) -> bool:
    valid = {str(v) for v in ROLE_TYPES.values()}
    for cmp in equality_comparisons(tokens):
        if cmp.column == "role" and cmp.literal_kind == NUMBER and cmp.literal in valid:
            return True
    # role IN (5, 7)
    for i, token in enumerate(tokens[:-2]):
        if token.kind == WORD and token.value == "role" and tokens[i + 1].value == "in":
            j = i + 2
            while j < len(tokens) and tokens[j].value != ")":
                if tokens[j].kind == NUMBER and tokens[j].value in valid:
                    return True
                j += 1
    return False


def check_query_rules(
    sql: str,
    caller: CallerContext,
    tables: Optional[Sequence[SchemaTable]] = None,
    policy: Optional[AccessPolicy] = None,
) -> QueryValidationResult:
    """Domain rule check. Errors make the query invalid; warnings are advisory."""
    errors: List[str] = []
    warnings: List[str] = []
    if not sql or not sql.strip():
        return QueryValidationResult(is_valid=False, errors=["No SQL query provided"])

    tokens = tokenize(sql)
    present = set(words(tokens))
    aliases = table_aliases(tokens)
    referenced_tables = set(aliases.values())
    has_division = any(t.kind == OPERATOR and t.value == "/" for t in tokens)

    # Score ratio must carry the NULL guards
    if {"knowledge_score", "knowledge_total"} <= present and has_division:
        if "nullif" not in present or "coalesce" not in present:
            errors.append(f"Missing proper NULL handling in score calculation. Must include: {SCORE_RATIO_EXPRESSION}")
    elif has_division and "nullif" not in present:
        warnings.append("Division without a NULLIF(denominator, 0) guard")

    # Ids, not names, drive grouping, joining and filtering
    flagged = set()
    for ref in column_refs(tokens):
        if ref.clause in _ID_ONLY_CLAUSES and is_name_column(ref.column):
            label = f"{ref.qualifier}.{ref.column}" if ref.qualifier else ref.column
            if (ref.clause, label) not in flagged:
                flagged.add((ref.clause, label))
                errors.append(f"Using name instead of ID in {ref.clause} operation: {label}")

    if referenced_tables & ROLE_SCOPED_TABLES and not _role_filter_present(tokens):
        errors.append(
            f"Missing valid role filter. Must use role = {ROLE_TYPES['teachers']} for teachers "
            f"or role = {ROLE_TYPES['students']} for students"
        )

    policy = policy or AccessPolicy(settings.PROTECTED_TABLES)
    for missing in policy.required_filters(caller, sql):
        if missing == tenant_filter_message(caller.tenant_id):
            errors.append(f"Missing diocese_id filter: diocese_id = {caller.tenant_id}")
        elif missing == sub_tenant_filter_message(caller.sub_tenant_id):
            errors.append(f"Missing testing_center_id filter: testing_center_id = {caller.sub_tenant_id}")
        else:
            errors.append(missing)

    if tables:
        catalog = {t.table_name.lower(): {c.lower() for c in t.column_names()} for t in tables}
        reported = set()
        for ref in column_refs(tokens):
            table = aliases.get(ref.qualifier) if ref.qualifier else None
            if table in catalog and ref.column != "*" and ref.column not in catalog[table] and (table, ref.column) not in reported:
                reported.add((table, ref.column))
                errors.append(f"Column {ref.column} does not exist in table {table}")

    for table, required in REQUIRED_JOINS.items():
        if table in referenced_tables and required not in referenced_tables:
            warnings.append(f"Missing join with {required} table when using {table}")

    for cmp in equality_comparisons(tokens):
        if cmp.column == "academic_year_id" and cmp.literal_kind == NUMBER:
            warnings.append(
                f"Hard-coded academic_year_id = {cmp.literal}; derive relative periods from the current academic year"
            )

    if errors:
        logger.info(f"[QueryRules] {len(errors)} rule violations found.")
    return QueryValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
