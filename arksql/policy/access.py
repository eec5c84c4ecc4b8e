import logging
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field

from arksql.policy.roles import Role
from arksql.policy.sql_scanner import (
    NUMBER,
    QUOTED,
    STRING,
    WORD,
    equality_comparisons,
    table_aliases,
    tokenize,
    words,
)

logger = logging.getLogger(__name__)

# Checked in this order; the first hit names the refusal
FORBIDDEN_KEYWORDS = ("drop", "delete", "alter", "truncate", "grant", "revoke")

TENANT_COLUMN = "diocese_id"
TENANT_NAME_COLUMN = "diocese_name"
TENANT_ROOT_TABLE = "dioceses"
SUB_TENANT_COLUMN = "testing_center_id"
SUB_TENANT_TABLE = "testing_centers"
# Alias used for testing_centers throughout the documentation and prompts
SUB_TENANT_CONVENTIONAL_ALIAS = "tc"


class CallerContext(BaseModel):
    """Who is asking, as far as row-level access is concerned."""
    tenant_id: Optional[int] = Field(default=None, description="Diocese id the caller is scoped to.")
    tenant_name: Optional[str] = Field(default=None, description="Display name of the caller's diocese.")
    sub_tenant_id: Optional[int] = Field(default=None, description="Testing center id for school-scoped callers.")
    role: Role = Role.SCHOOL_MANAGER
    user_id: Optional[str] = None

    @property
    def is_unrestricted(self) -> bool:
        return self.role == Role.SUPER_ADMIN


class Classification(BaseModel):
    forbidden: bool
    matched_keyword: Optional[str] = None

    @property
    def refusal(self) -> Optional[str]:
        if not self.forbidden or not self.matched_keyword:
            return None
        return f"This action is not allowed {self.matched_keyword.upper()}"


def tenant_filter_message(tenant_id: Optional[int]) -> str:
    return f"Query must include {TENANT_COLUMN} = {tenant_id} filter for security reasons"


def sub_tenant_filter_message(sub_tenant_id: Optional[int]) -> str:
    return f"Query must include {SUB_TENANT_COLUMN} = {sub_tenant_id} filter for security reasons"


class AccessPolicy:
    """Decides what a statement needs before it may run for a caller.

    Pure function of (caller, SQL text); nothing is cached between calls.
    """

    def __init__(self, protected_tables: Iterable[str]):
        self.protected_tables = {t.lower() for t in protected_tables}

    def classify(self, sql: str) -> Classification:
        present = set(words(tokenize(sql)))
        for keyword in FORBIDDEN_KEYWORDS:
            if keyword in present:
                return Classification(forbidden=True, matched_keyword=keyword)
        return Classification(forbidden=False)

    def referenced_protected_tables(self, sql: str) -> List[str]:
        names = {t.value for t in tokenize(sql) if t.kind in (WORD, QUOTED)}
        return sorted(self.protected_tables & names)

    def required_filters(self, caller: CallerContext, sql: str) -> List[str]:
        """Descriptions of the filters ``sql`` is missing for ``caller``; empty when it may run."""
        if caller.is_unrestricted:
            return []
        if not self.referenced_protected_tables(sql):
            return []

        tokens = tokenize(sql)
        aliases = table_aliases(tokens)
        comparisons = equality_comparisons(tokens)

        missing: List[str] = []
        if not self._has_tenant_filter(caller, comparisons, aliases):
            missing.append(tenant_filter_message(caller.tenant_id))
        if caller.role == Role.SCHOOL_MANAGER and not self._has_sub_tenant_filter(caller, comparisons, aliases):
            missing.append(sub_tenant_filter_message(caller.sub_tenant_id))
        return missing

    @staticmethod
    def _same_number(literal: str, expected: Optional[int]) -> bool:
        if expected is None:
            return False
        try:
            return int(literal) == int(expected)
        except ValueError:
            return False

    def _has_tenant_filter(self, caller: CallerContext, comparisons, aliases) -> bool:
        tenant_name = (caller.tenant_name or "").strip().lower()
        for cmp in comparisons:
            target_table = aliases.get(cmp.qualifier) if cmp.qualifier else None
            if cmp.literal_kind == NUMBER:
                if cmp.column == TENANT_COLUMN and self._same_number(cmp.literal, caller.tenant_id):
                    return True
                if cmp.column == "id" and target_table == TENANT_ROOT_TABLE and self._same_number(cmp.literal, caller.tenant_id):
                    return True
            elif cmp.literal_kind == STRING and tenant_name:
                names_tenant = cmp.column == TENANT_NAME_COLUMN or (cmp.column == "name" and target_table == TENANT_ROOT_TABLE)
                if names_tenant and cmp.literal.strip().lower() == tenant_name:
                    return True
                if cmp.column == TENANT_COLUMN and self._same_number(cmp.literal, caller.tenant_id):
                    return True
        return False

    def _has_sub_tenant_filter(self, caller: CallerContext, comparisons, aliases) -> bool:
        for cmp in comparisons:
            if not self._same_number(cmp.literal, caller.sub_tenant_id):
                continue
            if cmp.column == SUB_TENANT_COLUMN:
                return True
            if cmp.column == "id" and cmp.qualifier and (
                cmp.qualifier == SUB_TENANT_CONVENTIONAL_ALIAS or aliases.get(cmp.qualifier) == SUB_TENANT_TABLE
            ):
                return True
        return False
