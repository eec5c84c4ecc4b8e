import json
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from arksql.utils import json_default

# Execution

class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    FORBIDDEN = "forbidden"
    POLICY_VIOLATION = "policy_violation"


class RowSet(BaseModel):
    """Serializable result of a successful statement."""
    command: str = "SELECT"
    row_count: int = 0
    fields: List[str] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)

    def to_wire(self) -> str:
        payload = {
            "command": self.command,
            "rowCount": self.row_count,
            "fields": [{"name": name} for name in self.fields],
            "rows": self.rows,
        }
        return json.dumps(payload, default=json_default)


class ExecutionResult(BaseModel):
    """Tagged outcome of a gateway run. Only ``success`` carries rows."""
    status: ExecutionStatus
    rows: Optional[RowSet] = None
    message: Optional[str] = None
    error_type: Optional[str] = None
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    @property
    def rejected(self) -> bool:
        return self.status in (ExecutionStatus.FORBIDDEN, ExecutionStatus.POLICY_VIOLATION)

    def to_wire(self) -> str:
        """Legacy text channel: JSON row set on success, the plain message otherwise."""
        if self.ok and self.rows is not None:
            return self.rows.to_wire()
        return self.message or ""


# Synthesis

class QueryValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class CritiqueResult(BaseModel):
    """What one critique agent returned (or its degraded fallback)."""
    agent: str
    constructed_query: str
    feedback: str
    degraded: bool = False
    suggestions: List[str] = Field(default_factory=list)
    schema_issues: List[str] = Field(default_factory=list)
    alternative_suggestions: List[str] = Field(default_factory=list)


class CandidateQuery(BaseModel):
    sql: str = ""
    is_valid: bool = False
    feedback: str = ""
    constructed_query: str = ""
    mode: Literal["single_pass", "multi_agent", "retrieval_augmented"] = "single_pass"
    rule_violations: List[str] = Field(default_factory=list)
    schema_issues: List[str] = Field(default_factory=list)
    alternative_suggestions: List[str] = Field(default_factory=list)
    optimization_notes: Optional[str] = None
    source_queries: Dict[str, str] = Field(default_factory=dict)


# Repair loop

class RepairState(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    SUCCESS = "success"
    CORRECTION_NEEDED = "correction_needed"
    CORRECTING = "correcting"
    EXHAUSTED = "exhausted"
    REJECTED = "rejected"


class RepairOutcome(BaseModel):
    sql: str
    original_sql: str
    is_valid: bool
    state: RepairState
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None
    executions: int = 0
    corrections: int = 0
    history: List[str] = Field(default_factory=list, description="Every statement that was executed, in order")

    @property
    def corrected(self) -> bool:
        return self.sql.strip() != self.original_sql.strip()
