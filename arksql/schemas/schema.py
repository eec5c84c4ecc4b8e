from typing import List, Optional
from pydantic import BaseModel, Field

# Catalog Models

class Column(BaseModel):
    """A single column as reported by information_schema."""
    name: str
    data_type: str
    is_nullable: bool

class AccessDescriptor(BaseModel):
    """How a table is reached from the tenant root for row-level scoping."""
    requires_tenant_filter: bool = Field(..., description="Table is tenant-protected")
    join_path_to_tenant: str = Field(..., description="Human-readable join path to testing_centers.diocese_id")
    has_direct_tenant_column: bool = Field(..., description="Table carries its own diocese_id column")
    example_filter_sql: Optional[str] = Field(None, description="Example statement showing the scoping join")

class SchemaTable(BaseModel):
    table_name: str
    schema_name: str
    columns: List[Column] = Field(default_factory=list)
    access: Optional[AccessDescriptor] = None

    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

class ForeignKeyConstraint(BaseModel):
    constraint_name: str
    table_schema: str = "public"
    table_name: str
    column_name: str
    foreign_table_schema: str = "public"
    foreign_table_name: str
    foreign_column_name: str
