from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

EntryType = Literal["table", "column", "relation", "rule", "documentation"]

TEMPLATE_ID_PREFIX = "template_"
RULE_ID_PREFIX = "rule_"


class DocumentationMetadata(BaseModel):
    """Structured metadata attached to a curated documentation entry."""
    model_config = ConfigDict(extra="allow")

    category: Optional[str] = None
    tables: List[str] = Field(default_factory=list)
    columns: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    question_template: Optional[str] = None
    question_variants: List[str] = Field(default_factory=list)
    common_phrasings: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class DocumentationEntry(BaseModel):
    """A curated rule or a question -> SQL template."""
    id: str = Field(..., description="Stable, human-assigned identifier")
    title: str = ""
    content: str
    metadata: DocumentationMetadata = Field(default_factory=DocumentationMetadata)
    kind: Literal["rule", "template"] = "rule"

    @model_validator(mode="after")
    def infer_kind(self):
        # A question template makes an entry a template regardless of how it was declared
        if self.metadata.question_template or self.id.startswith(TEMPLATE_ID_PREFIX):
            self.kind = "template"
        return self

    @property
    def store_id(self) -> str:
        prefix = TEMPLATE_ID_PREFIX if self.kind == "template" else RULE_ID_PREFIX
        return self.id if self.id.startswith(prefix) else f"{prefix}{self.id}"


class SchemaVectorEntry(BaseModel):
    id: str
    content: str
    type: EntryType
    embedding: List[float] = Field(default_factory=list)
    table_name: Optional[str] = None
    column_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    title: Optional[str] = None

    @property
    def is_template(self) -> bool:
        return self.id.startswith(TEMPLATE_ID_PREFIX)


class SearchResult(BaseModel):
    """A matched entry without its embedding."""
    id: str
    content: str
    type: EntryType
    table_name: Optional[str] = None
    column_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    title: Optional[str] = None
    similarity: float

    @property
    def is_template(self) -> bool:
        return self.id.startswith(TEMPLATE_ID_PREFIX)

    @classmethod
    def from_entry(cls, entry: SchemaVectorEntry, similarity: float) -> "SearchResult":
        return cls(similarity=similarity, **entry.model_dump(exclude={"embedding"}))
