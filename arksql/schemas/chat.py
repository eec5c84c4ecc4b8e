from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

from arksql.schemas.documents import DocumentationEntry, SearchResult

# Chat Models

class ChatMessage(BaseModel):
    """A single message in a chat."""
    role: str = Field(..., description="Role of the message sender (user or assistant)")
    content: str = Field(..., description="Content of the message")
    timestamp: datetime = Field(default_factory=datetime.now, description="When the message was sent")


class ChatRequest(BaseModel):
    """Request schema for the chat endpoint. The last user message is the question."""
    id: Optional[str] = Field(None, description="Client-generated chat id (UUID)")
    messages: List[ChatMessage] = Field(default_factory=list, description="Conversation so far, oldest first")


class ChatRecord(BaseModel):
    """What the chat store keeps for one conversation."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str] = None
    name: str = ""
    messages: List[ChatMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)


class ChatSummary(BaseModel):
    """Chat list entry, newest first."""
    id: str
    name: str
    created_at: datetime

# SQL endpoints

class RunSqlRequest(BaseModel):
    sql: Optional[str] = None
    connectionString: Optional[str] = None


class RunSqlResponse(BaseModel):
    result: str = Field(..., description="Serialized row set, or the plain error text")


class CorrectQueryRequest(BaseModel):
    sqlCode: Optional[str] = None
    error: Optional[str] = Field(None, description="Database error the statement produced, if known")


class CorrectQueryResponse(BaseModel):
    correctedSql: str


class ValidateQueryRequest(BaseModel):
    sql: str = ""


class ValidateQueryResponse(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    schema_issues: List[str] = Field(default_factory=list)
    alternative_suggestions: List[str] = Field(default_factory=list)

# Documentation endpoints

class DocumentSearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    limit: int = Field(5, ge=1, le=50)


class DocumentSearchResponse(BaseModel):
    results: List[SearchResult]


class RebuildRequest(BaseModel):
    """Curated entries to index next to the live schema. Free text is tagged by category."""
    documentation: List[DocumentationEntry] = Field(default_factory=list)
    free_text: List[str] = Field(default_factory=list)


class RebuildResponse(BaseModel):
    status: Literal["success"] = "success"
    stored: int


class Error(BaseModel):
    """Error details."""
    code: str = Field(..., description="Error code", examples=["STORE_ERROR", "EMBEDDING_ERROR", "INTROSPECTION_ERROR"])
    message: str = Field(..., description="Human-readable error message")
