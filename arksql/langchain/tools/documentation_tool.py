import logging
from typing import Type

from langchain_core.tools import BaseTool
from pydantic import BaseModel, Field

from arksql.core.config import settings
from arksql.core.errors import EmbeddingFailure, StoreFailure
from arksql.langchain.tools.common import tool_error, tool_result
from arksql.retrieval.document_store import SemanticDocumentStore

logger = logging.getLogger(__name__)


class DocumentationSearchInput(BaseModel):
    query: str = Field(description="The question or sub-question to look up, in natural language.")
    limit: int = Field(default=settings.DOC_SEARCH_DEFAULT_LIMIT, ge=1, le=20, description="Maximum number of entries to return.")


class DocumentationSearchTool(BaseTool):
    """Similarity search over query templates, rules and schema descriptions."""
    name: str = "search_documentation"
    description: str = (
        "Searches the documentation store for query templates, business rules, table and column descriptions "
        "and relationships relevant to a question. Templates (type 'documentation' with a question template) "
        "are listed first for question-like queries. Returns entries with their similarity."
    )
    args_schema: Type[BaseModel] = DocumentationSearchInput
    store: SemanticDocumentStore

    async def _arun(self, query: str, limit: int = settings.DOC_SEARCH_DEFAULT_LIMIT, **kwargs) -> str:
        try:
            results = await self.store.search(query, limit)
        except (EmbeddingFailure, StoreFailure) as e:
            logger.warning(f"[DocumentationSearchTool] Search for '{query[:60]}' failed: {e}")
            return tool_error("RETRIEVAL_ERROR", f"Documentation search is unavailable: {e}")
        return tool_result({"results": [r.model_dump(exclude_none=True) for r in results]})

    def _run(self, *args, **kwargs) -> str:
        raise NotImplementedError("search_documentation only supports async execution.")
