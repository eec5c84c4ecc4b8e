import logging
from typing import List, Optional

import openai
from langchain_core.embeddings import Embeddings
from langchain_openai import AzureOpenAIEmbeddings

from arksql.core.config import settings
from arksql.core.errors import EmbeddingFailure

logger = logging.getLogger(__name__)


def get_embeddings_model() -> AzureOpenAIEmbeddings:
    """Azure OpenAI embedding model configured from settings."""
    logger.info(f"Initializing Azure OpenAI embeddings with deployment {settings.AZURE_OPENAI_EMBEDDING_DEPLOYMENT}")
    return AzureOpenAIEmbeddings(
        api_key=settings.AZURE_OPENAI_API_KEY,
        azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
        openai_api_version=settings.AZURE_OPENAI_API_VERSION,
        azure_deployment=settings.AZURE_OPENAI_EMBEDDING_DEPLOYMENT,
        model=settings.EMBEDDING_MODEL_NAME,
        dimensions=settings.EMBEDDING_DIMENSIONS,
        max_retries=settings.LLM_MAX_RETRIES,
    )


class EmbeddingProvider:
    """Turns text into fixed-length vectors, singly or in one batched call.

    Any provider failure surfaces as ``EmbeddingFailure`` so retrieval
    callers can fall back instead of failing the request.
    """

    def __init__(self, model: Optional[Embeddings] = None, dimensions: int = settings.EMBEDDING_DIMENSIONS):
        self.model = model if model is not None else get_embeddings_model()
        self.dimensions = dimensions

    async def embed_text(self, text: str) -> List[float]:
        try:
            vector = await self.model.aembed_query(text)
        except (openai.APIConnectionError, openai.APITimeoutError, openai.RateLimitError) as e:
            logger.error(f"[Embeddings] OpenAI API error while embedding query: {e}")
            raise EmbeddingFailure(f"Embedding provider unavailable: {e}") from e
        except openai.OpenAIError as e:
            logger.error(f"[Embeddings] Embedding request rejected: {e}")
            raise EmbeddingFailure(f"Embedding request failed: {e}") from e
        self._check_dimensions(vector)
        return vector

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed every text in a single provider call."""
        if not texts:
            return []
        logger.info(f"[Embeddings] Embedding batch of {len(texts)} texts.")
        try:
            vectors = await self.model.aembed_documents(texts)
        except (openai.APIConnectionError, openai.APITimeoutError, openai.RateLimitError) as e:
            logger.error(f"[Embeddings] OpenAI API error while embedding batch: {e}")
            raise EmbeddingFailure(f"Embedding provider unavailable: {e}") from e
        except openai.OpenAIError as e:
            logger.error(f"[Embeddings] Batch embedding request rejected: {e}")
            raise EmbeddingFailure(f"Embedding request failed: {e}") from e
        if len(vectors) != len(texts):
            raise EmbeddingFailure(f"Embedding count mismatch: sent {len(texts)}, received {len(vectors)}")
        for vector in vectors:
            self._check_dimensions(vector)
        return vectors

    def _check_dimensions(self, vector: List[float]) -> None:
        if self.dimensions and len(vector) != self.dimensions:
            raise EmbeddingFailure(f"Embedding has {len(vector)} dimensions, expected {self.dimensions}")
