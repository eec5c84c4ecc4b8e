import logging
from typing import Dict, Iterable, List, Optional, Sequence, Union

from arksql.cache import TTLCache
from arksql.core.config import settings
from arksql.core.errors import StoreFailure
from arksql.retrieval.backends import VectorBackend
from arksql.retrieval.corpus import build_entries
from arksql.retrieval.embeddings import EmbeddingProvider
from arksql.schemas.documents import DocumentationEntry, SchemaVectorEntry, SearchResult
from arksql.schemas.schema import ForeignKeyConstraint, SchemaTable
from arksql.utils import normalize_text

logger = logging.getLogger(__name__)


class SemanticDocumentStore:
    """Similarity search over schema metadata and curated documentation.

    Rebuilds embed the whole corpus in one batch so every vector comes from
    the same model version. Searches are cached by (normalized query, limit).
    """

    def __init__(
        self,
        embeddings: EmbeddingProvider,
        backend: VectorBackend,
        cache: TTLCache,
        threshold: float = settings.DOC_SEARCH_THRESHOLD,
        template_threshold: float = settings.TEMPLATE_SEARCH_THRESHOLD,
        template_keywords: Optional[Iterable[str]] = None,
        chunk_size: int = settings.DOC_UPSERT_CHUNK_SIZE,
    ):
        self.embeddings = embeddings
        self.backend = backend
        self.cache = cache
        self.threshold = threshold
        # Never stricter than the base threshold, so template-like queries only gain results
        self.template_threshold = min(template_threshold, threshold)
        keywords = template_keywords if template_keywords is not None else settings.TEMPLATE_QUERY_KEYWORDS
        self.template_keywords = {k.lower() for k in keywords}
        self.chunk_size = chunk_size

    async def rebuild(
        self,
        tables: Sequence[SchemaTable],
        foreign_keys: Sequence[ForeignKeyConstraint],
        documentation: Optional[Iterable[Union[DocumentationEntry, str]]] = None,
    ) -> int:
        """Embed and upsert the whole corpus. Returns the number of stored entries."""
        entries = build_entries(tables, foreign_keys, documentation)
        if not entries:
            logger.warning("[DocStore] Rebuild called with an empty corpus.")
            return 0

        logger.info(f"[DocStore] Rebuilding with {len(entries)} entries.")
        vectors = await self.embeddings.embed_batch([entry.content for entry in entries])

        # Last write wins for duplicate ids
        unique: Dict[str, SchemaVectorEntry] = {}
        for entry, vector in zip(entries, vectors):
            unique[entry.id] = entry.model_copy(update={"embedding": vector})
        if len(unique) != len(entries):
            logger.warning(f"[DocStore] Dropped {len(entries) - len(unique)} duplicate entry ids.")

        batch = list(unique.values())
        for start in range(0, len(batch), self.chunk_size):
            chunk = batch[start:start + self.chunk_size]
            try:
                await self.backend.upsert(chunk)
            except StoreFailure:
                raise
            except Exception as e:
                logger.error(f"[DocStore] Upsert chunk starting at {start} failed: {e}", exc_info=True)
                raise StoreFailure(f"Upsert failed at entry {start}: {e}") from e
            logger.debug(f"[DocStore] Upserted entries {start}-{start + len(chunk) - 1}.")

        self.cache.clear()
        logger.info(f"[DocStore] Rebuild complete. {len(batch)} entries stored.")
        return len(batch)

    def is_template_like(self, normalized_query: str) -> bool:
        tokens = set(normalized_query.replace("?", " ").split())
        return bool(tokens & self.template_keywords)

    async def search(self, query_text: str, limit: int = settings.DOC_SEARCH_DEFAULT_LIMIT) -> List[SearchResult]:
        normalized = normalize_text(query_text)
        if not normalized:
            return []
        cache_key = (normalized, limit)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug(f"[DocStore] Cache hit for '{normalized[:60]}' (limit={limit}).")
            return list(cached)

        template_like = self.is_template_like(normalized)
        threshold = self.template_threshold if template_like else self.threshold

        vector = await self.embeddings.embed_text(normalized)
        try:
            matches = await self.backend.match(vector, threshold, limit)
        except StoreFailure:
            raise
        except Exception as e:
            logger.error(f"[DocStore] Similarity search failed: {e}", exc_info=True)
            raise StoreFailure(f"Similarity search failed: {e}") from e

        results = [SearchResult.from_entry(entry, similarity) for entry, similarity in matches if similarity > threshold]
        if template_like:
            # Stable: keeps similarity order inside each group
            results.sort(key=lambda r: 0 if r.is_template else 1)

        logger.info(f"[DocStore] Search '{normalized[:60]}' returned {len(results)} results (threshold={threshold}, template_like={template_like}).")
        self.cache.set(cache_key, results)
        return list(results)

    async def get(self, ids: Sequence[str]) -> List[SchemaVectorEntry]:
        try:
            return await self.backend.fetch(ids)
        except StoreFailure:
            raise
        except Exception as e:
            raise StoreFailure(f"Fetch failed: {e}") from e

    async def clear(self) -> None:
        await self.backend.clear()
        self.cache.clear()
        logger.info("[DocStore] Cleared vector store and search cache.")


def format_search_results(results: List[SearchResult]) -> str:
    """Prompt-ready rendering of retrieved documentation."""
    if not results:
        return "No relevant documentation found."
    blocks = []
    for result in results:
        label = result.title or result.id
        blocks.append(f"[{result.type}: {label} | similarity {result.similarity:.2f}]\n{result.content}")
    return "\n\n".join(blocks)
