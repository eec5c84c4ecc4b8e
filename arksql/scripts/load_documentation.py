"""Rebuild the documentation index from the live schema and a documentation file.

    python -m arksql.scripts.load_documentation --docs docs/documentation.json

The file holds either a list or ``{"documentation": [...]}``. Each item is a
curated entry (``{"id", "title", "content", "metadata"}``) or a plain string.
"""
import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError

from arksql.cache import TTLCache
from arksql.core.config import settings
from arksql.core.errors import ArkSQLError
from arksql.core.logging import setup_logging
from arksql.db.connection import dispose_engines, get_async_db_engine
from arksql.db.introspection import SchemaIntrospector
from arksql.retrieval.backends import build_backend
from arksql.retrieval.document_store import SemanticDocumentStore
from arksql.retrieval.embeddings import EmbeddingProvider
from arksql.schemas.documents import DocumentationEntry

logger = logging.getLogger(__name__)


def read_documentation(path: Path) -> List[Union[DocumentationEntry, str]]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    items = raw.get("documentation", []) if isinstance(raw, dict) else raw
    documentation: List[Union[DocumentationEntry, str]] = []
    for index, item in enumerate(items):
        if isinstance(item, str):
            documentation.append(item)
            continue
        try:
            documentation.append(DocumentationEntry.model_validate(item))
        except ValidationError as e:
            logger.warning(f"[Loader] Skipping documentation item {index}: {e}")
    return documentation


async def load(connection_string: str, docs_path: Optional[Path], keep_existing: bool = False) -> int:
    engine = get_async_db_engine(settings.VECTOR_STORE_URL) if settings.VECTOR_STORE_BACKEND == "pgvector" else None
    backend = build_backend(settings.VECTOR_STORE_BACKEND, engine)
    if engine is not None:
        await backend.create_schema()

    cache = TTLCache(settings.DOC_CACHE_TTL_SECONDS, settings.DOC_CACHE_MAX_ENTRIES, name="doc-search")
    store = SemanticDocumentStore(EmbeddingProvider(), backend, cache)
    introspector = SchemaIntrospector(connection_string, settings.PROTECTED_TABLES)

    tables = await introspector.list_tables()
    foreign_keys = await introspector.list_foreign_keys()
    documentation = read_documentation(docs_path) if docs_path else []
    logger.info(f"[Loader] {len(tables)} tables, {len(foreign_keys)} foreign keys, {len(documentation)} documentation items.")

    if not keep_existing:
        await store.clear()
    return await store.rebuild(tables, foreign_keys, documentation)


def main() -> int:
    parser = argparse.ArgumentParser(description="Rebuild the schema/documentation vector index.")
    parser.add_argument("--connection-string", default=settings.TARGET_DATABASE_URL, help="Target database URL (defaults to TARGET_DATABASE_URL).")
    parser.add_argument("--docs", type=Path, default=None, help="Documentation JSON file.")
    parser.add_argument("--keep-existing", action="store_true", help="Upsert without clearing the index first.")
    args = parser.parse_args()

    setup_logging()
    if not args.connection_string:
        parser.error("A connection string is required (--connection-string or TARGET_DATABASE_URL).")

    async def run() -> int:
        try:
            return await load(args.connection_string, args.docs, args.keep_existing)
        finally:
            await dispose_engines()

    try:
        stored = asyncio.run(run())
    except ArkSQLError as e:
        logger.error(f"[Loader] Rebuild failed: {e}")
        return 1
    logger.info(f"[Loader] Stored {stored} entries.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
