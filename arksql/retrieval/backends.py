import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

from pgvector.sqlalchemy import Vector
from sqlalchemy import Column, Index, MetaData, String, Table, Text, delete, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from arksql.core.config import settings
from arksql.core.errors import StoreFailure
from arksql.schemas.documents import SchemaVectorEntry

logger = logging.getLogger(__name__)

metadata_obj = MetaData()

schema_vectors = Table(
    "schema_vectors",
    metadata_obj,
    Column("id", String, primary_key=True),
    Column("content", Text, nullable=False),
    Column("type", String(32), nullable=False),
    Column("embedding", Vector(settings.EMBEDDING_DIMENSIONS), nullable=False),
    Column("table_name", String, nullable=True),
    Column("column_name", String, nullable=True),
    Column("metadata", JSONB, nullable=False, default=dict),
    Column("title", String, nullable=True),
)

Index(
    "schema_vectors_embedding_idx",
    schema_vectors.c.embedding,
    postgresql_using="ivfflat",
    postgresql_with={"lists": 100},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

Match = Tuple[SchemaVectorEntry, float]


class VectorBackend:
    """Storage for embedded entries. Implementations raise StoreFailure."""

    async def upsert(self, entries: Sequence[SchemaVectorEntry]) -> None:
        raise NotImplementedError

    async def match(self, embedding: List[float], threshold: float, limit: int) -> List[Match]:
        """Entries with cosine similarity above ``threshold``, most similar first."""
        raise NotImplementedError

    async def fetch(self, ids: Sequence[str]) -> List[SchemaVectorEntry]:
        raise NotImplementedError

    async def clear(self) -> None:
        raise NotImplementedError


class PgVectorBackend(VectorBackend):
    """``schema_vectors`` table in a PostgreSQL database with the vector extension."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def create_schema(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.exec_driver_sql("CREATE EXTENSION IF NOT EXISTS vector")
                await conn.run_sync(metadata_obj.create_all)
        except SQLAlchemyError as e:
            logger.error(f"[PgVector] Failed to create schema_vectors: {e}")
            raise StoreFailure(f"Could not create vector store schema: {e}") from e

    async def upsert(self, entries: Sequence[SchemaVectorEntry]) -> None:
        if not entries:
            return
        rows = [entry.model_dump() for entry in entries]
        ins = pg_insert(schema_vectors).values(rows)
        upsert = ins.on_conflict_do_update(
            index_elements=[schema_vectors.c.id],
            set_={
                "content": ins.excluded.content,
                "type": ins.excluded.type,
                "embedding": ins.excluded.embedding,
                "table_name": ins.excluded.table_name,
                "column_name": ins.excluded.column_name,
                "metadata": ins.excluded.metadata,
                "title": ins.excluded.title,
            },
        )
        try:
            async with self.engine.begin() as conn:
                await conn.execute(upsert)
        except SQLAlchemyError as e:
            logger.error(f"[PgVector] Upsert of {len(rows)} entries failed: {e}")
            raise StoreFailure(f"Vector store upsert failed: {e}") from e

    async def match(self, embedding: List[float], threshold: float, limit: int) -> List[Match]:
        dist = schema_vectors.c.embedding.cosine_distance(embedding)
        stmt = (
            select(schema_vectors, (1 - dist).label("similarity"))
            .where((1 - dist) > threshold)
            .order_by(dist)
            .limit(limit)
        )
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(stmt)
                rows = result.mappings().all()
        except SQLAlchemyError as e:
            logger.error(f"[PgVector] Similarity search failed: {e}")
            raise StoreFailure(f"Vector store search failed: {e}") from e
        return [(self._to_entry(row), float(row["similarity"])) for row in rows]

    async def fetch(self, ids: Sequence[str]) -> List[SchemaVectorEntry]:
        stmt = select(schema_vectors).where(schema_vectors.c.id.in_(list(ids)))
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(stmt)
                rows = result.mappings().all()
        except SQLAlchemyError as e:
            raise StoreFailure(f"Vector store fetch failed: {e}") from e
        return [self._to_entry(row) for row in rows]

    async def clear(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.execute(delete(schema_vectors))
        except SQLAlchemyError as e:
            logger.error(f"[PgVector] Clearing schema_vectors failed: {e}")
            raise StoreFailure(f"Vector store clear failed: {e}") from e

    @staticmethod
    def _to_entry(row) -> SchemaVectorEntry:
        embedding = row["embedding"]
        return SchemaVectorEntry(
            id=row["id"],
            content=row["content"],
            type=row["type"],
            embedding=[float(x) for x in embedding] if embedding is not None else [],
            table_name=row["table_name"],
            column_name=row["column_name"],
            metadata=row["metadata"] or {},
            title=row["title"],
        )


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorBackend(VectorBackend):
    """Process-local backend for development and tests. Same semantics as pgvector."""

    def __init__(self):
        self._entries: Dict[str, SchemaVectorEntry] = {}
        self.upsert_batches: List[int] = []

    async def upsert(self, entries: Sequence[SchemaVectorEntry]) -> None:
        self.upsert_batches.append(len(entries))
        for entry in entries:
            self._entries[entry.id] = entry

    async def match(self, embedding: List[float], threshold: float, limit: int) -> List[Match]:
        scored = [(entry, cosine_similarity(embedding, entry.embedding)) for entry in self._entries.values()]
        scored = [item for item in scored if item[1] > threshold]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:limit]

    async def fetch(self, ids: Sequence[str]) -> List[SchemaVectorEntry]:
        return [self._entries[i] for i in ids if i in self._entries]

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def build_backend(kind: str, engine: Optional[AsyncEngine] = None) -> VectorBackend:
    if kind == "memory":
        return InMemoryVectorBackend()
    if engine is None:
        raise ValueError("The pgvector backend needs an engine.")
    return PgVectorBackend(engine)
