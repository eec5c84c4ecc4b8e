import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from arksql.core.config import settings
from arksql.core.errors import EmbeddingFailure, IntrospectionError, StoreFailure
from arksql.db.introspection import SchemaIntrospector
from arksql.policy.access import CallerContext
from arksql.schemas.chat import DocumentSearchRequest, DocumentSearchResponse, RebuildRequest, RebuildResponse
from arksql.security import get_current_caller
from arksql.services import ServiceContainer, get_services

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_admin(caller: CallerContext) -> None:
    if not caller.is_unrestricted:
        logger.warning(f"[Documents] User {caller.user_id} ({caller.role.value}) attempted an index change.")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only administrators can change the documentation index.")


@router.post("/documents/search", response_model=DocumentSearchResponse, tags=["documents"])
async def search_documents(
    request: DocumentSearchRequest,
    caller: CallerContext = Depends(get_current_caller),
    services: ServiceContainer = Depends(get_services),
):
    try:
        results = await services.store.search(request.query, request.limit)
    except EmbeddingFailure as e:
        logger.error(f"[Documents] Embedding failed for search: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="The embedding service is unavailable.")
    except StoreFailure as e:
        logger.error(f"[Documents] Vector store search failed: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="The documentation store is unavailable.")
    return DocumentSearchResponse(results=results)


@router.post("/documents/rebuild", response_model=RebuildResponse, tags=["documents"])
async def rebuild_documents(
    request: RebuildRequest,
    x_connection_string: Optional[str] = Header(None),
    caller: CallerContext = Depends(get_current_caller),
    services: ServiceContainer = Depends(get_services),
):
    """Re-index the live schema of the target database plus the supplied documentation."""
    _require_admin(caller)
    connection_string = x_connection_string or settings.TARGET_DATABASE_URL
    if not connection_string:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No connection string provided")

    introspector = SchemaIntrospector(
        connection_string,
        services.policy.protected_tables,
        connection_factory=services.connection_factory,
    )
    try:
        tables = await introspector.list_tables()
        foreign_keys = await introspector.list_foreign_keys()
        stored = await services.store.rebuild(tables, foreign_keys, [*request.documentation, *request.free_text])
    except IntrospectionError as e:
        logger.error(f"[Documents] Schema introspection failed during rebuild: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Could not read the database schema.")
    except EmbeddingFailure as e:
        logger.error(f"[Documents] Embedding failed during rebuild: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="The embedding service is unavailable.")
    except StoreFailure as e:
        logger.error(f"[Documents] Vector store rejected the rebuild: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="The documentation store is unavailable.")
    return RebuildResponse(stored=stored)


@router.delete("/documents", status_code=status.HTTP_204_NO_CONTENT, tags=["documents"])
async def clear_documents(
    caller: CallerContext = Depends(get_current_caller),
    services: ServiceContainer = Depends(get_services),
):
    _require_admin(caller)
    try:
        await services.store.clear()
    except StoreFailure as e:
        logger.error(f"[Documents] Vector store clear failed: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="The documentation store is unavailable.")
