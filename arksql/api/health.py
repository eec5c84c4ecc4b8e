import logging
import time
from typing import Dict

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from arksql.core.config import settings
from arksql.db.connection import check_connection
from arksql.langchain.llm import check_llm_connection
from arksql.services import ServiceContainer, get_services

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response schema."""
    status: str
    version: str
    synthesis_mode: str
    dependencies: Dict[str, str]
    uptime: float

# API start time
start_time = time.time()


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(response: Response, services: ServiceContainer = Depends(get_services)):
    """Reports the default target database, the chat model and the vector backend."""
    logger.debug("[Health] Health check requested")

    db_status = "not_configured"
    if settings.TARGET_DATABASE_URL:
        try:
            ok = await check_connection(settings.TARGET_DATABASE_URL, services.connection_factory)
            db_status = "connected" if ok else "disconnected"
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"[Health] Target database check failed: {str(e)}")
            db_status = "disconnected"

    llm_status = "available" if await check_llm_connection(services.llm) else "unavailable"

    if db_status != "disconnected" and llm_status == "available":
        overall_status = "healthy"
    elif db_status == "disconnected" and llm_status == "unavailable":
        overall_status = "unhealthy"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version="1.0.0",
        synthesis_mode=services.mode,
        dependencies={
            "target_database": db_status,
            "llm": llm_status,
            "vector_store": type(services.store.backend).__name__,
        },
        uptime=time.time() - start_time,
    )
