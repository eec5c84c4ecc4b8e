import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from arksql.api import chat, documents, health, sql
from arksql.core.config import settings
from arksql.core.logging import setup_logging
from arksql.db.connection import dispose_engines
from arksql.services import build_services

# --- Setup logging FIRST --- #
setup_logging()
logger = logging.getLogger(__name__)
logger.info("Logging configured.")
# ------------------------ #


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Lifespan: Starting up ARK SQL Assistant API")
    if getattr(app.state, "services", None) is None:
        app.state.services = await build_services()
    logger.info("Lifespan: Application startup tasks complete.")
    yield

    logger.info("Lifespan: Shutting down ARK SQL Assistant API")
    await dispose_engines()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="ARK SQL Assistant API - natural-language questions answered with validated, tenant-scoped SQL",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["x-should-update-chats"],
)

# Include routers
app.include_router(chat.router, prefix=settings.API_V1_STR, tags=["chat"])
app.include_router(sql.router, prefix=settings.API_V1_STR, tags=["sql"])
app.include_router(documents.router, prefix=settings.API_V1_STR, tags=["documents"])
app.include_router(health.router, prefix=settings.API_V1_STR, tags=["health"])

logger.info("FastAPI app created and configured.")

if __name__ == "__main__":
    logger.info(f"Starting Uvicorn server. Host=0.0.0.0, Port=8000, Reload={settings.DEBUG}")
    uvicorn.run(
        "arksql.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
