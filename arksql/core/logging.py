import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from arksql.core.config import settings

# Create logs directory
log_dir = Path("logs")
log_dir.mkdir(exist_ok=True)

def setup_logging():
    """Configure logging for the application."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    file_handler = RotatingFileHandler(
        log_dir / "arksql_api.log",
        maxBytes=10485760,  # 10MB
        backupCount=5,
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Lower the level of noisy libraries unless LOG_LEVEL is DEBUG
    default_external_level = logging.WARNING if log_level > logging.DEBUG else logging.INFO
    logging.getLogger("httpx").setLevel(default_external_level)
    logging.getLogger("openai").setLevel(default_external_level)
    logging.getLogger("openai._base_client").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("langchain").setLevel(logging.INFO if log_level > logging.DEBUG else logging.DEBUG)
    logging.getLogger("langgraph").setLevel(logging.INFO if log_level > logging.DEBUG else logging.DEBUG)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    # Uvicorn keeps its own handlers
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.setLevel(log_level)
        uvicorn_logger.propagate = False

    logging.getLogger("arksql").setLevel(log_level)
    # Connection churn is only interesting when debugging
    db_conn_level = logging.INFO if log_level > logging.DEBUG else logging.DEBUG
    logging.getLogger("arksql.db.connection").setLevel(db_conn_level)

    return root_logger
