from typing import List, Union
from pydantic import field_validator, model_validator, Field
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # API settings
    PROJECT_NAME: str = "ARK SQL Assistant API"
    API_V1_STR: str = "/api/v1"
    DEBUG: bool = False

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    # Target database (the one questions are asked against)
    TARGET_DATABASE_URL: str = ""  # Used when a request carries no x-connection-string header
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800
    SQL_EXECUTION_TIMEOUT_SECONDS: int = Field(default=30, description="Timeout in seconds for a single statement executed by the gateway.")

    # Vector store
    VECTOR_STORE_URL: str = ""
    VECTOR_STORE_BACKEND: str = Field(default="pgvector", description="'pgvector' or 'memory'.")

    # Azure OpenAI settings
    AZURE_OPENAI_API_KEY: str = ""
    AZURE_OPENAI_ENDPOINT: str = ""
    AZURE_OPENAI_API_VERSION: str = "2024-02-01"
    AZURE_OPENAI_DEPLOYMENT_NAME: str = ""
    AZURE_OPENAI_NAMING_DEPLOYMENT_NAME: str = ""  # Small model for chat names; falls back to the main deployment
    AZURE_OPENAI_EMBEDDING_DEPLOYMENT: str = ""

    # LangChain settings
    LLM_MODEL_NAME: str = "gpt-4o"
    LLM_TEMPERATURE: float = 0.15
    LLM_MAX_RETRIES: int = Field(default=2, description="Max retries for LLM calls via underlying client (total attempts = N+1).")
    VERBOSE_LLM: bool = False

    # Embeddings
    EMBEDDING_MODEL_NAME: str = "text-embedding-3-small"
    EMBEDDING_DIMENSIONS: int = 1536

    # Tenant fallback used when no caller context comes with the request
    ALLOW_STATIC_CALLER: bool = True
    DEFAULT_TENANT_NAME: str = "Tucson"
    DEFAULT_TENANT_ID: int = 5
    DEFAULT_SUB_TENANT_ID: int = 51
    DEFAULT_CALLER_ROLE: str = "diocese_manager"
    PROTECTED_TABLES: List[str] = [
        "testing_centers",
        "testing_sections",
        "testing_section_students",
        "users",
        "students",
        "test_results",
        "scores",
    ]

    # Retrieval
    DOC_SEARCH_THRESHOLD: float = Field(default=0.29, description="Minimum cosine similarity for a document to be returned.")
    TEMPLATE_SEARCH_THRESHOLD: float = Field(default=0.2, description="Lowered similarity threshold for template-like questions.")
    DOC_SEARCH_DEFAULT_LIMIT: int = 5
    DOC_CACHE_TTL_SECONDS: float = 1800
    DOC_CACHE_MAX_ENTRIES: int = 500
    DOC_CACHE_SWEEP_INTERVAL_SECONDS: float = 60
    DOC_UPSERT_CHUNK_SIZE: int = 100
    TEMPLATE_QUERY_KEYWORDS: List[str] = [
        "how", "what", "which", "who", "when", "where", "list", "show",
        "count", "many", "much", "average", "avg", "total", "sum",
        "percentage", "percent", "rate", "top", "highest", "lowest", "by",
    ]

    # Query execution gateway
    EXECUTION_CACHE_TTL_SECONDS: float = Field(default=1.0, description="How long an identical execution is served from cache.")
    EXECUTION_CACHE_MAX_ENTRIES: int = 100
    EXECUTION_CACHE_SWEEP_INTERVAL_SECONDS: float = 5

    # Synthesis
    SYNTHESIS_MODE: str = Field(default="retrieval_augmented", description="'single_pass', 'multi_agent' or 'retrieval_augmented'.")
    SYNTHESIS_FEEDBACK_ROUNDS: int = Field(default=1, description="Extra model rounds spent fixing rule/schema issues found after synthesis.")
    AGENT_MAX_STEPS: int = Field(default=22, description="Maximum tool-calling steps for the retrieval-augmented agent.")
    CRITIQUE_TIMEOUT_SECONDS: int = Field(default=45, description="Timeout in seconds for each critique agent.")
    LLM_CRITIQUE_MAX_RATE: int = Field(default=10, description="Max critique LLM calls allowed within the time period.")
    LLM_CRITIQUE_TIME_PERIOD: int = Field(default=60, description="Time period in seconds for the critique rate limiter.")
    TOOL_EXECUTION_RETRIES: int = Field(default=1, description="Extra attempts for an agent tool call that fails with a transient error.")
    TOOL_RETRY_DELAY_SECONDS: float = 1.0

    # Repair loop
    REPAIR_MAX_RETRIES: int = 3
    REPAIR_BACKOFF_SECONDS: float = 0.5
    REPAIR_CYCLE_TIMEOUT_SECONDS: float = 30

    # Chat
    CHAT_MAX_DURATION_SECONDS: float = 30

    # Security
    SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = 'ignore'

    @field_validator("CORS_ORIGINS", "PROTECTED_TABLES", "TEMPLATE_QUERY_KEYWORDS", mode="before")
    def split_comma_separated(cls, v: Union[str, List[str]]) -> List[str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    @model_validator(mode='after')
    def check_required_settings(cls, values):
        # Missing credentials are fatal before any synthesis starts
        if not values.AZURE_OPENAI_API_KEY:
            raise ValueError("AZURE_OPENAI_API_KEY environment variable is missing or empty.")
        if not values.AZURE_OPENAI_ENDPOINT:
            raise ValueError("AZURE_OPENAI_ENDPOINT environment variable is missing or empty.")
        if not values.AZURE_OPENAI_DEPLOYMENT_NAME:
            raise ValueError("AZURE_OPENAI_DEPLOYMENT_NAME environment variable is missing or empty.")
        if not values.AZURE_OPENAI_EMBEDDING_DEPLOYMENT:
            raise ValueError("AZURE_OPENAI_EMBEDDING_DEPLOYMENT environment variable is missing or empty.")
        if values.VECTOR_STORE_BACKEND == "pgvector" and not values.VECTOR_STORE_URL:
            raise ValueError("VECTOR_STORE_URL environment variable is missing or empty.")
        if values.SYNTHESIS_MODE not in ("single_pass", "multi_agent", "retrieval_augmented"):
            raise ValueError(f"Unknown SYNTHESIS_MODE '{values.SYNTHESIS_MODE}'.")
        return values

# Create global settings object
settings = Settings()
