"""Shared components, constructed once at start-up and injected into the routes."""
import logging
from typing import Optional

from aiolimiter import AsyncLimiter
from fastapi import Request
from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel

from arksql.cache import TTLCache
from arksql.chat_store import ChatStore, InMemoryChatStore
from arksql.core.config import settings
from arksql.db.connection import ConnectionFactory, get_async_db_connection, get_async_db_engine
from arksql.gateway import QueryExecutionGateway
from arksql.langchain.agent import RetrievalAugmentedOrchestrator
from arksql.langchain.critique import MultiAgentCritiqueOrchestrator
from arksql.langchain.llm import get_llm, get_naming_llm
from arksql.langchain.orchestrator import MODE_CAPABILITIES, SinglePassOrchestrator, SynthesisOrchestrator
from arksql.langchain.repair import SQLCorrector, SQLRepairLoop
from arksql.policy.access import AccessPolicy
from arksql.retrieval.backends import VectorBackend, build_backend
from arksql.retrieval.document_store import SemanticDocumentStore
from arksql.retrieval.embeddings import EmbeddingProvider

logger = logging.getLogger(__name__)


def build_orchestrator(
    mode: str,
    llm: BaseChatModel,
    policy: AccessPolicy,
    store: SemanticDocumentStore,
    connection_factory: ConnectionFactory = get_async_db_connection,
) -> SynthesisOrchestrator:
    capabilities = MODE_CAPABILITIES.get(mode)
    if capabilities is None:
        raise ValueError(f"Unknown synthesis mode '{mode}'.")
    if capabilities.retrieval:
        return RetrievalAugmentedOrchestrator(llm, policy, store, connection_factory)
    if capabilities.multi_agent_critique:
        limiter = AsyncLimiter(settings.LLM_CRITIQUE_MAX_RATE, settings.LLM_CRITIQUE_TIME_PERIOD)
        return MultiAgentCritiqueOrchestrator(llm, policy, connection_factory, limiter=limiter)
    return SinglePassOrchestrator(llm, policy, connection_factory)


class ServiceContainer:
    def __init__(
        self,
        policy: AccessPolicy,
        store: SemanticDocumentStore,
        gateway: QueryExecutionGateway,
        orchestrator: SynthesisOrchestrator,
        corrector: SQLCorrector,
        repair_loop: SQLRepairLoop,
        chat_store: ChatStore,
        llm: BaseChatModel,
        naming_llm: BaseChatModel,
        connection_factory: ConnectionFactory = get_async_db_connection,
        mode: str = "single_pass",
    ):
        self.policy = policy
        self.store = store
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.corrector = corrector
        self.repair_loop = repair_loop
        self.chat_store = chat_store
        self.llm = llm
        self.naming_llm = naming_llm
        self.connection_factory = connection_factory
        self.mode = mode


async def build_services(
    llm: Optional[BaseChatModel] = None,
    naming_llm: Optional[BaseChatModel] = None,
    embeddings_model: Optional[Embeddings] = None,
    backend: Optional[VectorBackend] = None,
    connection_factory: ConnectionFactory = get_async_db_connection,
    chat_store: Optional[ChatStore] = None,
    mode: Optional[str] = None,
) -> ServiceContainer:
    """Wire every component from settings. Arguments override individual pieces."""
    mode = mode or settings.SYNTHESIS_MODE
    llm = llm or get_llm()
    policy = AccessPolicy(settings.PROTECTED_TABLES)

    if backend is None:
        engine = get_async_db_engine(settings.VECTOR_STORE_URL) if settings.VECTOR_STORE_BACKEND == "pgvector" else None
        backend = build_backend(settings.VECTOR_STORE_BACKEND, engine)
        if engine is not None:
            await backend.create_schema()

    search_cache = TTLCache(
        settings.DOC_CACHE_TTL_SECONDS,
        settings.DOC_CACHE_MAX_ENTRIES,
        settings.DOC_CACHE_SWEEP_INTERVAL_SECONDS,
        name="doc-search",
    )
    execution_cache = TTLCache(
        settings.EXECUTION_CACHE_TTL_SECONDS,
        settings.EXECUTION_CACHE_MAX_ENTRIES,
        settings.EXECUTION_CACHE_SWEEP_INTERVAL_SECONDS,
        name="execution",
    )

    store = SemanticDocumentStore(EmbeddingProvider(embeddings_model), backend, search_cache)
    gateway = QueryExecutionGateway(policy, execution_cache, connection_factory)
    corrector = SQLCorrector(llm)
    orchestrator = build_orchestrator(mode, llm, policy, store, connection_factory)
    logger.info(f"[Services] Synthesis mode '{mode}', vector backend '{type(backend).__name__}'.")

    return ServiceContainer(
        policy=policy,
        store=store,
        gateway=gateway,
        orchestrator=orchestrator,
        corrector=corrector,
        repair_loop=SQLRepairLoop(gateway, corrector),
        chat_store=chat_store or InMemoryChatStore(),
        llm=llm,
        naming_llm=naming_llm or get_naming_llm(),
        connection_factory=connection_factory,
        mode=mode,
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
