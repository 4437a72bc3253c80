"""Wire the engine's components together.

With ``DATABASE_URL`` set every store is PostgreSQL-backed; without it the
in-memory implementations are used, which is handy for local development and
tests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from .agents.model import ModelClient, build_model_client
from .agents.orchestrator import ResponseOrchestrator
from .agents.prompts import PromptTemplateStore
from .config import EngineSettings, get_settings
from .conversations.escalation import EscalationDetector
from .conversations.repository import (
    ConversationRepository,
    InMemoryConversationRepository,
    PostgresConversationRepository,
)
from .conversations.service import ConversationService
from .fanout.events import EventFanout
from .fanout.generators import SubjectGenerator, SummaryGenerator
from .fanout.queue import InMemoryJobQueue, JobQueue, PostgresJobOutbox
from .fanout.realtime import InMemoryRealtimeHub
from .fanout.worker import FanoutHandlers, FanoutWorker
from .retrieval.assembler import RetrievalAssembler
from .retrieval.cache import EmbeddingCache, InMemoryEmbeddingCache, PostgresEmbeddingCache
from .retrieval.embeddings import CachedEmbedder, Embedder, FastEmbedEmbedder
from .retrieval.store import InMemoryKnowledgeStore, KnowledgeStore, PostgresKnowledgeStore
from .tools.repository import InMemoryToolRepository, PostgresToolRepository, ToolRepository

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: EngineSettings
    repository: ConversationRepository
    service: ConversationService
    realtime: InMemoryRealtimeHub
    queue: JobQueue
    worker: FanoutWorker
    http_client: httpx.AsyncClient

    async def aclose(self) -> None:
        self.worker.stop()
        await self.http_client.aclose()


def build_engine(
    settings: EngineSettings | None = None,
    *,
    model: ModelClient | None = None,
    embedder: Embedder | None = None,
    repository: ConversationRepository | None = None,
    store: KnowledgeStore | None = None,
    cache: EmbeddingCache | None = None,
    tools: ToolRepository | None = None,
    queue: JobQueue | None = None,
    http_client: httpx.AsyncClient | None = None,
    token_counter=None,
) -> Engine:
    """Assemble an :class:`Engine`; any component can be injected."""

    settings = settings or get_settings()
    dsn = settings.database_url
    if dsn:
        logger.info("Using PostgreSQL-backed stores")
        repository = repository or PostgresConversationRepository(dsn)
        store = store or PostgresKnowledgeStore(dsn)
        cache = cache or PostgresEmbeddingCache(
            dsn, ttl_seconds=settings.embedding_cache_ttl_seconds
        )
        tools = tools or PostgresToolRepository(dsn)
        queue = queue or PostgresJobOutbox(
            dsn, stale_after=settings.fanout_job_stale_seconds
        )
    else:
        logger.info("DATABASE_URL not set; using in-memory stores")
        repository = repository or InMemoryConversationRepository()
        store = store or InMemoryKnowledgeStore()
        cache = cache or InMemoryEmbeddingCache(
            ttl_seconds=settings.embedding_cache_ttl_seconds
        )
        tools = tools or InMemoryToolRepository()
        queue = queue or InMemoryJobQueue()

    model = model or build_model_client(settings)
    http_client = http_client or httpx.AsyncClient()
    prompts = PromptTemplateStore()
    realtime = InMemoryRealtimeHub()

    assembler = RetrievalAssembler(
        CachedEmbedder(
            embedder or FastEmbedEmbedder(settings.embedding_model),
            cache,
            ttl_seconds=settings.embedding_cache_ttl_seconds,
        ),
        store,
        settings=settings,
        token_counter=token_counter,
    )
    detector = EscalationDetector(repository)
    orchestrator = ResponseOrchestrator(
        model, detector, repository, settings=settings, prompts=prompts
    )
    service = ConversationService(
        repository,
        assembler,
        orchestrator,
        detector,
        EventFanout(queue, settings=settings),
        tools,
        http_client=http_client,
        settings=settings,
        prompts=prompts,
    )
    handlers = FanoutHandlers(
        repository,
        realtime,
        SubjectGenerator(model, repository, prompts=prompts),
        SummaryGenerator(model, repository, prompts=prompts),
    )
    return Engine(
        settings=settings,
        repository=repository,
        service=service,
        realtime=realtime,
        queue=queue,
        worker=FanoutWorker(queue, handlers.as_mapping()),
        http_client=http_client,
    )
