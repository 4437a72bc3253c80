import math
import pathlib
import sys
from collections.abc import Callable

import httpx
import pytest
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from support_ai.agents.model import ModelResponse, ToolCall
from support_ai.app_logging import init_logging
from support_ai.config import EngineSettings, reset_settings_cache
from support_ai.conversations.repository import InMemoryConversationRepository
from support_ai.engine import build_engine
from support_ai.fanout.queue import InMemoryJobQueue
from support_ai.retrieval.cache import InMemoryEmbeddingCache
from support_ai.retrieval.store import InMemoryKnowledgeStore
from support_ai.tools.repository import InMemoryToolRepository


def word_count(text: str) -> int:
    return len(text.split())


def unit_vector(similarity: float) -> list[float]:
    """A 2-d vector whose cosine similarity with ``[1, 0]`` is ``similarity``."""

    return [similarity, math.sqrt(max(0.0, 1 - similarity**2))]


QUERY_VECTOR = [1.0, 0.0]


class DummyEmbedder:
    def __init__(self, vectors: dict[str, list[float]] | None = None):
        self.vectors = vectors or {}
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return list(self.vectors.get(text, QUERY_VECTOR))


class ScriptedModel:
    """Replays scripted chat responses; the last one repeats once exhausted.

    Subject and summary calls get fixed answers so background fanout work does
    not consume the script.
    """

    def __init__(self, *responses: ModelResponse | Exception):
        self._responses = list(responses) or [ModelResponse(text="Happy to help!")]
        self.calls: list[dict] = []
        self.background_calls: list[str] = []

    @property
    def chat_calls(self) -> int:
        return len(self.calls)

    async def complete(self, messages, *, tools=None, task="chat"):
        if task != "chat":
            self.background_calls.append(task)
            if task == "summary":
                return ModelResponse(text="- Customer asked for help\n- Assistant answered")
            return ModelResponse(text="Refund request")
        self.calls.append({"messages": [dict(m) for m in messages], "tools": tools})
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def tool_call(name: str, call_id: str = "call_1", **arguments) -> ModelResponse:
    return ModelResponse(tool_calls=(ToolCall(id=call_id, name=name, arguments=arguments),))


def mock_client(handler: Callable[[httpx.Request], httpx.Response] | None = None) -> httpx.AsyncClient:
    def _default(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": True})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler or _default))


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("CHAT_RATE_LIMIT", "1000/minute")
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(model_context_tokens=2000, response_token_reserve=0)


@pytest.fixture
def repository() -> InMemoryConversationRepository:
    return InMemoryConversationRepository()


@pytest.fixture
def engine_factory(settings, repository):
    def _create(
        model: ScriptedModel | None = None,
        *,
        tools=None,
        store: InMemoryKnowledgeStore | None = None,
        embedder: DummyEmbedder | None = None,
        http_handler=None,
        engine_settings: EngineSettings | None = None,
    ):
        return build_engine(
            engine_settings or settings,
            model=model or ScriptedModel(),
            embedder=embedder or DummyEmbedder(),
            repository=repository,
            store=store or InMemoryKnowledgeStore(),
            cache=InMemoryEmbeddingCache(),
            tools=InMemoryToolRepository(tools or []),
            queue=InMemoryJobQueue(),
            http_client=mock_client(http_handler),
            token_counter=word_count,
        )

    return _create


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
