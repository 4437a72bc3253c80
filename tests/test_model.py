from types import SimpleNamespace

import openai
import pytest

from support_ai.agents.model import (
    ModelProviderError,
    OpenAIChatModel,
    SandboxChatModel,
    build_model_client,
)
from support_ai.agents.prompts import PromptTemplateStore
from support_ai.agents.providers import ProviderRegistry
from support_ai.agents.responses import ResponseParameterStore
from support_ai.config import EngineSettings


class _FakeCompletions:
    def __init__(self, result=None, exc: Exception | None = None):
        self.requests: list[dict] = []
        self._result = result
        self._exc = exc

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self._exc is not None:
            raise self._exc
        return self._result


def _client(completions: _FakeCompletions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _completion(content=None, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _call(call_id: str, name: str, arguments: str):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


@pytest.mark.asyncio
async def test_tool_calls_are_decoded():
    completions = _FakeCompletions(
        _completion(
            tool_calls=[
                _call("call_1", "issue_refund", '{"order_id": "A1", "amount": 12}'),
                _call("call_2", "order_status", "not json"),
            ]
        )
    )
    model = OpenAIChatModel(_client(completions), model="gpt-4o")
    tools = [{"type": "function", "function": {"name": "issue_refund"}}]

    response = await model.complete([{"role": "user", "content": "refund"}], tools=tools)

    assert response.wants_tools
    assert response.text is None
    assert response.tool_calls[0].arguments == {"order_id": "A1", "amount": 12}
    assert response.tool_calls[1].arguments == {}
    request = completions.requests[0]
    assert request["model"] == "gpt-4o"
    assert request["tools"] == tools
    assert request["temperature"] == 0.1


@pytest.mark.asyncio
async def test_text_replies_are_stripped_and_use_task_parameters():
    completions = _FakeCompletions(_completion(content="  Parcel delay \n"))
    model = OpenAIChatModel(_client(completions), model="gpt-4o")

    response = await model.complete([{"role": "user", "content": "x"}], task="subject")

    assert response.text == "Parcel delay"
    assert not response.wants_tools
    assert completions.requests[0]["max_tokens"] == 32
    assert "tools" not in completions.requests[0]


@pytest.mark.asyncio
async def test_provider_errors_are_wrapped():
    model = OpenAIChatModel(
        _client(_FakeCompletions(exc=openai.OpenAIError("rate limited"))), model="gpt-4o"
    )

    with pytest.raises(ModelProviderError, match="rate limited"):
        await model.complete([{"role": "user", "content": "x"}])


def test_sandbox_model_is_used_without_credentials():
    assert isinstance(build_model_client(EngineSettings()), SandboxChatModel)


def test_openai_model_is_used_with_credentials():
    providers = ProviderRegistry({"openai": {"api_key": "sk-test"}})

    client = build_model_client(EngineSettings(openai_model="gpt-4o-mini"), providers)

    assert isinstance(client, OpenAIChatModel)
    assert client.model == "gpt-4o-mini"


def test_provider_credentials_come_from_the_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("OPENAI_BASE_URL", "https://llm.internal/v1")

    credentials = ProviderRegistry().get_credentials("openai")

    assert credentials.configured
    assert credentials.base_url == "https://llm.internal/v1"
    assert not ProviderRegistry().get_credentials("unknown").configured


@pytest.mark.asyncio
async def test_sandbox_model_is_deterministic():
    model = SandboxChatModel()
    messages = [{"role": "user", "content": "Where is my order number 42 please"}]

    subject = await model.complete(messages, task="subject")
    reply = await model.complete(messages)

    assert subject.text == "Where is my order number 42"
    assert reply.text.endswith("Where is my order number 42 please")


def test_parameter_overrides():
    store = ResponseParameterStore({"chat": {"temperature": 0.5}})
    assert store.defaults_for("chat") == {"temperature": 0.5, "max_tokens": 1024}
    assert store.defaults_for("unknown") == {"temperature": 0.1}


def test_prompt_overrides_and_context():
    prompts = PromptTemplateStore({"subject": "Name it.", "chat": ""})

    assert prompts.resolve("subject") == "Name it."
    assert prompts.render_system("chat", "## Knowledge bank").endswith("\n\n## Knowledge bank")
    with pytest.raises(KeyError):
        prompts.resolve("translate")
