import pytest

from support_ai.config import EngineSettings
from support_ai.retrieval.assembler import (
    KNOWLEDGE_BANK_HEADER,
    PAST_CONVERSATIONS_HEADER,
    STYLE_GUIDE_HEADER,
    PromptTooLongError,
    RetrievalAssembler,
    render_context,
)
from support_ai.retrieval.cache import InMemoryEmbeddingCache
from support_ai.retrieval.embeddings import CachedEmbedder
from support_ai.retrieval.store import InMemoryKnowledgeStore

from conftest import DummyEmbedder, unit_vector, word_count

SYSTEM_PROMPT = "You are a helpful support assistant."


def _assembler(store, *, settings=None, embedder=None) -> RetrievalAssembler:
    return RetrievalAssembler(
        CachedEmbedder(embedder or DummyEmbedder(), InMemoryEmbeddingCache()),
        store,
        settings=settings or EngineSettings(response_token_reserve=0),
        token_counter=word_count,
    )


@pytest.mark.asyncio
async def test_only_entries_above_threshold_are_included_in_order():
    store = InMemoryKnowledgeStore()
    store.add_entry("Refunds take 5 days.", unit_vector(0.7))
    store.add_entry("Shipping is free over 50 EUR.", unit_vector(0.95))
    store.add_entry("Our office is in Lisbon.", unit_vector(0.55))
    store.add_entry("Unrelated trivia.", unit_vector(0.2))

    context = await _assembler(store).assemble("refund", system_prompt=SYSTEM_PROMPT)

    assert [e.content for e in context.knowledge_entries] == [
        "Shipping is free over 50 EUR.",
        "Refunds take 5 days.",
    ]
    assert context.text.startswith(KNOWLEDGE_BANK_HEADER)
    assert context.text.index("Shipping is free") < context.text.index("Refunds take")
    assert "Lisbon" not in context.text


@pytest.mark.asyncio
async def test_results_are_capped_per_source():
    store = InMemoryKnowledgeStore()
    for i in range(8):
        store.add_entry(f"entry {i}", unit_vector(0.9 - i * 0.01))

    context = await _assembler(store).assemble("q", system_prompt=SYSTEM_PROMPT)

    assert len(context.knowledge_entries) == 5
    assert context.knowledge_entries[0].content == "entry 0"


@pytest.mark.asyncio
async def test_disabled_entries_are_ignored():
    store = InMemoryKnowledgeStore()
    store.add_entry("hidden", unit_vector(0.99), enabled=False)

    context = await _assembler(store).assemble("q", system_prompt=SYSTEM_PROMPT)

    assert context.is_empty
    assert context.text == ""


@pytest.mark.asyncio
async def test_empty_sources_render_no_headers():
    store = InMemoryKnowledgeStore()
    store.add_entry("Refunds take 5 days.", unit_vector(0.9))

    context = await _assembler(store).assemble("q", system_prompt=SYSTEM_PROMPT)

    assert KNOWLEDGE_BANK_HEADER in context.text
    assert PAST_CONVERSATIONS_HEADER not in context.text
    assert STYLE_GUIDE_HEADER not in context.text


def test_render_context_is_empty_without_items():
    assert render_context([], [], []) == ""


@pytest.mark.asyncio
async def test_past_conversations_use_first_customer_message_and_skip_current():
    store = InMemoryKnowledgeStore()
    store.add_conversation("current", unit_vector(0.99), "this one")
    store.add_conversation("resolved", unit_vector(0.8), "My parcel never arrived")
    store.add_conversation("still-open", unit_vector(0.9), "open one", closed=False)

    context = await _assembler(store).assemble(
        "parcel", system_prompt=SYSTEM_PROMPT, exclude_slug="current"
    )

    assert [c.slug for c in context.past_conversations] == ["resolved"]
    assert "--- Conversation Start ---" in context.text
    assert "Customer: My parcel never arrived" in context.text
    assert "this one" not in context.text
    assert context.prompt_info()["past_conversations"] == ["resolved"]


@pytest.mark.asyncio
async def test_style_linters_render_as_before_and_after():
    store = InMemoryKnowledgeStore()
    store.add_style_linter("Hello customer.", "Hi there!")

    context = await _assembler(store).assemble("q", system_prompt=SYSTEM_PROMPT)

    assert STYLE_GUIDE_HEADER in context.text
    assert "Before:\nHello customer.\nAfter:\nHi there!" in context.text


@pytest.mark.asyncio
async def test_lowest_similarity_items_are_dropped_first():
    store = InMemoryKnowledgeStore()
    store.add_entry("best " * 20, unit_vector(0.95))
    store.add_entry("weak " * 20, unit_vector(0.65))
    store.add_conversation("middle", unit_vector(0.8), "middle " * 20)
    store.add_style_linter("formal", "casual")

    full = await _assembler(store).assemble("q", system_prompt=SYSTEM_PROMPT)
    full_tokens = word_count(full.text)
    floor = word_count(SYSTEM_PROMPT) + 1

    settings = EngineSettings(
        model_context_tokens=floor + full_tokens - 10, response_token_reserve=0
    )
    trimmed = await _assembler(store, settings=settings).assemble(
        "q", system_prompt=SYSTEM_PROMPT
    )

    assert trimmed.dropped_items == 1
    assert [e.content.split()[0] for e in trimmed.knowledge_entries] == ["best"]
    assert [c.slug for c in trimmed.past_conversations] == ["middle"]
    assert len(trimmed.style_linters) == 1


@pytest.mark.asyncio
async def test_style_linters_are_dropped_last():
    store = InMemoryKnowledgeStore()
    store.add_entry("entry " * 30, unit_vector(0.9))
    store.add_style_linter("formal", "casual")
    floor = word_count(SYSTEM_PROMPT) + 1

    settings = EngineSettings(model_context_tokens=floor + 25, response_token_reserve=0)
    context = await _assembler(store, settings=settings).assemble(
        "q", system_prompt=SYSTEM_PROMPT
    )

    assert context.knowledge_entries == []
    assert len(context.style_linters) == 1
    assert STYLE_GUIDE_HEADER in context.text


@pytest.mark.asyncio
async def test_history_counts_against_the_budget():
    store = InMemoryKnowledgeStore()
    store.add_entry("Refunds take 5 days.", unit_vector(0.9))
    floor = word_count(SYSTEM_PROMPT) + 1
    settings = EngineSettings(model_context_tokens=floor + 60, response_token_reserve=0)
    assembler = _assembler(store, settings=settings)

    short = await assembler.assemble("q", system_prompt=SYSTEM_PROMPT, history=["hi"])
    long = await assembler.assemble(
        "q", system_prompt=SYSTEM_PROMPT, history=["hi", "detail " * 50]
    )

    assert KNOWLEDGE_BANK_HEADER in short.text
    assert long.is_empty
    assert long.dropped_items == 1


@pytest.mark.asyncio
async def test_prompt_too_long_is_raised_before_embedding():
    embedder = DummyEmbedder()
    settings = EngineSettings(model_context_tokens=5, response_token_reserve=0)
    assembler = _assembler(InMemoryKnowledgeStore(), settings=settings, embedder=embedder)

    with pytest.raises(PromptTooLongError) as excinfo:
        await assembler.assemble("a very long customer question", system_prompt=SYSTEM_PROMPT)

    assert excinfo.value.budget == 5
    assert excinfo.value.floor_tokens > 5
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_embedding_failure_yields_empty_context():
    class FailingEmbedder:
        async def embed(self, text):
            raise RuntimeError("provider down")

    store = InMemoryKnowledgeStore()
    store.add_entry("Refunds take 5 days.", unit_vector(0.9))

    context = await _assembler(store, embedder=FailingEmbedder()).assemble(
        "q", system_prompt=SYSTEM_PROMPT
    )

    assert context.is_empty


@pytest.mark.asyncio
async def test_failing_source_only_empties_its_own_section():
    class FlakyStore(InMemoryKnowledgeStore):
        async def search_past_conversations(self, *args, **kwargs):
            raise ConnectionError("replica down")

    store = FlakyStore()
    store.add_entry("Refunds take 5 days.", unit_vector(0.9))
    store.add_conversation("resolved", unit_vector(0.9), "parcel")

    context = await _assembler(store).assemble("q", system_prompt=SYSTEM_PROMPT)

    assert [e.content for e in context.knowledge_entries] == ["Refunds take 5 days."]
    assert context.past_conversations == []
    assert PAST_CONVERSATIONS_HEADER not in context.text
