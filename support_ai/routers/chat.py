"""Public chat API used by the support widget."""

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from ..conversations import schemas
from ..fanout.realtime import conversation_channel
from ..limits import chat_rate_limit, limiter
from . import get_engine, service_errors

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post(
    "/conversation",
    response_model=schemas.CreateConversationResponse,
    status_code=201,
)
async def create_conversation(
    request: Request, payload: schemas.CreateConversationRequest | None = None
):
    """Start a conversation and return its opaque slug."""

    payload = payload or schemas.CreateConversationRequest()
    engine = get_engine(request)
    conversation = await engine.service.create_conversation(
        customer_email=payload.customer_email, is_prompt=payload.is_prompt
    )
    return schemas.CreateConversationResponse(conversation_slug=conversation.slug)


@router.post("", response_model=schemas.ChatReply)
@limiter.limit(chat_rate_limit)
async def chat(request: Request, payload: schemas.ChatRequest):
    """Submit a customer message and wait for the assistant's outcome."""

    engine = get_engine(request)
    with service_errors():
        return await engine.service.handle_incoming_message(
            payload.conversation_slug,
            payload.message,
            client_message_id=payload.client_message_id,
            customer_email=payload.customer_email,
        )


@router.get("/conversation/{slug}", response_model=schemas.ConversationView)
async def get_conversation(request: Request, slug: str):
    engine = get_engine(request)
    with service_errors():
        return await engine.service.get_conversation_view(slug)


@router.get("/conversation/{slug}/events")
async def conversation_events(request: Request, slug: str):
    """Stream realtime updates for one conversation as Server-Sent Events."""

    engine = get_engine(request)
    with service_errors():
        await engine.service.get_conversation(slug)
    return StreamingResponse(
        engine.realtime.sse_stream(conversation_channel(slug)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
