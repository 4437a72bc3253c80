"""Staff-facing conversation actions: replies, bad flags and status changes."""

from __future__ import annotations

from fastapi import APIRouter, Request

from ..conversations import schemas
from . import get_engine, service_errors

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


@router.get("/{slug}", response_model=schemas.ConversationView)
async def get_conversation(request: Request, slug: str):
    engine = get_engine(request)
    with service_errors():
        return await engine.service.get_conversation_view(slug)


@router.post("/{slug}/reply", status_code=201)
async def staff_reply(request: Request, slug: str, payload: schemas.StaffReplyRequest):
    """Post a staff reply; the conversation is assigned to the replying user."""

    engine = get_engine(request)
    with service_errors():
        message = await engine.service.staff_reply(
            slug, payload.staff_user_id, payload.body
        )
    return {"messageId": message.id}


@router.post("/{slug}/messages/{message_id}/flag")
async def flag_message(
    request: Request, slug: str, message_id: int, payload: schemas.FlagRequest
):
    """Flag an assistant reply as bad, handing the conversation to a human."""

    engine = get_engine(request)
    with service_errors():
        event = await engine.service.flag_message(slug, message_id, payload.reason)
    return {"escalated": event is not None}


@router.post("/{slug}/status")
async def update_status(request: Request, slug: str, payload: schemas.StatusRequest):
    engine = get_engine(request)
    with service_errors():
        conversation = await engine.service.update_status(slug, payload.action)
    columns = conversation.state.to_columns()
    return {
        "status": columns["status"],
        "assignedToAI": columns["assigned_to_ai"],
        "assignedToUserId": columns["assigned_to_user_id"],
    }
