"""Chat session routes.

Authentication and ownership checks happen upstream; ``owner_id`` is taken
as given.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from chatrelay.dispatch.orchestrator import get_session, open_session, send_message

router = APIRouter(prefix="/chats")


class CreateChatRequest(BaseModel):
    provider: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    title: str | None = None
    model: str | None = None


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1)


@router.post("", status_code=201)
def create_chat(payload: CreateChatRequest) -> dict:
    view = open_session(
        payload.provider,
        payload.owner_id,
        title=payload.title,
        model=payload.model,
    )
    return view.as_dict()


@router.get("/{session_id}")
def read_chat(session_id: int) -> dict:
    return get_session(session_id).as_dict()


@router.post("/{session_id}/messages")
async def post_message(session_id: int, payload: SendMessageRequest) -> dict:
    if not payload.content.strip():
        raise HTTPException(status_code=400, detail="Message content is required")
    result = await send_message(session_id, payload.content)
    return {
        "message": result.assistant_message.as_dict(),
        "chat_status": result.session_status,
    }
