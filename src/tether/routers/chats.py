"""Read-only chat history endpoints."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from ..models import ChatDetail, ModelList, StoredMessage
from ..services import storage
from .chat import _validate_chat_id

router = APIRouter(tags=["chats"])


@router.get("/chats/{chat_id}")
async def get_chat(chat_id: str, request: Request) -> ChatDetail:
    _validate_chat_id(chat_id)
    db = request.app.state.db
    chat = storage.get_chat(db, chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    messages = storage.list_messages(db, chat_id)
    return ChatDetail(
        id=chat["id"],
        runId=chat["run_id"],
        model=chat["model"],
        streamId=chat["stream_id"],
        messages=[
            StoredMessage(index=m["position"], id=m["id"], role=m["role"], parts=m["parts"]) for m in messages
        ],
    )


@router.get("/models")
async def list_models(request: Request) -> ModelList:
    ai = request.app.state.config.ai
    return ModelList(default=ai.model, models=ai.models)
