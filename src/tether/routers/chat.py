"""Chat streaming endpoints: start or continue a turn, reattach, interrupt."""

from __future__ import annotations

import json
import logging
import re
import uuid as uuid_mod

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from ..chunks import RUN_ID_HEADER
from ..config import resolve_model
from ..models import ChatRequest, InterruptRequest
from ..services import storage
from ..services.agent_loop import AgentEvent, AgentRuntime
from ..services.transport import RESUME_BY_CHUNKS, RESUME_MODES, filter_agent_stream

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


_CHAT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def _validate_chat_id(value: str) -> str:
    if not _CHAT_ID_RE.match(value):
        raise HTTPException(status_code=400, detail="Invalid chatId")
    return value


def _get_db(request: Request):
    return request.app.state.db


def _get_runtime(request: Request) -> AgentRuntime:
    return request.app.state.runtime


def _parse_start_index(raw: str | None) -> int:
    if raw is None or raw == "":
        return 0
    try:
        value = int(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="startIndex must be an integer")
    if value < 0:
        raise HTTPException(status_code=400, detail="startIndex must be >= 0")
    return value


def _stream_response(
    request: Request,
    chat_id: str,
    stream_id: str,
    run_id: str,
    start_index: int = 0,
    resume_by: str = RESUME_BY_CHUNKS,
) -> EventSourceResponse:
    hub = request.app.state.hub
    stream_settings = request.app.state.config.stream

    def _on_terminate(reason: str) -> None:
        logger.debug("Delivery of %s/%s (run %s) ended: %s", chat_id, stream_id, run_id, reason)

    chunks = filter_agent_stream(
        hub.open_reader(chat_id, stream_id),
        start_index=start_index,
        resume_by=resume_by,
        grace_period=stream_settings.grace_period,
        on_terminate=_on_terminate,
    )

    async def event_generator():
        try:
            async for chunk in chunks:
                yield {"data": json.dumps(chunk)}
        finally:
            await chunks.aclose()

    return EventSourceResponse(event_generator(), headers={RUN_ID_HEADER: run_id})


@router.post("/chat")
async def chat(request: Request) -> Response:
    try:
        try:
            body = ChatRequest(**(await request.json()))
        except (ValidationError, ValueError, TypeError):
            raise HTTPException(status_code=400, detail="Invalid request body")

        db = _get_db(request)
        runtime = _get_runtime(request)
        message = body.message.model_dump()
        message["role"] = "user"
        message["id"] = message["id"] or str(uuid_mod.uuid4())

        if body.followUp:
            chat_id = body.followUp.chatId
            if storage.get_chat(db, chat_id) is None:
                raise HTTPException(status_code=404, detail="Chat not found")
            event = AgentEvent(now=runtime.next_timestamp(), message=message)
            run_id = runtime.resume(chat_id, event)
            if run_id is None:
                raise HTTPException(status_code=404, detail="No active run found")
            start_index = body.followUp.streamStartIndex
        elif body.newChatId:
            chat_id = body.newChatId
            model = resolve_model(request.app.state.config.ai, body.model)
            event = AgentEvent(now=runtime.next_timestamp(), message=message)
            try:
                run_id = runtime.start(chat_id, model, event)
            except ValueError:
                raise HTTPException(status_code=400, detail="Chat already exists")
            start_index = 0
        else:
            raise HTTPException(status_code=400, detail="Expected newChatId or followUp")

        return _stream_response(request, chat_id, event.stream_id, run_id, start_index=start_index)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Chat request failed")
        return PlainTextResponse(str(e) or "Unknown error", status_code=500)


@router.get("/chat/{chat_id}")
async def reattach(chat_id: str, request: Request) -> Response:
    _validate_chat_id(chat_id)
    start_index = _parse_start_index(request.query_params.get("startIndex"))
    resume_by = request.query_params.get("resumeBy") or RESUME_BY_CHUNKS
    if resume_by not in RESUME_MODES:
        raise HTTPException(status_code=400, detail=f"resumeBy must be one of {', '.join(RESUME_MODES)}")

    chat = storage.get_chat(_get_db(request), chat_id)
    if not chat or not chat["stream_id"]:
        raise HTTPException(status_code=404, detail="No active stream")

    return _stream_response(
        request,
        chat_id,
        chat["stream_id"],
        chat["run_id"],
        start_index=start_index,
        resume_by=resume_by,
    )


@router.post("/chat/{chat_id}/interrupt")
async def interrupt(chat_id: str, request: Request) -> Response:
    _validate_chat_id(chat_id)
    db = _get_db(request)
    try:
        chat = storage.get_chat(db, chat_id)
        if not chat:
            raise HTTPException(status_code=404, detail="Chat not found")

        raw = await request.body()
        try:
            body = InterruptRequest(**json.loads(raw)) if raw.strip() else InterruptRequest()
        except (ValidationError, ValueError, TypeError):
            raise HTTPException(status_code=400, detail="Invalid request body")
        if body.chatId and body.chatId != chat_id:
            raise HTTPException(status_code=400, detail="chatId does not match the URL")

        timestamp = body.timestamp if body.timestamp is not None else _get_runtime(request).next_timestamp()
        storage.set_interrupt(db, chat_id, timestamp)
        logger.info("Interrupt recorded for chat %s at %d", chat_id, timestamp)
        return JSONResponse({"status": "interrupted", "timestamp": timestamp})
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("[INTERRUPT] failed for chat %s", chat_id)
        return PlainTextResponse(str(e) or "Unknown error", status_code=500)
