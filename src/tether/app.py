"""FastAPI application factory with lifespan management."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from . import __version__
from .config import AppConfig, load_config
from .db import init_db
from .services.agent_loop import AgentRuntime, RunNotFoundError
from .services.ai_service import AIService, CompletionService
from .services.channels import ChannelHub
from .services.storage import ChatNotFoundError
from .tools import ToolRegistry, default_registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    config: AppConfig = app.state.config
    db_path = config.app.data_dir / "chat.db"
    app.state.db = init_db(db_path)
    app.state.hub = ChannelHub(
        high_water_mark=config.stream.high_water_mark,
        retained_streams=config.stream.retained_streams,
    )

    completion = app.state.completion_service or AIService(config.ai)
    tools = app.state.tools if app.state.tools is not None else default_registry()
    app.state.runtime = AgentRuntime(
        app.state.db,
        app.state.hub,
        completion,
        tools=tools,
        settings=config.agent,
    )
    logger.info("Agent runtime ready (%d tool(s), db %s)", len(tools.list_tools()), db_path)

    yield

    await app.state.runtime.shutdown()
    if app.state.db:
        app.state.db.close()


def create_app(
    config: AppConfig | None = None,
    completion_service: CompletionService | None = None,
    tools: ToolRegistry | None = None,
) -> FastAPI:
    if config is None:
        config = load_config()

    app = FastAPI(title="Tether", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.completion_service = completion_service
    app.state.tools = tools

    @app.exception_handler(ChatNotFoundError)
    async def _chat_not_found(request: Request, exc: ChatNotFoundError) -> PlainTextResponse:
        return PlainTextResponse(str(exc), status_code=404)

    @app.exception_handler(RunNotFoundError)
    async def _run_not_found(request: Request, exc: RunNotFoundError) -> PlainTextResponse:
        return PlainTextResponse(str(exc), status_code=404)

    from .routers import chat, chats

    app.include_router(chat.router, prefix="/api")
    app.include_router(chats.router, prefix="/api")

    return app
