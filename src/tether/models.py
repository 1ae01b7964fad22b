"""Pydantic models for API request/response schemas."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

CHAT_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"


class UIMessage(BaseModel):
    id: str = Field(default="", max_length=200)
    role: Literal["user", "assistant"] = "user"
    parts: list[dict[str, Any]] = Field(default_factory=list, max_length=1000)


class FollowUp(BaseModel):
    chatId: str = Field(pattern=CHAT_ID_PATTERN)
    streamStartIndex: int = Field(default=0, ge=0)


class ChatRequest(BaseModel):
    message: UIMessage
    model: str | None = Field(default=None, max_length=200)
    newChatId: str | None = Field(default=None, pattern=CHAT_ID_PATTERN)
    followUp: FollowUp | None = None


class InterruptRequest(BaseModel):
    chatId: str | None = Field(default=None, pattern=CHAT_ID_PATTERN)
    timestamp: int | None = Field(default=None, ge=0)


class StoredMessage(BaseModel):
    index: int
    id: str
    role: str
    parts: list[dict[str, Any]] = Field(default_factory=list)


class ChatDetail(BaseModel):
    id: str
    runId: str
    model: str | None = None
    streamId: str | None = None
    messages: list[StoredMessage] = Field(default_factory=list)


class ModelList(BaseModel):
    default: str
    models: list[str] = Field(default_factory=list)
